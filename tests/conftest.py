"""Pytest configuration and shared fixtures."""

import io
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from server_restore.archive import ExtractedTree
from server_restore.config import GitHubConfig, GoogleDriveConfig, RestoreConfig, StagingConfig
from server_restore.models import BackendKind, BackupArtifact

CREDENTIAL_ENV = (
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "GOOGLE_REFRESH_TOKEN",
    "GOOGLE_DRIVE_FOLDER_ID",
    "GITHUB_PAT",
    "GITHUB_TOKEN",
    "GITHUB_REPO",
    "GITHUB_BRANCH",
    "SERVER_RESTORE_CONFIG",
    "SERVER_RESTORE_ACTION",
    "SERVER_RESTORE_BACKUP",
    "SERVER_RESTORE_NON_INTERACTIVE",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the developer's real credentials out of the tests."""
    for name in CREDENTIAL_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def restore_config(tmp_path):
    """Configuration pointing staging at a temporary directory."""
    return RestoreConfig(
        google_drive=GoogleDriveConfig(folder_id="folder-123"),
        github=GitHubConfig(repository="acme/server-backups"),
        staging=StagingConfig(root=tmp_path / "staging"),
        log_file=None,
    )


@pytest.fixture
def make_tree(tmp_path):
    """Build an extracted backup tree from a mapping of relative path to content."""

    def _make(files, symlinks=None):
        root = tmp_path / "extracted"
        root.mkdir(exist_ok=True)
        for relative, content in files.items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content if isinstance(content, bytes) else content.encode("utf-8"))
        for relative, target in (symlinks or {}).items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.symlink_to(target)
        return ExtractedTree(root=root, archive_path=tmp_path / "backup.tar.gz", verified=True)

    return _make


def build_archive(members):
    """Return tar.gz bytes for a list of (name, content) or TarInfo entries."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for member in members:
            if isinstance(member, tarfile.TarInfo):
                tar.addfile(member)
                continue
            name, content = member
            data = content if isinstance(content, bytes) else content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def symlink_member(name, target):
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    return info


def hardlink_member(name, target):
    info = tarfile.TarInfo(name)
    info.type = tarfile.LNKTYPE
    info.linkname = target
    return info


def make_artifact(
    artifact_id="n8n_backup_20240301_120000.tar.gz",
    created_at=None,
    size=0,
    checksum=None,
    kind=BackendKind.SOURCE_HOSTING,
    display_name=None,
):
    return BackupArtifact(
        id=artifact_id,
        display_name=display_name or artifact_id,
        backend_kind=kind,
        size=size,
        created_at=created_at or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        checksum=checksum,
    )


def fake_response(status_code=200, json_data=None, headers=None, chunks=None, text=""):
    """Mock ``requests.Response`` with the attributes the backends read."""
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    if isinstance(json_data, Exception):
        response.json.side_effect = json_data
    else:
        response.json.return_value = json_data
    response.iter_content.return_value = iter(chunks or [])
    return response


@pytest.fixture
def staging_dir(tmp_path) -> Path:
    path = tmp_path / "run"
    path.mkdir()
    return path
