"""Test RestoreOrchestrator operations and exit codes."""

import hashlib
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from conftest import build_archive, make_artifact
from server_restore.config import LayoutConfig, ServiceSpec
from server_restore.credentials import OAuthCredential, TokenCredential
from server_restore.errors import (
    AuthError,
    ExitCode,
    FilePlacementFailure,
    MissingCredential,
    NotFound,
    PackageInstallFailure,
)
from server_restore.executor import Executor
from server_restore.host import LocalFilePlacer
from server_restore.models import ActionKind, BackendKind, ReportStatus
from server_restore.orchestrator import Operation, RestoreOrchestrator
from server_restore.session import LOCK_FILENAME, StagingLock

ARCHIVE = build_archive(
    [
        ("etc/nginx/nginx.conf", "events {}\n"),
        ("root/.n8n/config", "{}"),
        ("root/manual-packages.txt", "nginx\npostgresql\n"),
    ]
)


class FakeBackend:
    def __init__(self, artifacts, payload=ARCHIVE):
        self.artifacts = artifacts
        self.payload = payload
        self.fetched = []

    def list_artifacts(self):
        return iter(self.artifacts)

    def fetch(self, artifact_id):
        self.fetched.append(artifact_id)
        return iter([self.payload])


class TestRestore:
    """Test restore operations end to end with fake host handlers."""

    def setup_method(self):
        """Setup collaborators."""
        self.store = MagicMock()
        self.store.resolve.return_value = TokenCredential(token="ghp_token")
        self.packages = MagicMock()
        self.services = MagicMock()
        self.commands = MagicMock()
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        self.newest = make_artifact("n8n_backup_new.tar.gz", created_at=now, checksum=self.sha256(ARCHIVE))
        self.oldest = make_artifact("n8n_backup_old.tar.gz", created_at=now - timedelta(days=1))
        self.backend = FakeBackend([self.newest, self.oldest])

    @staticmethod
    def sha256(data):
        return "sha256:" + hashlib.sha256(data).hexdigest()

    def make_orchestrator(self, config, tmp_path, cancel_event=None, files=None):
        placer = files or LocalFilePlacer(root_dir=tmp_path / "host")

        def _executor(_config, event):
            return Executor(self.packages, self.services, placer, self.commands, cancel_event=event)

        return RestoreOrchestrator(
            config=config,
            credential_store=self.store,
            backend_factory=lambda kind, cfg, credential, store: self.backend,
            executor_factory=_executor,
            cancel_event=cancel_event,
        )

    def minimal_only(self, config):
        config.layouts["minimal"] = LayoutConfig(
            allow_list=["etc/nginx", "root/.n8n"],
            services=[ServiceSpec(name="postgresql", role="database"), ServiceSpec(name="nginx", role="proxy")],
            install_base_packages=False,
        )
        return config

    def test_restore_latest(self, restore_config, tmp_path):
        orchestrator = self.make_orchestrator(self.minimal_only(restore_config), tmp_path)

        result = orchestrator.run(Operation.RESTORE_MINIMAL)

        assert result.exit_code is ExitCode.OK
        assert result.report.overall_status is ReportStatus.SUCCEEDED
        assert result.report.verified is True
        assert result.artifacts == (self.newest,)
        assert self.backend.fetched == ["n8n_backup_new.tar.gz"]
        assert (tmp_path / "host/etc/nginx/nginx.conf").read_text() == "events {}\n"
        assert [c.args[0] for c in self.packages.install.call_args_list] == ["nginx", "postgresql"]
        assert [c.args[0] for c in self.services.restart.call_args_list] == ["postgresql", "nginx"]
        self.store.resolve.assert_called_once()
        assert self.store.resolve.call_args.args[0] is BackendKind.CLOUD_STORAGE

    def test_staging_cleaned_up(self, restore_config, tmp_path):
        self.make_orchestrator(self.minimal_only(restore_config), tmp_path).run(Operation.RESTORE_MINIMAL)

        leftovers = [p.name for p in restore_config.staging.root.iterdir()]
        assert leftovers == [LOCK_FILENAME]

    def test_restore_selected_backup_unverified(self, restore_config, tmp_path):
        orchestrator = self.make_orchestrator(self.minimal_only(restore_config), tmp_path)

        result = orchestrator.run(Operation.RESTORE_FULL, selection="n8n_backup_old.tar.gz")

        assert result.exit_code is ExitCode.OK
        assert result.report.unverified is True
        assert self.backend.fetched == ["n8n_backup_old.tar.gz"]

    def test_selector_choice(self, restore_config, tmp_path):
        orchestrator = self.make_orchestrator(self.minimal_only(restore_config), tmp_path)

        result = orchestrator.run(Operation.RESTORE_MINIMAL, selector=lambda artifacts: artifacts[1])

        assert result.artifacts == (self.oldest,)

    def test_selector_declined(self, restore_config, tmp_path):
        orchestrator = self.make_orchestrator(restore_config, tmp_path)

        result = orchestrator.run(Operation.RESTORE_MINIMAL, selector=lambda artifacts: None)

        assert result.exit_code is ExitCode.CANCELLED
        assert self.backend.fetched == []

    def test_unknown_selection(self, restore_config, tmp_path):
        result = self.make_orchestrator(restore_config, tmp_path).run(Operation.RESTORE_MINIMAL, selection="nope")

        assert result.exit_code is ExitCode.NETWORK
        assert isinstance(result.errors[0], NotFound)

    def test_no_backups(self, restore_config, tmp_path):
        self.backend = FakeBackend([])

        result = self.make_orchestrator(restore_config, tmp_path).run(Operation.RESTORE_FULL)

        assert result.exit_code is ExitCode.NETWORK
        assert "No backups found" in result.errors[0].message

    def test_missing_credentials(self, restore_config, tmp_path):
        self.store.resolve.side_effect = MissingCredential("GitHub token not set")

        result = self.make_orchestrator(restore_config, tmp_path).run(Operation.RESTORE_FULL)

        assert result.exit_code is ExitCode.AUTH
        assert result.errors[0].hint

    def test_corrupt_archive(self, restore_config, tmp_path):
        self.backend = FakeBackend([make_artifact("n8n_backup_bad.tar.gz")], payload=b"not gzip")

        result = self.make_orchestrator(restore_config, tmp_path).run(Operation.RESTORE_MINIMAL)

        assert result.exit_code is ExitCode.ARCHIVE
        assert result.report is None

    def test_restore_in_progress(self, restore_config, tmp_path):
        with StagingLock(restore_config.staging.root / LOCK_FILENAME):
            result = self.make_orchestrator(restore_config, tmp_path).run(Operation.RESTORE_MINIMAL)

        assert result.exit_code is ExitCode.BUSY

    def test_required_failure_exit_code(self, restore_config, tmp_path):
        files = MagicMock()
        files.place.side_effect = FilePlacementFailure("Read-only file system")
        orchestrator = self.make_orchestrator(self.minimal_only(restore_config), tmp_path, files=files)

        result = orchestrator.run(Operation.RESTORE_MINIMAL)

        assert result.exit_code is ExitCode.ACTION_FAILED
        assert result.report.overall_status is ReportStatus.ABORTED
        self.services.restart.assert_not_called()

    def test_optional_failure_exit_code(self, restore_config, tmp_path):
        self.packages.install.side_effect = PackageInstallFailure("E: Unable to locate package nginx")
        orchestrator = self.make_orchestrator(self.minimal_only(restore_config), tmp_path)

        result = orchestrator.run(Operation.RESTORE_MINIMAL)

        assert result.exit_code is ExitCode.PARTIAL
        assert int(result.exit_code) != 0
        assert result.report.overall_status is ReportStatus.COMPLETED_WITH_ERRORS
        assert [c.args[0] for c in self.services.restart.call_args_list] == ["postgresql", "nginx"]

    def test_cancel_before_execution(self, restore_config, tmp_path):
        event = threading.Event()
        event.set()

        result = self.make_orchestrator(restore_config, tmp_path, cancel_event=event).run(Operation.RESTORE_MINIMAL)

        assert result.exit_code is ExitCode.CANCELLED
        assert self.backend.fetched == []
        self.packages.install.assert_not_called()

    def test_dry_run_returns_plan_only(self, restore_config, tmp_path):
        result = self.make_orchestrator(restore_config, tmp_path).run(Operation.RESTORE_MINIMAL, dry_run=True)

        assert result.exit_code is ExitCode.OK
        assert result.report is None
        assert result.plan[0].kind is ActionKind.RUN_COMMAND
        assert result.plan[0].target == "apt-get update"
        assert result.plan[-1].kind is ActionKind.RUN_COMMAND
        assert result.plan[-1].target == "systemctl is-active nginx"
        assert result.plan[-5].kind is ActionKind.RESTART_SERVICE
        self.packages.install.assert_not_called()
        assert not (tmp_path / "host").exists()


class TestOtherOperations:
    """Test list, credential setup and base package operations."""

    def setup_method(self):
        """Setup collaborators."""
        self.store = MagicMock()
        self.backends = {
            BackendKind.CLOUD_STORAGE: FakeBackend([make_artifact("drive.tar.gz", kind=BackendKind.CLOUD_STORAGE)]),
            BackendKind.SOURCE_HOSTING: FakeBackend([make_artifact("github.tar.gz")]),
        }
        self.executor = MagicMock()

    def make_orchestrator(self, config):
        return RestoreOrchestrator(
            config=config,
            credential_store=self.store,
            backend_factory=lambda kind, cfg, credential, store: self.backends[kind],
            executor_factory=lambda cfg, event: self.executor,
        )

    def test_list_backups_all_backends(self, restore_config):
        result = self.make_orchestrator(restore_config).run(Operation.LIST_BACKUPS)

        assert result.exit_code is ExitCode.OK
        assert [a.id for a in result.artifacts] == ["drive.tar.gz", "github.tar.gz"]

    def test_list_backups_partial_failure(self, restore_config):
        def _resolve(kind, source):
            if kind is BackendKind.CLOUD_STORAGE:
                raise MissingCredential("Google Drive credential incomplete")
            return TokenCredential(token="t")

        self.store.resolve.side_effect = _resolve

        result = self.make_orchestrator(restore_config).run(Operation.LIST_BACKUPS)

        assert result.exit_code is ExitCode.AUTH
        assert [a.id for a in result.artifacts] == ["github.tar.gz"]
        assert len(result.errors) == 1

    def test_setup_credentials_validates_oauth(self, restore_config):
        credential = OAuthCredential(client_id="c", client_secret="s", refresh_token="r")
        self.store.resolve.return_value = credential

        result = self.make_orchestrator(restore_config).run(
            Operation.SETUP_CREDENTIALS, backends=[BackendKind.CLOUD_STORAGE]
        )

        assert result.exit_code is ExitCode.OK
        self.store.refresh.assert_called_once_with(credential)

    def test_setup_credentials_rejected(self, restore_config):
        self.store.resolve.return_value = OAuthCredential(client_id="c", client_secret="s", refresh_token="r")
        self.store.refresh.side_effect = AuthError("Token exchange rejected: HTTP 400 invalid_grant")

        result = self.make_orchestrator(restore_config).run(
            Operation.SETUP_CREDENTIALS, backends=[BackendKind.CLOUD_STORAGE]
        )

        assert result.exit_code is ExitCode.AUTH

    def test_install_base_packages(self, restore_config):
        self.executor.execute.return_value = MagicMock(overall_status=ReportStatus.SUCCEEDED)

        result = self.make_orchestrator(restore_config).run(Operation.INSTALL_BASE_PACKAGES)

        assert result.exit_code is ExitCode.OK
        (plan,), _ = self.executor.execute.call_args
        assert [a.target for a in plan][:2] == ["apt-get update", "curl"]

    def test_install_base_packages_dry_run(self, restore_config):
        result = self.make_orchestrator(restore_config).run(Operation.INSTALL_BASE_PACKAGES, dry_run=True)

        assert result.plan
        self.executor.execute.assert_not_called()
