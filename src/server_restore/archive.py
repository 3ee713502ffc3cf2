from __future__ import annotations

import errno
import gzip
import hashlib
import logging
import os
import posixpath
import tarfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Set, Tuple

from .errors import CorruptArchive, DiskFull, UnsafeArchive
from .models import BackupArtifact
from .transport import DEFAULT_CHUNK_SIZE

LOG = logging.getLogger(__name__)

EXTRACT_DIRNAME = "root"
# Extraction filters exist on current interpreters; "tar" keeps absolute
# symlinks (nginx sites-enabled) while still refusing absolute member paths.
_EXTRACT_KWARGS = {"filter": "tar"} if hasattr(tarfile, "tar_filter") else {}
_FILTER_ERRORS: Tuple[type, ...] = (tarfile.FilterError,) if hasattr(tarfile, "FilterError") else ()
_NO_SPACE = {errno.ENOSPC, errno.EDQUOT}


@dataclass(frozen=True)
class ExtractedTree:
    root: Path
    archive_path: Path
    verified: bool
    members: Tuple[str, ...] = ()

    def path(self, relative: str) -> Path:
        return self.root / relative.strip("/")

    def contains(self, relative: str) -> bool:
        return os.path.lexists(self.path(relative))


class ArchiveResolver:
    """Downloads a backup archive into staging, verifies it and extracts it safely."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._chunk_size = chunk_size

    def resolve(
        self,
        stream: Iterable[bytes],
        staging_dir: Path,
        artifact: Optional[BackupArtifact] = None,
    ) -> ExtractedTree:
        name = _archive_name(artifact)
        archive_path = self.download(stream, staging_dir / name)
        verified = self.verify(archive_path, artifact)
        return self.extract(archive_path, staging_dir / EXTRACT_DIRNAME, verified=verified)

    def download(self, stream: Iterable[bytes], destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        try:
            with destination.open("wb") as fh:
                for chunk in stream:
                    fh.write(chunk)
                    written += len(chunk)
        except OSError as exc:
            if exc.errno in _NO_SPACE:
                raise DiskFull(f"No space left while writing {destination} ({written} bytes written)") from exc
            raise
        LOG.info("Downloaded %d bytes to %s", written, destination)
        return destination

    def verify(self, archive_path: Path, artifact: Optional[BackupArtifact]) -> bool:
        if artifact is None or not artifact.checksum:
            LOG.warning("No checksum published for %s; continuing unverified", archive_path.name)
            return False

        actual_size = archive_path.stat().st_size
        if artifact.size and actual_size != artifact.size:
            raise CorruptArchive(
                f"{archive_path.name} is {actual_size} bytes, backend reported {artifact.size}"
            )

        algorithm, _, expected = artifact.checksum.partition(":")
        digest = self._digest(archive_path, algorithm)
        if digest is None:
            LOG.warning("Unsupported checksum algorithm '%s'; continuing unverified", algorithm)
            return False
        if digest.lower() != expected.strip().lower():
            raise CorruptArchive(f"Checksum mismatch for {archive_path.name}: expected {expected}, got {digest}")
        LOG.info("Checksum verified for %s (%s)", archive_path.name, algorithm)
        return True

    def extract(self, archive_path: Path, destination: Path, verified: bool = False) -> ExtractedTree:
        destination.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                members = tar.getmembers()
                names = _check_members(members, destination)
                for member in members:
                    tar.extract(member, destination, **_EXTRACT_KWARGS)
        except _FILTER_ERRORS as exc:
            raise UnsafeArchive(f"{archive_path.name}: {exc}") from exc
        except (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile) as exc:
            raise CorruptArchive(f"{archive_path.name} is not a readable tar.gz archive: {exc}") from exc
        except OSError as exc:
            if exc.errno in _NO_SPACE:
                raise DiskFull(f"No space left while extracting {archive_path.name}") from exc
            raise

        LOG.info("Extracted %d entries from %s", len(names), archive_path.name)
        return ExtractedTree(root=destination, archive_path=archive_path, verified=verified, members=tuple(names))

    # Internal helpers ------------------------------------------------------
    def _digest(self, path: Path, algorithm: str) -> Optional[str]:
        if algorithm == "git-blob-sha1":
            hasher = hashlib.sha1()
            hasher.update(f"blob {path.stat().st_size}\0".encode("ascii"))
        elif algorithm in ("md5", "sha1", "sha256"):
            hasher = hashlib.new(algorithm)
        else:
            return None
        with path.open("rb") as fh:
            for chunk in iter(lambda: fh.read(self._chunk_size), b""):
                hasher.update(chunk)
        return hasher.hexdigest()


def _archive_name(artifact: Optional[BackupArtifact]) -> str:
    if artifact is None:
        return "backup.tar.gz"
    name = PurePosixPath(artifact.display_name).name
    return name or "backup.tar.gz"


def _check_members(members: List[tarfile.TarInfo], destination: Path) -> List[str]:
    """Reject entries that would land outside ``destination``.

    The backup is created with ``--absolute-names`` so leading slashes are
    stripped and names re-rooted under the staging tree. Member names are
    rewritten in place.
    """
    root = os.path.realpath(destination)
    symlinks: Set[str] = set()
    links: Set[str] = set()
    names: List[str] = []

    for member in members:
        name = posixpath.normpath(member.name.lstrip("/"))
        if name in ("", "."):
            continue
        target = os.path.normpath(os.path.join(root, name))
        if not _within(root, target):
            raise UnsafeArchive(f"Archive entry '{member.name}' escapes the staging directory")

        parents = PurePosixPath(name).parents
        if any(str(parent) in symlinks for parent in parents):
            raise UnsafeArchive(f"Archive entry '{member.name}' is nested beneath a symlink")
        if name in links:
            raise UnsafeArchive(f"Archive entry '{member.name}' replaces an earlier link")

        if member.ischr() or member.isblk() or member.isfifo():
            raise UnsafeArchive(f"Archive entry '{member.name}' is a device or fifo")

        if member.issym():
            if not posixpath.isabs(member.linkname):
                link_target = os.path.normpath(os.path.join(os.path.dirname(target), member.linkname))
                if not _within(root, link_target):
                    raise UnsafeArchive(f"Symlink '{member.name}' points outside the staging directory")
            symlinks.add(name)
            links.add(name)
        elif member.islnk():
            link_name = posixpath.normpath(member.linkname.lstrip("/"))
            if not _within(root, os.path.normpath(os.path.join(root, link_name))):
                raise UnsafeArchive(f"Hard link '{member.name}' points outside the staging directory")
            if link_name in symlinks or any(str(parent) in symlinks for parent in PurePosixPath(link_name).parents):
                raise UnsafeArchive(f"Hard link '{member.name}' resolves through a symlink")
            links.add(name)
            member.linkname = link_name

        member.name = name
        names.append(name)
    return names


def _within(root: str, path: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)
