from __future__ import annotations

import fcntl
import logging
import os
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, Iterator, Optional

from .config import StagingConfig
from .credentials import Credential
from .errors import RestoreInProgress
from .models import BackendKind

LOG = logging.getLogger(__name__)

LOCK_FILENAME = ".restore.lock"


class StagingLock:
    """Exclusive advisory lock guarding the staging root for one restore run."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: Optional[IO[str]] = None

    @property
    def path(self) -> Path:
        return self._path

    def acquire(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fh = self._path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            fh.close()
            raise RestoreInProgress(f"Staging directory is locked by another restore ({self._path})") from exc
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        self._fh = fh

    def release(self) -> None:
        if self._fh is None:
            return
        try:
            fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
        finally:
            self._fh.close()
            self._fh = None

    def __enter__(self) -> "StagingLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


@dataclass(frozen=True)
class RestoreSession:
    backend_kind: BackendKind
    credential: Credential = field(repr=False)
    staging_dir: Path
    started_at: datetime


@contextmanager
def open_session(
    backend_kind: BackendKind,
    credential: Credential,
    staging: StagingConfig,
    keep: Optional[bool] = None,
) -> Iterator[RestoreSession]:
    keep_staging = staging.keep if keep is None else keep
    with StagingLock(staging.root / LOCK_FILENAME):
        started_at = datetime.now()
        run_dir = staging.root / f"restore_{started_at.strftime('%Y%m%d_%H%M%S')}"
        run_dir.mkdir(parents=True, exist_ok=True)
        LOG.info("Staging restore in %s", run_dir)
        try:
            yield RestoreSession(
                backend_kind=backend_kind,
                credential=credential,
                staging_dir=run_dir,
                started_at=started_at,
            )
        finally:
            if keep_staging:
                LOG.info("Keeping staging directory %s", run_dir)
            else:
                shutil.rmtree(run_dir, ignore_errors=True)
