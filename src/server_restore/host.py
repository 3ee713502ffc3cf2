from __future__ import annotations

import errno
import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Type

from .errors import (
    CommandFailure,
    DiskFull,
    FilePlacementFailure,
    OperationTimeout,
    PackageInstallFailure,
    RestoreError,
    ServiceRestartFailure,
)

LOG = logging.getLogger(__name__)


class PackageManager(Protocol):
    def install(self, name: str) -> None:
        ...


class ServiceManager(Protocol):
    def restart(self, name: str) -> None:
        ...


class FilePlacer(Protocol):
    def place(self, source: Path, destination: Path) -> None:
        ...


class CommandRunner(Protocol):
    def run(self, command: str) -> None:
        ...


def run_process(
    cmd: List[str],
    *,
    timeout: float,
    error_cls: Type[RestoreError],
    description: str,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.CompletedProcess:
    LOG.debug("Running %s", " ".join(cmd))
    try:
        return subprocess.run(cmd, env=env, check=True, capture_output=True, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        raise OperationTimeout(f"{description} timed out after {timeout:.0f}s") from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or b"").decode("utf-8", "ignore").strip()
        LOG.error("%s failed (exit %s): %s", description, exc.returncode, stderr)
        raise error_cls(f"{description} failed (exit {exc.returncode}): {stderr[-500:]}") from exc
    except FileNotFoundError as exc:
        raise error_cls(f"{description} failed: '{cmd[0]}' not found") from exc


class AptPackageManager:
    """Installs Debian packages; already installed packages are left alone."""

    def __init__(self, timeout: float = 600.0) -> None:
        self._timeout = timeout
        self._env = dict(os.environ, DEBIAN_FRONTEND="noninteractive")

    def is_installed(self, name: str) -> bool:
        try:
            completed = subprocess.run(
                ["dpkg-query", "-W", "-f=${Status}", name],
                capture_output=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise OperationTimeout(f"dpkg-query {name} timed out") from exc
        except FileNotFoundError:
            return False
        return completed.returncode == 0 and b"install ok installed" in completed.stdout

    def install(self, name: str) -> None:
        if self.is_installed(name):
            LOG.info("Package %s already installed", name)
            return
        run_process(
            ["apt-get", "install", "-y", name],
            timeout=self._timeout,
            error_cls=PackageInstallFailure,
            description=f"apt-get install {name}",
            env=self._env,
        )
        LOG.info("Installed package %s", name)


class SystemdServiceManager:
    def __init__(self, timeout: float = 120.0) -> None:
        self._timeout = timeout

    def restart(self, name: str) -> None:
        run_process(
            ["systemctl", "restart", name],
            timeout=self._timeout,
            error_cls=ServiceRestartFailure,
            description=f"systemctl restart {name}",
        )
        LOG.info("Restarted service %s", name)


class LocalFilePlacer:
    """Copies restored files into place, overwriting what is there.

    ``root_dir`` re-roots destinations, which keeps tests off the real host.
    """

    def __init__(self, root_dir: Path = Path("/")) -> None:
        self._root = root_dir

    def place(self, source: Path, destination: Path) -> None:
        target = self._root / str(destination).lstrip("/")
        staged = target.with_name(f".{target.name}.restore-tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if os.path.lexists(staged):
                staged.unlink()
            shutil.copy2(source, staged, follow_symlinks=False)
            if hasattr(os, "geteuid") and os.geteuid() == 0:
                st = os.lstat(source)
                os.chown(staged, st.st_uid, st.st_gid, follow_symlinks=False)
            os.replace(staged, target)
        except OSError as exc:
            if os.path.lexists(staged):
                staged.unlink()
            if exc.errno == errno.ENOSPC:
                raise DiskFull(f"No space left placing {target}") from exc
            raise FilePlacementFailure(f"Cannot place {target}: {exc}") from exc
        LOG.debug("Placed %s", target)


class SubprocessCommandRunner:
    def __init__(self, timeout: float = 300.0) -> None:
        self._timeout = timeout

    def run(self, command: str) -> None:
        run_process(
            shlex.split(command),
            timeout=self._timeout,
            error_cls=CommandFailure,
            description=f"'{command}'",
        )
        LOG.info("Command '%s' completed", command)
