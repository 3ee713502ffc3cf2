from __future__ import annotations

from enum import IntEnum
from typing import Optional


class ExitCode(IntEnum):
    OK = 0
    ACTION_FAILED = 1
    CONFIG = 2
    AUTH = 3
    NETWORK = 4
    ARCHIVE = 5
    CANCELLED = 6
    BUSY = 7
    PARTIAL = 8


class RestoreError(Exception):
    """Base class for controlled restore failures.

    ``hint`` carries the remediation step printed by the CLI; subclasses
    provide a default one.
    """

    exit_code = ExitCode.ACTION_FAILED
    default_hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint or self.default_hint


class ConfigurationError(RestoreError):
    """Raised when the restore configuration is invalid."""

    exit_code = ExitCode.CONFIG
    default_hint = "Check the configuration file and SERVER_RESTORE_* environment variables."


# --- Credentials -------------------------------------------------------------


class MissingCredential(RestoreError):
    exit_code = ExitCode.AUTH
    default_hint = "Export the credential environment variables or run 'setup-credentials'."


class AuthError(RestoreError):
    exit_code = ExitCode.AUTH
    default_hint = "Verify the credentials are correct and have not expired or been revoked."


# --- Backends ----------------------------------------------------------------


class NotFound(RestoreError):
    exit_code = ExitCode.NETWORK
    default_hint = "Run 'list-backups' to see which backups are available."


class TransientNetworkError(RestoreError):
    exit_code = ExitCode.NETWORK
    default_hint = "Check network connectivity and DNS resolution, then re-run the restore."


class OperationTimeout(RestoreError):
    exit_code = ExitCode.NETWORK
    default_hint = "The operation timed out; check connectivity or raise the timeout in the configuration."


# --- Archives ----------------------------------------------------------------


class CorruptArchive(RestoreError):
    exit_code = ExitCode.ARCHIVE
    default_hint = "Download the backup again or pick an older backup."


class UnsafeArchive(RestoreError):
    exit_code = ExitCode.ARCHIVE
    default_hint = "The archive contains entries outside the restore root; do not restore from it."


class DiskFull(RestoreError):
    exit_code = ExitCode.ARCHIVE
    default_hint = "Free disk space on the staging volume (df -h) and re-run the restore."


# --- Host actions ------------------------------------------------------------


class PackageInstallFailure(RestoreError):
    default_hint = "Install the package manually with apt-get once the restore completes."


class ServiceRestartFailure(RestoreError):
    default_hint = "Inspect the service with 'systemctl status' and 'journalctl -u'."


class FilePlacementFailure(RestoreError):
    default_hint = "Check permissions and free space on the destination filesystem."


class CommandFailure(RestoreError):
    pass


# --- Session -----------------------------------------------------------------


class RestoreInProgress(RestoreError):
    exit_code = ExitCode.BUSY
    default_hint = "Another restore is running on this host; wait for it to finish."


class RestoreCancelled(RestoreError):
    exit_code = ExitCode.CANCELLED
