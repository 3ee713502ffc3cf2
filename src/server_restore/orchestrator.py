from __future__ import annotations

import errno
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import requests

from .archive import ArchiveResolver
from .backends import BackendAdapter, GitHubAPI, create_backend
from .config import RestoreConfig
from .credentials import Credential, CredentialSource, CredentialStore, OAuthCredential, TokenCredential
from .errors import (
    DiskFull,
    ExitCode,
    NotFound,
    RestoreCancelled,
    RestoreError,
    TransientNetworkError,
)
from .executor import Executor
from .host import AptPackageManager, LocalFilePlacer, SubprocessCommandRunner, SystemdServiceManager
from .manifest import load_manifest
from .models import BackendKind, BackupArtifact, ReportStatus, RestorationAction, RestorationReport
from .planner import plan, plan_base_packages
from .session import open_session

LOG = logging.getLogger(__name__)

LATEST = "latest"

Selector = Callable[[Sequence[BackupArtifact]], Optional[BackupArtifact]]
BackendFactory = Callable[[BackendKind, RestoreConfig, Credential, CredentialStore], BackendAdapter]
ExecutorFactory = Callable[[RestoreConfig, Optional[threading.Event]], Executor]


class Operation(str, Enum):
    RESTORE_MINIMAL = "restore-minimal"
    RESTORE_FULL = "restore-full"
    LIST_BACKUPS = "list-backups"
    SETUP_CREDENTIALS = "setup-credentials"
    INSTALL_BASE_PACKAGES = "install-base-packages"
    EXIT = "exit"


RESTORE_MODES: Dict[Operation, Tuple[BackendKind, str]] = {
    Operation.RESTORE_MINIMAL: (BackendKind.CLOUD_STORAGE, "minimal"),
    Operation.RESTORE_FULL: (BackendKind.SOURCE_HOSTING, "full"),
}

ALL_BACKENDS: Tuple[BackendKind, ...] = (BackendKind.CLOUD_STORAGE, BackendKind.SOURCE_HOSTING)


@dataclass(frozen=True)
class OperationResult:
    operation: Operation
    exit_code: ExitCode
    report: Optional[RestorationReport] = None
    artifacts: Tuple[BackupArtifact, ...] = ()
    plan: Tuple[RestorationAction, ...] = ()
    errors: Tuple[RestoreError, ...] = ()

    @property
    def success(self) -> bool:
        return self.exit_code is ExitCode.OK


def build_executor(config: RestoreConfig, cancel_event: Optional[threading.Event] = None) -> Executor:
    timeouts = config.timeouts
    return Executor(
        packages=AptPackageManager(timeout=timeouts.package),
        services=SystemdServiceManager(timeout=timeouts.service),
        files=LocalFilePlacer(),
        commands=SubprocessCommandRunner(timeout=timeouts.command),
        cancel_event=cancel_event,
    )


def report_exit_code(report: RestorationReport) -> ExitCode:
    if report.overall_status is ReportStatus.ABORTED:
        return ExitCode.ACTION_FAILED
    if report.overall_status is ReportStatus.CANCELLED:
        return ExitCode.CANCELLED
    if report.overall_status is ReportStatus.COMPLETED_WITH_ERRORS:
        return ExitCode.PARTIAL
    return ExitCode.OK


class RestoreOrchestrator:
    """Drives credential resolution, backup selection and plan execution for each operation.

    Every operation returns an :class:`OperationResult`; backend, network and
    filesystem failures are converted into results instead of propagating.
    """

    def __init__(
        self,
        config: RestoreConfig,
        credential_store: CredentialStore,
        backend_factory: BackendFactory = create_backend,
        executor_factory: ExecutorFactory = build_executor,
        resolver: Optional[ArchiveResolver] = None,
        credential_source: CredentialSource = CredentialSource.ENV,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._config = config
        self._store = credential_store
        self._backend_factory = backend_factory
        self._executor_factory = executor_factory
        self._resolver = resolver or ArchiveResolver()
        self._source = credential_source
        self._cancel_event = cancel_event

    @property
    def config(self) -> RestoreConfig:
        return self._config

    @property
    def cancel_event(self) -> Optional[threading.Event]:
        return self._cancel_event

    def run(
        self,
        operation: Operation,
        *,
        backends: Optional[Sequence[BackendKind]] = None,
        selection: Optional[str] = None,
        selector: Optional[Selector] = None,
        dry_run: bool = False,
        keep_staging: Optional[bool] = None,
    ) -> OperationResult:
        kinds = tuple(backends) if backends else ALL_BACKENDS
        try:
            if operation in RESTORE_MODES:
                return self.restore(
                    operation,
                    selection=selection,
                    selector=selector,
                    dry_run=dry_run,
                    keep_staging=keep_staging,
                )
            if operation is Operation.LIST_BACKUPS:
                return self.list_backups(kinds)
            if operation is Operation.SETUP_CREDENTIALS:
                return self.setup_credentials(kinds)
            if operation is Operation.INSTALL_BASE_PACKAGES:
                return self.install_base_packages(dry_run=dry_run)
            return OperationResult(operation=operation, exit_code=ExitCode.OK)
        except RestoreError as exc:
            return self._failure(operation, exc)
        except requests.RequestException as exc:
            return self._failure(operation, TransientNetworkError(f"Network error: {exc}"))
        except OSError as exc:
            if exc.errno == errno.ENOSPC:
                return self._failure(operation, DiskFull(f"No space left on device: {exc}"))
            return self._failure(operation, RestoreError(f"Filesystem error: {exc}"))

    # Operations ------------------------------------------------------------
    def restore(
        self,
        operation: Operation,
        *,
        selection: Optional[str] = None,
        selector: Optional[Selector] = None,
        dry_run: bool = False,
        keep_staging: Optional[bool] = None,
    ) -> OperationResult:
        kind, layout_name = RESTORE_MODES[operation]
        layout = self._config.layouts[layout_name]
        LOG.info("Starting %s restore from %s", layout_name, kind.label)

        credential = self._store.resolve(kind, self._source)
        backend = self._backend_factory(kind, self._config, credential, self._store)
        artifacts = tuple(backend.list_artifacts())
        if not artifacts:
            raise NotFound(f"No backups found on {kind.label}")
        artifact = self._select(artifacts, selection, selector)
        LOG.info("Selected backup %s (%s)", artifact.display_name, artifact.id)
        self._check_cancelled()

        with open_session(kind, credential, self._config.staging, keep=keep_staging) as session:
            tree = self._resolver.resolve(backend.fetch(artifact.id), session.staging_dir, artifact)
            if not tree.verified:
                LOG.warning("Backup %s could not be verified; restoring anyway", artifact.display_name)

            manifest = load_manifest(tree, layout.manifest_path)
            actions = plan(tree, manifest, layout)
            if layout.install_base_packages:
                actions = plan_base_packages(self._config.base_setup) + actions

            if dry_run:
                LOG.info("Dry run: %d action(s) planned, nothing executed", len(actions))
                return OperationResult(
                    operation=operation,
                    exit_code=ExitCode.OK,
                    artifacts=(artifact,),
                    plan=actions,
                )

            self._check_cancelled()
            report = self._executor_factory(self._config, self._cancel_event).execute(
                actions, verified=tree.verified, artifact=artifact
            )

        LOG.info("Restore finished with status %s", report.overall_status.value)
        return OperationResult(
            operation=operation,
            exit_code=report_exit_code(report),
            report=report,
            artifacts=(artifact,),
            plan=actions,
        )

    def list_backups(self, kinds: Sequence[BackendKind] = ALL_BACKENDS) -> OperationResult:
        artifacts: List[BackupArtifact] = []
        errors: List[RestoreError] = []
        for kind in kinds:
            try:
                credential = self._store.resolve(kind, self._source)
                backend = self._backend_factory(kind, self._config, credential, self._store)
                found = list(backend.list_artifacts())
            except RestoreError as exc:
                LOG.error("Listing %s backups failed: %s", kind.label, exc.message)
                errors.append(exc)
                continue
            LOG.info("%d backup(s) available on %s", len(found), kind.label)
            artifacts.extend(found)

        exit_code = errors[0].exit_code if errors else ExitCode.OK
        return OperationResult(
            operation=Operation.LIST_BACKUPS,
            exit_code=exit_code,
            artifacts=tuple(artifacts),
            errors=tuple(errors),
        )

    def setup_credentials(self, kinds: Sequence[BackendKind] = ALL_BACKENDS) -> OperationResult:
        errors: List[RestoreError] = []
        for kind in kinds:
            try:
                credential = self._store.resolve(kind, self._source)
                self._validate(credential)
            except RestoreError as exc:
                LOG.error("%s credentials invalid: %s", kind.label, exc.message)
                errors.append(exc)
                continue
            LOG.info("%s credentials validated", kind.label)

        exit_code = errors[0].exit_code if errors else ExitCode.OK
        return OperationResult(operation=Operation.SETUP_CREDENTIALS, exit_code=exit_code, errors=tuple(errors))

    def install_base_packages(self, dry_run: bool = False) -> OperationResult:
        actions = plan_base_packages(self._config.base_setup)
        if dry_run:
            return OperationResult(operation=Operation.INSTALL_BASE_PACKAGES, exit_code=ExitCode.OK, plan=actions)
        report = self._executor_factory(self._config, self._cancel_event).execute(actions)
        return OperationResult(
            operation=Operation.INSTALL_BASE_PACKAGES,
            exit_code=report_exit_code(report),
            report=report,
            plan=actions,
        )

    # Internal helpers ------------------------------------------------------
    def _select(
        self,
        artifacts: Sequence[BackupArtifact],
        selection: Optional[str],
        selector: Optional[Selector],
    ) -> BackupArtifact:
        if selection is None and selector is not None:
            chosen = selector(artifacts)
            if chosen is None:
                raise RestoreCancelled("No backup selected")
            return chosen

        if selection is None or selection == LATEST:
            return artifacts[0]

        for artifact in artifacts:
            if selection in (artifact.id, artifact.display_name):
                return artifact
        raise NotFound(f"Backup '{selection}' not found")

    def _validate(self, credential: Credential) -> None:
        if isinstance(credential, OAuthCredential):
            self._store.refresh(credential)
        elif isinstance(credential, TokenCredential):
            github = self._config.github
            GitHubAPI(credential.token, base_url=github.api_url, timeout=self._config.timeouts.http).get("user")

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise RestoreCancelled("Restore cancelled")

    @staticmethod
    def _failure(operation: Operation, error: RestoreError) -> OperationResult:
        LOG.error("%s failed: %s", operation.value, error.message)
        return OperationResult(operation=operation, exit_code=error.exit_code, errors=(error,))
