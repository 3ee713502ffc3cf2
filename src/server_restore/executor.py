from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .errors import RestoreError
from .host import CommandRunner, FilePlacer, PackageManager, ServiceManager
from .models import (
    ActionKind,
    ActionOutcome,
    ActionResult,
    BackupArtifact,
    ReportStatus,
    RestorationAction,
    RestorationReport,
)

LOG = logging.getLogger(__name__)


class Executor:
    """Runs a restoration plan one action at a time.

    A failed optional action is recorded and skipped. A failed required
    action stops the run; later actions are never dispatched. Cancellation is
    honoured between actions only. ``execute`` always returns a report.
    """

    def __init__(
        self,
        packages: PackageManager,
        services: ServiceManager,
        files: FilePlacer,
        commands: CommandRunner,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._cancel_event = cancel_event
        self._handlers: Dict[ActionKind, Callable[[RestorationAction], None]] = {
            ActionKind.INSTALL_PACKAGE: lambda action: packages.install(action.target),
            ActionKind.RESTART_SERVICE: lambda action: services.restart(action.target),
            ActionKind.PLACE_FILE: lambda action: files.place(Path(action.payload_ref or ""), Path(action.target)),
            ActionKind.RUN_COMMAND: lambda action: commands.run(action.target),
        }

    def execute(
        self,
        plan: Sequence[RestorationAction],
        verified: bool = True,
        artifact: Optional[BackupArtifact] = None,
    ) -> RestorationReport:
        actions = tuple(plan)
        total = len(actions)
        started_at = datetime.now(timezone.utc)
        results: List[ActionResult] = []
        status = ReportStatus.SUCCEEDED

        for index, action in enumerate(actions, start=1):
            if self._cancel_event is not None and self._cancel_event.is_set():
                LOG.warning("Restore cancelled before action %d/%d", index, total)
                status = ReportStatus.CANCELLED
                break

            LOG.info("[%d/%d] %s", index, total, action.describe())
            error = self._dispatch(action)
            if error is None:
                results.append(ActionResult(action=action, outcome=ActionOutcome.SUCCEEDED))
                continue

            results.append(ActionResult(action=action, outcome=ActionOutcome.FAILED, error=error))
            if action.required:
                LOG.error(
                    "Required action '%s' failed: %s; skipping %d remaining action(s)",
                    action.describe(),
                    error,
                    total - index,
                )
                status = ReportStatus.ABORTED
                break
            LOG.warning("Optional action '%s' failed: %s", action.describe(), error)
            status = ReportStatus.COMPLETED_WITH_ERRORS

        return RestorationReport(
            action_results=tuple(results),
            overall_status=status,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            verified=verified,
            artifact=artifact,
        )

    def _dispatch(self, action: RestorationAction) -> Optional[str]:
        try:
            self._handlers[action.kind](action)
        except RestoreError as exc:
            return exc.message
        except OSError as exc:
            return str(exc)
        except Exception as exc:  # noqa: BLE001
            LOG.exception("Unexpected error during '%s'", action.describe())
            return f"{type(exc).__name__}: {exc}"
        return None
