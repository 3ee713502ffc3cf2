from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class BackendKind(str, Enum):
    CLOUD_STORAGE = "cloud-storage"
    SOURCE_HOSTING = "source-hosting"

    @property
    def label(self) -> str:
        if self is BackendKind.CLOUD_STORAGE:
            return "Google Drive"
        return "GitHub"


@dataclass(frozen=True)
class BackupArtifact:
    id: str
    display_name: str
    backend_kind: BackendKind
    size: int
    created_at: datetime
    checksum: Optional[str] = None


# --- Plan --------------------------------------------------------------------


class ActionKind(str, Enum):
    INSTALL_PACKAGE = "install_package"
    PLACE_FILE = "place_file"
    RESTART_SERVICE = "restart_service"
    RUN_COMMAND = "run_command"


@dataclass(frozen=True)
class RestorationAction:
    kind: ActionKind
    target: str
    payload_ref: Optional[str] = None
    required: bool = True

    def describe(self) -> str:
        if self.kind is ActionKind.PLACE_FILE:
            return f"place {self.target}"
        if self.kind is ActionKind.INSTALL_PACKAGE:
            return f"install {self.target}"
        if self.kind is ActionKind.RESTART_SERVICE:
            return f"restart {self.target}"
        return f"run '{self.target}'"


# --- Report ------------------------------------------------------------------


class ActionOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReportStatus(str, Enum):
    SUCCEEDED = "succeeded"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ActionResult:
    action: RestorationAction
    outcome: ActionOutcome
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.outcome is ActionOutcome.FAILED


@dataclass(frozen=True)
class RestorationReport:
    action_results: Tuple[ActionResult, ...]
    overall_status: ReportStatus
    started_at: datetime
    completed_at: datetime
    verified: bool = True
    artifact: Optional[BackupArtifact] = None
    schema_version: str = field(default="1.0.0", repr=False)

    @property
    def unverified(self) -> bool:
        return not self.verified

    @property
    def failures(self) -> Tuple[ActionResult, ...]:
        return tuple(result for result in self.action_results if result.failed)

    @property
    def required_failures(self) -> Tuple[ActionResult, ...]:
        return tuple(result for result in self.failures if result.action.required)

    def to_dict(self) -> Dict[str, Any]:
        artifact = None
        if self.artifact:
            artifact = dataclasses.asdict(self.artifact)
            artifact["backend_kind"] = self.artifact.backend_kind.value
            artifact["created_at"] = self.artifact.created_at.isoformat()
        return {
            "schema_version": self.schema_version,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "overall_status": self.overall_status.value,
            "verified": self.verified,
            "artifact": artifact,
            "action_results": [
                {
                    "kind": result.action.kind.value,
                    "target": result.action.target,
                    "payload_ref": result.action.payload_ref,
                    "required": result.action.required,
                    "outcome": result.outcome.value,
                    "error": result.error,
                }
                for result in self.action_results
            ],
        }
