from __future__ import annotations

import json
from pathlib import Path
from typing import List, Sequence

from .models import BackupArtifact, RestorationAction, RestorationReport


def render_artifacts(artifacts: Sequence[BackupArtifact]) -> str:
    if not artifacts:
        return "No backups found."
    lines = []
    for index, artifact in enumerate(artifacts, start=1):
        lines.append(
            f"{index:>4}  {artifact.created_at:%Y-%m-%d %H:%M:%S}  {_human_size(artifact.size):>9}  "
            f"{artifact.display_name}  [{artifact.backend_kind.label}]"
        )
    return "\n".join(lines)


def render_plan(plan: Sequence[RestorationAction]) -> str:
    lines = []
    for index, action in enumerate(plan, start=1):
        flag = "required" if action.required else "optional"
        lines.append(f"{index:>4}  {action.describe()}  ({flag})")
    return "\n".join(lines) if lines else "Nothing to do."


def render_report(report: RestorationReport) -> str:
    lines: List[str] = []
    if report.artifact:
        lines.append(f"Backup: {report.artifact.display_name} ({report.artifact.backend_kind.label})")
    for result in report.action_results:
        mark = "ok  " if not result.failed else "FAIL"
        line = f"  {mark} {result.action.describe()}"
        if result.error:
            line += f": {result.error}"
        lines.append(line)

    failed = len(report.failures)
    lines.append(
        f"Status: {report.overall_status.value} "
        f"({len(report.action_results) - failed} succeeded, {failed} failed)"
    )
    if report.unverified:
        lines.append("WARNING: backup archive is UNVERIFIED (no checksum available)")
    return "\n".join(lines)


def write_report(report: RestorationReport, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(report.to_dict(), fh, indent=2)


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"
