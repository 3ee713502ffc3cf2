from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Iterable, Iterator, List, Optional, Protocol, Set

from ..models import BackupArtifact

LOG = logging.getLogger(__name__)

_FILENAME_TIMESTAMP = re.compile(r"(\d{8})[_T-]?(\d{6})")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class BackendAdapter(Protocol):
    def list_artifacts(self) -> Iterator[BackupArtifact]:
        ...

    def fetch(self, artifact_id: str) -> Iterator[bytes]:
        ...


def merge_artifacts(artifacts: Iterable[BackupArtifact]) -> List[BackupArtifact]:
    """Drop duplicate ids (first wins) and order newest first.

    Pages may arrive in any order when fetched concurrently, so the result is
    always sorted on ``created_at`` with the id as a tie breaker.
    """
    seen: Set[str] = set()
    unique: List[BackupArtifact] = []
    for artifact in artifacts:
        if artifact.id in seen:
            LOG.debug("Skipping duplicate artifact id %s", artifact.id)
            continue
        seen.add(artifact.id)
        unique.append(artifact)
    # Two stable passes: id ascending, then created_at descending.
    unique.sort(key=lambda item: item.id)
    unique.sort(key=lambda item: item.created_at, reverse=True)
    return unique


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as returned by the Drive and GitHub APIs."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def filename_timestamp(name: str) -> Optional[datetime]:
    """Extract the ``YYYYmmdd_HHMMSS`` stamp the backup job puts in file names."""
    match = _FILENAME_TIMESTAMP.search(name)
    if not match:
        return None
    try:
        stamp = datetime.strptime(match.group(1) + match.group(2), "%Y%m%d%H%M%S")
    except ValueError:
        return None
    return stamp.replace(tzinfo=timezone.utc)


def name_matches(pattern: Optional[re.Pattern], name: str) -> bool:
    if pattern is None:
        return True
    return bool(pattern.search(name))
