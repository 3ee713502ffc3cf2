"""Server restore orchestration package."""

from __future__ import annotations

from .config import load_config, RestoreConfig  # noqa: F401
from .orchestrator import RestoreOrchestrator  # noqa: F401
