"""Upgrade orchestration: check, preview, apply, resolve, rollback, history."""

from stencil.upgrade.lock import project_lock
from stencil.upgrade.models import (
    FileChange,
    FileConflict,
    HistoryView,
    PendingUpgrade,
    RollbackReport,
    UpgradeReport,
    UpgradeState,
)
from stencil.upgrade.orchestrator import UpgradeOrchestrator, default_backup_paths

__all__ = [
    "UpgradeOrchestrator",
    "UpgradeReport",
    "UpgradeState",
    "FileChange",
    "FileConflict",
    "PendingUpgrade",
    "RollbackReport",
    "HistoryView",
    "default_backup_paths",
    "project_lock",
]
