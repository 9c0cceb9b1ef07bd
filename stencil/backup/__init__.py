"""Backup store: archived snapshots used to undo upgrades."""

from stencil.backup.models import (
    BackupHistoryEntry,
    BackupSet,
    FailedPath,
    RestoreResult,
    VerifyResult,
)
from stencil.backup.store import BackupStore

__all__ = [
    "BackupHistoryEntry",
    "BackupSet",
    "BackupStore",
    "FailedPath",
    "RestoreResult",
    "VerifyResult",
]
