"""Pydantic models for upgrade reports and the pending-conflict record."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from stencil.backup.models import BackupSet, RestoreResult
from stencil.merge.models import MergeConflict, MergeKind
from stencil.registry.models import HistoryEntry, UpgradeCheck
from stencil.tracking.models import Customizations


class UpgradeState(str, Enum):
    IDLE = "idle"
    CHECKING_VERSION = "checking_version"
    DETECTING_CUSTOMIZATIONS = "detecting_customizations"
    BACKING_UP = "backing_up"
    FETCHING = "fetching"
    MERGING = "merging"
    VALIDATING = "validating"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


UpgradeStatus = Literal[
    "up_to_date", "preview", "committed", "conflicts_pending", "rolled_back"
]

FileAction = Literal[
    "add",          # new upstream file, nothing local
    "overwrite",    # untouched locally, replaced with upstream
    "merge",        # customized locally, routed through the merge engine
    "unchanged",    # local content already matches upstream
    "skip",         # user-owned: user-created or matching a preserve pattern
    "keep_deleted", # tracked file the user deleted
]


class FileChange(BaseModel):
    path: str
    action: FileAction
    reason: str = ""
    outcome: MergeKind | None = None


class FileConflict(BaseModel):
    path: str
    conflicts: list[MergeConflict] = Field(default_factory=list)

    @property
    def binary(self) -> bool:
        return any(c.type == "binary" for c in self.conflicts)


class UpgradeReport(BaseModel):
    """Everything an upgrade operation did, in order."""

    status: UpgradeStatus
    from_version: str
    to_version: str
    component: str | None = None
    check: UpgradeCheck | None = None
    states: list[UpgradeState] = Field(default_factory=lambda: [UpgradeState.IDLE])
    customizations: Customizations | None = None
    changes: list[FileChange] = Field(default_factory=list)
    conflicts: list[FileConflict] = Field(default_factory=list)
    backup: str | None = None
    from_cache: bool = False
    error: str | None = None

    @property
    def state(self) -> UpgradeState:
        return self.states[-1]

    def enter(self, state: UpgradeState) -> None:
        self.states.append(state)

    def paths(self, *actions: str) -> list[str]:
        return [c.path for c in self.changes if c.action in actions]

    @property
    def written(self) -> list[str]:
        """Paths whose content on disk was replaced."""
        return [
            c.path for c in self.changes
            if c.action in ("add", "overwrite")
            or (c.action == "merge" and c.outcome in ("fast_forward", "clean", "conflicted"))
        ]


class PendingUpgrade(BaseModel):
    """Persisted state of an apply that stopped at conflicts.

    ``baselines`` lists the non-conflicted paths whose upstream content
    becomes their tracking baseline once the upgrade commits.
    """

    version: str
    from_version: str
    component: str | None = None
    backup: str
    created_at: datetime
    conflicts: list[str]
    baselines: list[str] = Field(default_factory=list)
    merged: list[str] = Field(default_factory=list)


class RollbackReport(BaseModel):
    backup: BackupSet
    version: str
    restore: RestoreResult


class HistoryView(BaseModel):
    upgrades: list[HistoryEntry] = Field(default_factory=list)
    backups: list[BackupSet] = Field(default_factory=list)
