"""Pydantic models for the version registry."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ChangeKind = Literal["major", "minor", "patch", "none", "unknown"]


class VersionRecord(BaseModel):
    """Which template version a project has installed, per component."""

    tool_version: str
    template_version: str
    installed_at: datetime
    last_upgrade_at: datetime | None = None
    components: dict[str, str] = Field(default_factory=dict)


class UpgradeCheck(BaseModel):
    """Result of comparing the installed version with the available one."""

    available: bool
    current: str
    latest: str
    change_kind: ChangeKind


class HistoryEntry(BaseModel):
    version: str
    timestamp: datetime
    type: Literal["upgrade", "rollback"]


class VersionSummary(BaseModel):
    current: VersionRecord
    latest: str
    upgrade: UpgradeCheck
