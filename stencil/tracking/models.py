"""Pydantic models for customization tracking."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TrackingEntry(BaseModel):
    """What stencil knows about one managed file."""

    path: str
    original_fingerprint: str | None = None
    current_fingerprint: str | None = None
    modified: bool = False
    user_created: bool = False
    tracked_since: datetime = Field(default_factory=_now)

    def recompute(self) -> None:
        """Derive ``modified`` from the two fingerprints."""
        self.modified = (
            not self.user_created
            and self.current_fingerprint != self.original_fingerprint
        )


class CustomizationData(BaseModel):
    """Persisted form of customizations.json."""

    version: str = "1.0.0"
    created: datetime = Field(default_factory=_now)
    updated: datetime = Field(default_factory=_now)
    tracked_files: dict[str, TrackingEntry] = Field(default_factory=dict)
    preserve_patterns: list[str] = Field(default_factory=list)


CustomizationType = Literal[
    "modified", "deleted", "user-file", "preserved-pattern", "untracked"
]


class Customization(BaseModel):
    path: str
    type: CustomizationType
    original_fingerprint: str | None = None
    current_fingerprint: str | None = None
    pattern: str | None = None


class Customizations(BaseModel):
    """Every managed or preserved file, partitioned by how it diverged."""

    modified: list[Customization] = Field(default_factory=list)
    user_created: list[Customization] = Field(default_factory=list)
    preserved: list[Customization] = Field(default_factory=list)
    untracked: list[Customization] = Field(default_factory=list)

    def paths(self) -> set[str]:
        return {
            c.path
            for group in (self.modified, self.user_created, self.preserved, self.untracked)
            for c in group
        }


class CustomizationInfo(BaseModel):
    tracked: bool
    customized: bool
    reason: str
    user_created: bool = False
    modified: bool = False
    original_fingerprint: str | None = None
    current_fingerprint: str | None = None
    tracked_since: datetime | None = None


class Recommendation(BaseModel):
    type: Literal["info", "warning"]
    message: str


class CustomizationReport(BaseModel):
    summary: dict[str, int]
    details: Customizations
    recommendations: list[Recommendation] = Field(default_factory=list)


class SyncResult(BaseModel):
    tracked: int = 0
    updated: int = 0
