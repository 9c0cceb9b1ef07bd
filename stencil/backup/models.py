"""Pydantic models for the backup store."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class BackupSet(BaseModel):
    """Metadata record stored next to each backup archive."""

    name: str
    created_at: datetime
    paths: list[str] = Field(description="Project-relative paths captured in the archive")
    absent: list[str] = Field(
        default_factory=list,
        description="Requested paths that did not exist when the backup was taken",
    )
    tool_version_at_backup: str
    size: int = 0


class FailedPath(BaseModel):
    path: str
    error: str


class RestoreResult(BaseModel):
    name: str
    restored_paths: list[str] = Field(default_factory=list)
    removed_paths: list[str] = Field(default_factory=list)
    failed_paths: list[FailedPath] = Field(default_factory=list)
    metadata: BackupSet

    @property
    def success(self) -> bool:
        return not self.failed_paths


class VerifyResult(BaseModel):
    archive_exists: bool = False
    archive_readable: bool = False
    metadata_exists: bool = False
    metadata_valid: bool = False

    @property
    def valid(self) -> bool:
        return all(
            (self.archive_exists, self.archive_readable, self.metadata_exists, self.metadata_valid)
        )


class BackupHistoryEntry(BaseModel):
    name: str
    timestamp: datetime
    type: Literal["backup", "restore"]
    paths: int | None = None
