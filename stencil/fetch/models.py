"""Pydantic models for the content fetcher."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

Origin = Literal["registry", "git", "local"]


class FetchResult(BaseModel):
    """A materialized upstream tree."""

    local_path: Path
    resolved_version: str
    from_cache: bool
    origin: Origin


class CachedFetch(BaseModel):
    """Sidecar record written next to each cache entry."""

    origin: Origin
    requested_version: str
    resolved_version: str
    fetched_at: datetime


class CacheEntry(BaseModel):
    name: str
    size: int
    modified: datetime
    age_seconds: float


class CacheInfo(BaseModel):
    exists: bool
    size: int = 0
    entries: list[CacheEntry] = Field(default_factory=list)
