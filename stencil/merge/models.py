"""Pydantic models for merge outcomes."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from stencil.config.models import MergeStrategyName

MergeKind = Literal["no_change", "fast_forward", "keep_ours", "clean", "conflicted"]


class MergeConflict(BaseModel):
    """One overlapping hunk. ``line`` is the 0-based baseline line index."""

    line: int
    ours_text: str
    theirs_text: str
    base_text: str = ""
    type: Literal["content", "binary"] = "content"


class MergeOutcome(BaseModel):
    kind: MergeKind
    merged: str | None = None
    conflicts: list[MergeConflict] = Field(default_factory=list)
    strategy: MergeStrategyName = "merge"
    # Hunks settled automatically by the ``ours``/``theirs`` strategies
    resolved: int = 0
    message: str = ""

    @property
    def has_conflicts(self) -> bool:
        return self.kind == "conflicted"

    @property
    def binary(self) -> bool:
        return any(c.type == "binary" for c in self.conflicts)
