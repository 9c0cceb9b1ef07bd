"""Three-way merge engine."""

from stencil.merge.engine import (
    CONFLICT_MARKERS,
    MergeEngine,
    has_conflict_markers,
    is_text,
)
from stencil.merge.models import MergeConflict, MergeOutcome

__all__ = [
    "MergeEngine",
    "MergeOutcome",
    "MergeConflict",
    "CONFLICT_MARKERS",
    "has_conflict_markers",
    "is_text",
]
