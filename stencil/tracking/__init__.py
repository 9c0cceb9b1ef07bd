"""Customization tracking: fingerprints, baselines and preserve patterns."""

from stencil.tracking.fingerprint import fingerprint, fingerprint_file, normalize
from stencil.tracking.models import (
    Customization,
    CustomizationData,
    CustomizationInfo,
    CustomizationReport,
    Customizations,
    SyncResult,
    TrackingEntry,
)
from stencil.tracking.tracker import CustomizationTracker, matches_any

__all__ = [
    "Customization",
    "CustomizationData",
    "CustomizationInfo",
    "CustomizationReport",
    "CustomizationTracker",
    "Customizations",
    "SyncResult",
    "TrackingEntry",
    "fingerprint",
    "fingerprint_file",
    "matches_any",
    "normalize",
]
