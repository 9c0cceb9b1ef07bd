"""Version registry: installed template version and upgrade history."""

from stencil.registry.models import HistoryEntry, UpgradeCheck, VersionRecord, VersionSummary
from stencil.registry.registry import VersionRegistry, change_kind, is_newer, is_semver

__all__ = [
    "HistoryEntry",
    "UpgradeCheck",
    "VersionRecord",
    "VersionRegistry",
    "VersionSummary",
    "change_kind",
    "is_newer",
    "is_semver",
]
