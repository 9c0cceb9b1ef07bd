"""Version registry — persisted record of the installed template version."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from packaging.version import InvalidVersion, Version

from stencil import __version__
from stencil.config.models import COMPONENTS
from stencil.errors import AlreadyInitializedError, NotInitializedError
from stencil.fsutil import append_capped, read_json, write_json
from stencil.layout import ProjectLayout
from stencil.registry.models import (
    ChangeKind,
    HistoryEntry,
    UpgradeCheck,
    VersionRecord,
    VersionSummary,
)

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50

# MAJOR.MINOR.PATCH[-prerelease][+build], per semver.org.
SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*))*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


def is_semver(version: str) -> bool:
    return SEMVER_RE.match(version) is not None


def _parse(version: str) -> Version | None:
    """Ordering key for a semantic version, or None when *version* is not one.

    Build metadata is ignored. Pre-release tags PEP 440 has no spelling for
    sort just below their release.
    """
    match = SEMVER_RE.match(version)
    if match is None:
        return None
    core = ".".join(match.group(1, 2, 3))
    pre = match.group(4)
    if pre is None:
        return Version(core)
    try:
        parsed = Version(f"{core}-{pre}")
    except InvalidVersion:
        return Version(f"{core}.dev0")
    # "1.0.0-1" reads as a post-release under PEP 440.
    return parsed if parsed.is_prerelease else Version(f"{core}.dev0")


def change_kind(current: str, latest: str) -> ChangeKind:
    """Classify the difference between two versions.

    Returns ``unknown`` when either side is not a semantic version.
    """
    cur, new = _parse(current), _parse(latest)
    if cur is None or new is None:
        return "unknown"
    if cur == new:
        return "none"
    if cur.major != new.major:
        return "major"
    if cur.minor != new.minor:
        return "minor"
    return "patch"


def is_newer(current: str, latest: str) -> bool:
    """True iff *latest* is a strictly greater semantic version than *current*."""
    cur, new = _parse(current), _parse(latest)
    return cur is not None and new is not None and new > cur


class VersionRegistry:
    """Reads and writes the project's VersionRecord and upgrade history.

    Every call loads from disk and saves back; nothing is cached between
    operations.
    """

    def __init__(self, layout: ProjectLayout, history_limit: int = HISTORY_LIMIT) -> None:
        self.layout = layout
        self.history_limit = history_limit

    # -- persistence -------------------------------------------------------

    def exists(self) -> bool:
        return self.layout.version_file.is_file()

    def load(self) -> VersionRecord:
        """Read the persisted record; raises NotInitializedError if absent."""
        if not self.exists():
            raise NotInitializedError(str(self.layout.version_file))
        record = VersionRecord.model_validate(read_json(self.layout.version_file))
        # Components not present in older records default to the template version.
        for name in COMPONENTS:
            record.components.setdefault(name, record.template_version)
        return record

    def save(self, record: VersionRecord) -> None:
        write_json(self.layout.version_file, record.model_dump(mode="json"))

    # -- operations --------------------------------------------------------

    def initialize(self, version: str | None = None, *, force: bool = False) -> VersionRecord:
        """Create the record with every component stamped at *version*."""
        if self.exists() and not force:
            raise AlreadyInitializedError(
                str(self.layout.version_file), self.load().template_version
            )
        version = version or __version__
        record = VersionRecord(
            tool_version=version,
            template_version=version,
            installed_at=datetime.now(timezone.utc),
            components={name: version for name in COMPONENTS},
        )
        self.save(record)
        logger.info("initialized version record at %s", version)
        return record

    def current(self) -> VersionRecord:
        """Return the record, auto-initializing with the tool's own version."""
        try:
            return self.load()
        except NotInitializedError:
            logger.info("no version record found; initializing at %s", __version__)
            return self.initialize(__version__)

    def available_version(self, override: str | None = None) -> str:
        """The version an upgrade would move to: explicit override or this tool's version."""
        return override or __version__

    def check_upgrade(self, latest: str | None = None) -> UpgradeCheck:
        current = self.current().template_version
        latest = self.available_version(latest)
        return UpgradeCheck(
            available=is_newer(current, latest),
            current=current,
            latest=latest,
            change_kind=change_kind(current, latest),
        )

    def record_upgrade(
        self,
        new_version: str,
        component_overrides: dict[str, str] | None = None,
    ) -> VersionRecord:
        record = self.current()
        record.tool_version = new_version
        record.template_version = new_version
        record.last_upgrade_at = datetime.now(timezone.utc)
        if component_overrides:
            unknown = sorted(set(component_overrides) - set(COMPONENTS))
            if unknown:
                raise ValueError(f"Unknown component(s): {unknown}")
            record.components.update(component_overrides)
        else:
            record.components = {name: new_version for name in COMPONENTS}
        self.save(record)
        self._append_history(new_version, "upgrade")
        logger.info("recorded upgrade to %s", new_version)
        return record

    def rollback(self, previous_version: str) -> VersionRecord:
        record = self.current()
        record.tool_version = previous_version
        record.template_version = previous_version
        record.components = {name: previous_version for name in COMPONENTS}
        self.save(record)
        self._append_history(previous_version, "rollback")
        logger.info("recorded rollback to %s", previous_version)
        return record

    def history(self) -> list[HistoryEntry]:
        path = self.layout.upgrade_history_file
        if not path.is_file():
            return []
        return [HistoryEntry.model_validate(e) for e in read_json(path)]

    def summary(self, latest: str | None = None) -> VersionSummary:
        current = self.current()
        check = self.check_upgrade(latest)
        return VersionSummary(current=current, latest=check.latest, upgrade=check)

    def _append_history(self, version: str, kind: str) -> None:
        entry = HistoryEntry(
            version=version, timestamp=datetime.now(timezone.utc), type=kind
        )
        append_capped(
            self.layout.upgrade_history_file,
            entry.model_dump(mode="json"),
            self.history_limit,
        )
