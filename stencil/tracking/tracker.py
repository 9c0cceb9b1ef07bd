"""Customization tracker — detects which managed files the user has changed.

Each managed file gets a fingerprint of the template content it was
installed from. Comparing that against the file on disk tells us whether
an upgrade can overwrite it or must merge. A verbatim snapshot of the
installed content is kept under ``baselines/`` so the merge engine has a
real common ancestor to work from.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from stencil.fsutil import read_json, remove_path, write_bytes, write_json
from stencil.layout import ProjectLayout, normalize_relpath
from stencil.tracking.fingerprint import fingerprint, fingerprint_file
from stencil.tracking.models import (
    Customization,
    CustomizationData,
    CustomizationInfo,
    CustomizationReport,
    Customizations,
    Recommendation,
    SyncResult,
    TrackingEntry,
)

logger = logging.getLogger(__name__)

# Directories never walked when enumerating files
DEFAULT_IGNORE = {".git", "__pycache__", ".venv", "node_modules"}

_WILDCARD_RE = re.compile(r"[*?\[]")


def matches_any(relpath: str, patterns: list[str]) -> str | None:
    """Return the first glob in *patterns* matching *relpath*, if any."""
    for pattern in patterns:
        if fnmatch.fnmatchcase(relpath, pattern):
            return pattern
    return None


def _static_prefix(pattern: str) -> str:
    """Leading directory components of *pattern* that contain no wildcard."""
    parts: list[str] = []
    for part in pattern.split("/")[:-1]:
        if _WILDCARD_RE.search(part):
            break
        parts.append(part)
    return "/".join(parts)


class CustomizationTracker:
    """Maintains customizations.json and classifies managed files."""

    def __init__(
        self,
        layout: ProjectLayout,
        managed_dirs: list[str],
        preserve_patterns: list[str] | None = None,
    ) -> None:
        self.layout = layout
        self.managed_dirs = [normalize_relpath(d) for d in managed_dirs]
        self.default_patterns = list(preserve_patterns or [])

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> CustomizationData:
        path = self.layout.customizations_file
        if not path.is_file():
            return CustomizationData(preserve_patterns=list(self.default_patterns))
        return CustomizationData.model_validate(read_json(path))

    def save(self, data: CustomizationData) -> None:
        data.updated = datetime.now(timezone.utc)
        write_json(self.layout.customizations_file, data.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Baseline snapshots
    # ------------------------------------------------------------------

    def _baseline_path(self, relpath: str) -> Path:
        return self.layout.baselines_dir / relpath

    def baseline(self, path: str | Path) -> bytes | None:
        """The template content *path* was installed from, or None if unknown."""
        snapshot = self._baseline_path(self.layout.relative(path))
        return snapshot.read_bytes() if snapshot.is_file() else None

    def _store_baseline(self, relpath: str, content: bytes) -> None:
        write_bytes(self._baseline_path(relpath), content)

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track(self, path: str | Path, original_content: bytes | str) -> TrackingEntry:
        """Register *path* as template-owned, installed from *original_content*."""
        return self.track_many({self.layout.relative(path): original_content})[0]

    def track_many(self, files: dict[str, bytes | str]) -> list[TrackingEntry]:
        """Track several files in one load/save cycle."""
        data = self.load()
        entries: list[TrackingEntry] = []
        for raw_path, content in files.items():
            relpath = self.layout.relative(raw_path)
            if isinstance(content, str):
                content = content.encode("utf-8")
            fp = fingerprint(content)
            entry = TrackingEntry(
                path=relpath, original_fingerprint=fp, current_fingerprint=fp
            )
            data.tracked_files[relpath] = entry
            self._store_baseline(relpath, content)
            entries.append(entry)
            logger.debug("tracking %s (%s)", relpath, fp[:12])
        self.save(data)
        return entries

    def refresh(self, path: str | Path) -> TrackingEntry:
        """Recompute the current fingerprint of *path* from disk.

        Files with no entry are assumed to be user-authored.
        """
        relpath = self.layout.relative(path)
        data = self.load()
        entry = self._refresh_entry(data, relpath)
        self.save(data)
        return entry

    def _refresh_entry(self, data: CustomizationData, relpath: str) -> TrackingEntry:
        full = self.layout.resolve(relpath)
        current = fingerprint_file(full) if full.is_file() else None
        entry = data.tracked_files.get(relpath)
        if entry is None:
            entry = TrackingEntry(
                path=relpath,
                original_fingerprint=None,
                current_fingerprint=current,
                user_created=True,
            )
            data.tracked_files[relpath] = entry
            logger.debug("registered user-created file %s", relpath)
        else:
            # Deleted files keep their entry with no current fingerprint.
            entry.current_fingerprint = current
        entry.recompute()
        return entry

    def mark_as_original(self, path: str | Path) -> TrackingEntry:
        """Make the current content of *path* its new unmodified baseline."""
        relpath = self.layout.relative(path)
        content = self.layout.resolve(relpath).read_bytes()
        entry = self.track(relpath, content)
        logger.info("marked %s as original", relpath)
        return entry

    def forget(self, path: str | Path) -> None:
        """Drop the entry and baseline snapshot for *path*."""
        relpath = self.layout.relative(path)
        data = self.load()
        if data.tracked_files.pop(relpath, None) is not None:
            self.save(data)
        remove_path(self._baseline_path(relpath))

    def entry(self, path: str | Path) -> TrackingEntry | None:
        return self.load().tracked_files.get(self.layout.relative(path))

    # ------------------------------------------------------------------
    # Preserve patterns
    # ------------------------------------------------------------------

    def add_preserve_pattern(self, pattern: str) -> bool:
        """Add *pattern* if new. Returns True when the list changed."""
        data = self.load()
        if pattern in data.preserve_patterns:
            return False
        data.preserve_patterns.append(pattern)
        self.save(data)
        return True

    def matches_preserve_pattern(self, path: str | Path) -> str | None:
        return matches_any(self.layout.relative(path), self.load().preserve_patterns)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def is_customized(self, path: str | Path) -> bool:
        relpath = self.layout.relative(path)
        data = self.load()
        return self._is_customized(data, relpath)

    def _is_customized(self, data: CustomizationData, relpath: str) -> bool:
        entry = data.tracked_files.get(relpath)
        if entry is None:
            return matches_any(relpath, data.preserve_patterns) is not None
        if entry.user_created:
            return True
        full = self.layout.resolve(relpath)
        if not full.is_file():
            return True
        return fingerprint_file(full) != entry.original_fingerprint

    def info(self, path: str | Path) -> CustomizationInfo:
        relpath = self.layout.relative(path)
        data = self.load()
        entry = data.tracked_files.get(relpath)
        if entry is None:
            pattern = matches_any(relpath, data.preserve_patterns)
            return CustomizationInfo(
                tracked=False,
                customized=pattern is not None,
                reason=f"preserve pattern {pattern}" if pattern else "untracked",
            )

        full = self.layout.resolve(relpath)
        current = fingerprint_file(full) if full.is_file() else None
        if entry.user_created:
            reason = "user-created"
        elif current is None:
            reason = "deleted"
        elif current != entry.original_fingerprint:
            reason = "modified"
        else:
            reason = "unmodified"
        return CustomizationInfo(
            tracked=True,
            customized=reason != "unmodified",
            reason=reason,
            user_created=entry.user_created,
            modified=reason in {"modified", "deleted"},
            original_fingerprint=entry.original_fingerprint,
            current_fingerprint=current,
            tracked_since=entry.tracked_since,
        )

    def detect_all(self) -> Customizations:
        """Partition tracked, preserved and untracked managed files."""
        data = self.load()
        result = Customizations()

        for relpath, entry in sorted(data.tracked_files.items()):
            full = self.layout.resolve(relpath)
            if entry.user_created:
                result.user_created.append(Customization(path=relpath, type="user-file"))
                continue
            if not full.is_file():
                result.modified.append(Customization(
                    path=relpath,
                    type="deleted",
                    original_fingerprint=entry.original_fingerprint,
                ))
                continue
            current = fingerprint_file(full)
            if current != entry.original_fingerprint:
                result.modified.append(Customization(
                    path=relpath,
                    type="modified",
                    original_fingerprint=entry.original_fingerprint,
                    current_fingerprint=current,
                ))

        preserved: set[str] = set()
        for pattern in data.preserve_patterns:
            for relpath in self._files_matching(pattern):
                if relpath in data.tracked_files or relpath in preserved:
                    continue
                preserved.add(relpath)
                result.preserved.append(Customization(
                    path=relpath, type="preserved-pattern", pattern=pattern
                ))

        for relpath in self.managed_files():
            if relpath not in data.tracked_files and relpath not in preserved:
                result.untracked.append(Customization(path=relpath, type="untracked"))

        logger.debug(
            "detected %d modified, %d user-created, %d preserved, %d untracked",
            len(result.modified), len(result.user_created),
            len(result.preserved), len(result.untracked),
        )
        return result

    def report(self) -> CustomizationReport:
        details = self.detect_all()
        report = CustomizationReport(
            summary={
                "modified": len(details.modified),
                "user_created": len(details.user_created),
                "preserved": len(details.preserved),
                "untracked": len(details.untracked),
            },
            details=details,
        )
        if details.modified:
            report.recommendations.append(Recommendation(
                type="warning",
                message=(
                    f"{len(details.modified)} tracked file(s) have been modified. "
                    "These customizations will be merged, not overwritten, on upgrade."
                ),
            ))
        if details.untracked:
            report.recommendations.append(Recommendation(
                type="info",
                message=(
                    f"{len(details.untracked)} managed file(s) are not tracked. "
                    "Run 'stencil track' to track them."
                ),
            ))
        return report

    def sync_tracking(self) -> SyncResult:
        """Track every untracked managed file and refresh the known ones."""
        data = self.load()
        result = SyncResult()
        for relpath in self.managed_files():
            if relpath in data.tracked_files:
                self._refresh_entry(data, relpath)
                result.updated += 1
                continue
            if matches_any(relpath, data.preserve_patterns):
                continue
            content = self.layout.resolve(relpath).read_bytes()
            fp = fingerprint(content)
            data.tracked_files[relpath] = TrackingEntry(
                path=relpath, original_fingerprint=fp, current_fingerprint=fp
            )
            self._store_baseline(relpath, content)
            result.tracked += 1
        self.save(data)
        logger.info("tracking synced: %d new, %d refreshed", result.tracked, result.updated)
        return result

    # ------------------------------------------------------------------
    # File enumeration
    # ------------------------------------------------------------------

    def managed_files(self) -> list[str]:
        """Project-relative paths of every file under a managed directory."""
        files: set[str] = set()
        for directory in self.managed_dirs:
            files.update(self._walk(directory))
        return sorted(files)

    def _files_matching(self, pattern: str) -> list[str]:
        return [
            p for p in self._walk(_static_prefix(pattern))
            if fnmatch.fnmatchcase(p, pattern)
        ]

    def _walk(self, relative_dir: str) -> list[str]:
        base = self.layout.root / relative_dir if relative_dir else self.layout.root
        if base.is_file():
            return [self.layout.relative(base)]
        if not base.is_dir():
            return []
        found: list[str] = []
        for p in base.rglob("*"):
            if not p.is_file():
                continue
            rel = p.relative_to(self.layout.root)
            if any(part in DEFAULT_IGNORE for part in rel.parts):
                continue
            relpath = rel.as_posix()
            if self.layout.is_internal(relpath):
                continue
            if relpath.startswith(self.layout.state_relpath(self.layout.baselines_dir) + "/"):
                continue
            found.append(relpath)
        return found
