"""Upgrade orchestrator: sequences registry, tracker, backup, fetcher and merger.

apply:  CheckingVersion -> DetectingCustomizations -> BackingUp -> Fetching
        -> Merging -> Validating -> Committed | RolledBack

The version record and tracking baselines are only written once an apply
has validated with no conflicts (or a later ``resolve`` clears the last
one), or by an explicit rollback. Everything before that point can be
undone from the backup taken in BackingUp.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

import httpx

from stencil.backup import BackupStore
from stencil.config.models import StencilConfig
from stencil.errors import (
    BackupError,
    BackupNotFoundError,
    ConflictsPendingError,
    NoPendingUpgradeError,
    RestoreError,
    UnresolvedConflictError,
    ValidationFailedError,
)
from stencil.fetch import ContentFetcher
from stencil.fsutil import read_json, write_bytes, write_json
from stencil.layout import ProjectLayout
from stencil.merge import MergeEngine, has_conflict_markers, is_text
from stencil.registry import VersionRegistry
from stencil.registry.models import UpgradeCheck, VersionRecord
from stencil.tracking import CustomizationTracker
from stencil.tracking.fingerprint import fingerprint, fingerprint_file
from stencil.tracking.models import CustomizationData, SyncResult
from stencil.tracking.tracker import matches_any
from stencil.upgrade.lock import project_lock
from stencil.upgrade.models import (
    FileAction,
    FileChange,
    FileConflict,
    HistoryView,
    PendingUpgrade,
    RollbackReport,
    UpgradeReport,
    UpgradeState,
)

logger = logging.getLogger(__name__)


def default_backup_paths(config: StencilConfig, layout: ProjectLayout) -> list[str]:
    """Managed directories plus the state the upgrade may rewrite."""
    return list(config.components.values()) + [
        layout.state_relpath(layout.version_file),
        layout.state_relpath(layout.customizations_file),
        layout.state_relpath(layout.baselines_dir),
    ]


class UpgradeOrchestrator:
    """User-facing upgrade operations over one project."""

    def __init__(
        self,
        layout: ProjectLayout,
        config: StencilConfig,
        registry: VersionRegistry,
        tracker: CustomizationTracker,
        backups: BackupStore,
        fetcher: ContentFetcher,
    ) -> None:
        self.layout = layout
        self.config = config
        self.registry = registry
        self.tracker = tracker
        self.backups = backups
        self.fetcher = fetcher

    @classmethod
    def from_config(
        cls,
        root: str | Path,
        config: StencilConfig,
        client: httpx.Client | None = None,
    ) -> UpgradeOrchestrator:
        layout = ProjectLayout.for_root(root, config.state_dir)
        managed = list(config.components.values())
        return cls(
            layout=layout,
            config=config,
            registry=VersionRegistry(layout, history_limit=config.backup.history_limit),
            tracker=CustomizationTracker(
                layout, managed, preserve_patterns=config.tracking.preserve_patterns
            ),
            backups=BackupStore(
                layout,
                default_backup_paths(config, layout),
                history_limit=config.backup.history_limit,
            ),
            fetcher=ContentFetcher(layout, config.source, managed, client=client),
        )

    # ------------------------------------------------------------------
    # Read-only operations
    # ------------------------------------------------------------------

    def check_upgrade(self, version: str | None = None) -> UpgradeCheck:
        return self.registry.check_upgrade(version or self.config.target_version)

    def preview_upgrade(
        self,
        version: str | None = None,
        *,
        component: str | None = None,
        force: bool = False,
    ) -> UpgradeReport:
        """What an apply would do to the files known locally. Touches nothing."""
        dirs = self.config.managed_dirs(component)
        check = self.check_upgrade(version)
        report = self._new_report(check, component)
        report.status = "preview"
        if not check.available and not force:
            report.status = "up_to_date"
            return report

        report.enter(UpgradeState.DETECTING_CUSTOMIZATIONS)
        report.customizations = self.tracker.detect_all()
        data = self.tracker.load()
        candidates = set(data.tracked_files) | {
            c.path for c in report.customizations.preserved
        }
        for relpath in sorted(candidates):
            if not _under(relpath, dirs.values()):
                continue
            action, reason = self._classify(data, relpath, force)
            report.changes.append(FileChange(path=relpath, action=action, reason=reason))
        return report

    def history(self) -> HistoryView:
        return HistoryView(upgrades=self.registry.history(), backups=self.backups.list())

    def pending(self) -> PendingUpgrade | None:
        path = self.layout.pending_file
        if not path.is_file():
            return None
        return PendingUpgrade.model_validate(read_json(path))

    def validate(self) -> list[str]:
        """Required top-level paths that are missing."""
        return [
            p for p in self.config.validation.required_paths
            if not self.layout.resolve(p).exists()
        ]

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def initialize(
        self, version: str | None = None, *, force: bool = False
    ) -> tuple[VersionRecord, SyncResult]:
        """Create the version record and track the managed files already present."""
        with project_lock(self.layout):
            record = self.registry.initialize(version, force=force)
            synced = self.tracker.sync_tracking()
        return record, synced

    def apply_upgrade(
        self,
        version: str | None = None,
        *,
        component: str | None = None,
        force: bool = False,
        strategy: str | None = None,
    ) -> UpgradeReport:
        with project_lock(self.layout):
            return self._apply(version, component, force, strategy)

    def resolve(self, paths: list[str] | None = None) -> UpgradeReport:
        """Accept the on-disk content of conflicted files.

        Once no conflicts remain the pending upgrade is validated and
        committed.
        """
        with project_lock(self.layout):
            return self._resolve(paths)

    def rollback_upgrade(self, name: str | None = None) -> RollbackReport:
        """Restore the newest (or named) backup and revert the version record."""
        with project_lock(self.layout):
            backup = self.backups.get(name) if name else self.backups.latest()
            if backup is None:
                raise BackupNotFoundError("latest")
            if not self.backups.verify(backup.name).valid:
                raise BackupError(backup.name, ValueError("backup failed verification"))

            result = self.backups.restore(backup.name)
            if not result.success:
                raise RestoreError(result)
            self.registry.rollback(backup.tool_version_at_backup)
            self.layout.pending_file.unlink(missing_ok=True)
            logger.info(
                "rolled back to %s from backup %s", backup.tool_version_at_backup, backup.name
            )
            return RollbackReport(
                backup=backup, version=backup.tool_version_at_backup, restore=result
            )

    # ------------------------------------------------------------------
    # Apply internals
    # ------------------------------------------------------------------

    def _new_report(self, check: UpgradeCheck, component: str | None) -> UpgradeReport:
        report = UpgradeReport(
            status="up_to_date",
            from_version=check.current,
            to_version=check.latest,
            component=component,
            check=check,
        )
        report.enter(UpgradeState.CHECKING_VERSION)
        return report

    def _apply(
        self,
        version: str | None,
        component: str | None,
        force: bool,
        strategy: str | None,
    ) -> UpgradeReport:
        pending = self.pending()
        if pending is not None:
            raise ConflictsPendingError(pending.version, pending.conflicts)

        dirs = self.config.managed_dirs(component)
        check = self.check_upgrade(version)
        report = self._new_report(check, component)
        if not check.available and not force:
            logger.info("already at %s; nothing to do", check.current)
            return report

        report.enter(UpgradeState.DETECTING_CUSTOMIZATIONS)
        report.customizations = self.tracker.detect_all()

        report.enter(UpgradeState.BACKING_UP)
        backup = self.backups.create(f"upgrade-{check.latest}", version=check.current)
        report.backup = backup.name

        report.enter(UpgradeState.FETCHING)
        fetched = self.fetcher.fetch(check.latest)
        report.from_cache = fetched.from_cache

        report.enter(UpgradeState.MERGING)
        engine = MergeEngine(strategy or self.config.merge.strategy)
        data = self.tracker.load()
        try:
            subtrees = self.fetcher.extract_managed_subtrees(
                fetched.local_path, list(dirs.values())
            )
            for dirname, subtree in subtrees.items():
                for rel in self.fetcher.list_files(subtree):
                    change, conflict = self._apply_file(
                        data, f"{dirname}/{rel}", subtree / rel, engine, force
                    )
                    report.changes.append(change)
                    if conflict is not None:
                        report.conflicts.append(conflict)
        except Exception as exc:
            logger.error("apply failed while merging; restoring %s", backup.name)
            self._restore(backup.name, report, exc)
            raise

        report.enter(UpgradeState.VALIDATING)
        missing = self.validate()
        if missing:
            error = ValidationFailedError(missing)
            logger.error("%s; rolling back", error)
            self._restore(backup.name, report, error)
            return report

        baselines = [
            c.path for c in report.changes
            if c.action in ("add", "overwrite", "unchanged", "merge")
            and c.path not in {f.path for f in report.conflicts}
        ]
        merged = [p for p in baselines if p in report.paths("merge")]

        if report.conflicts:
            write_json(self.layout.pending_file, PendingUpgrade(
                version=check.latest,
                from_version=check.current,
                component=component,
                backup=backup.name,
                created_at=datetime.now(timezone.utc),
                conflicts=[c.path for c in report.conflicts],
                baselines=baselines,
                merged=merged,
            ).model_dump(mode="json"))
            report.status = "conflicts_pending"
            logger.warning(
                "%d file(s) have conflicts; version stays at %s until resolved",
                len(report.conflicts), check.current,
            )
            return report

        self._commit(check.latest, component, baselines, merged, fetched.local_path)
        report.enter(UpgradeState.COMMITTED)
        report.status = "committed"
        logger.info("upgraded %s -> %s", check.current, check.latest)
        return report

    def _classify(
        self,
        data: CustomizationData,
        relpath: str,
        force: bool,
        upstream_fp: str | None = None,
    ) -> tuple[FileAction, str]:
        target = self.layout.resolve(relpath)
        pattern = matches_any(relpath, data.preserve_patterns)
        if pattern:
            return "skip", f"preserve pattern {pattern}"
        if force:
            return ("overwrite" if target.exists() else "add"), "forced"

        entry = data.tracked_files.get(relpath)
        if entry is None:
            if not target.exists():
                return "add", "new upstream file"
            if upstream_fp is not None and target.is_file() and fingerprint_file(target) == upstream_fp:
                return "unchanged", "matches upstream"
            return "skip", "untracked local file"
        if entry.user_created:
            return "skip", "user-created"
        if not target.is_file():
            return "keep_deleted", "deleted locally"
        if fingerprint_file(target) == entry.original_fingerprint:
            return "overwrite", "unmodified"
        return "merge", "modified locally"

    def _apply_file(
        self,
        data: CustomizationData,
        relpath: str,
        source: Path,
        engine: MergeEngine,
        force: bool,
    ) -> tuple[FileChange, FileConflict | None]:
        upstream = source.read_bytes()
        upstream_fp = fingerprint(upstream)
        mode = source.stat().st_mode & 0o777
        target = self.layout.resolve(relpath)
        action, reason = self._classify(data, relpath, force, upstream_fp)

        if action in ("add", "overwrite"):
            if target.is_file() and fingerprint_file(target) == upstream_fp:
                action = "unchanged"
            else:
                write_bytes(target, upstream, mode=mode)
            logger.debug("%s %s (%s)", action, relpath, reason)
            return FileChange(path=relpath, action=action, reason=reason), None

        if action != "merge":
            logger.debug("%s %s (%s)", action, relpath, reason)
            return FileChange(path=relpath, action=action, reason=reason), None

        base = self.tracker.baseline(relpath) or b""
        outcome = engine.merge(base, target.read_bytes(), upstream)
        change = FileChange(path=relpath, action="merge", reason=reason, outcome=outcome.kind)
        if outcome.kind == "fast_forward":
            write_bytes(target, upstream, mode=mode)
        elif outcome.kind in ("clean", "conflicted") and outcome.merged is not None:
            write_bytes(target, outcome.merged.encode("utf-8"))
        logger.debug("merged %s: %s", relpath, outcome.message)

        if outcome.kind == "conflicted":
            logger.warning("conflict in %s: %s", relpath, outcome.message)
            return change, FileConflict(path=relpath, conflicts=outcome.conflicts)
        return change, None

    def _commit(
        self,
        version: str,
        component: str | None,
        baselines: list[str],
        merged: list[str],
        tree: Path,
    ) -> None:
        overrides = {component: version} if component not in (None, "all") else None
        self.registry.record_upgrade(version, overrides)
        self.tracker.track_many({p: (tree / p).read_bytes() for p in baselines})
        # Merged files keep local edits on top of the new baseline.
        for relpath in merged:
            self.tracker.refresh(relpath)

    def _restore(self, backup_name: str, report: UpgradeReport, cause: Exception) -> None:
        result = self.backups.restore(backup_name)
        self.layout.pending_file.unlink(missing_ok=True)
        report.enter(UpgradeState.ROLLED_BACK)
        report.status = "rolled_back"
        report.error = str(cause)
        if not result.success:
            raise RestoreError(result) from cause

    # ------------------------------------------------------------------
    # Conflict resolution
    # ------------------------------------------------------------------

    def _has_markers(self, relpath: str) -> bool:
        target = self.layout.resolve(relpath)
        if not target.is_file():
            return False
        content = target.read_bytes()
        return is_text(content) and has_conflict_markers(content.decode("utf-8"))

    def _resolve(self, paths: list[str] | None) -> UpgradeReport:
        pending = self.pending()
        if pending is None:
            raise NoPendingUpgradeError()

        targets = [self.layout.relative(p) for p in paths] if paths else list(pending.conflicts)
        unknown = [p for p in targets if p not in pending.conflicts]
        if unknown:
            raise ValueError(f"Not awaiting resolution: {', '.join(unknown)}")
        marked = [p for p in targets if self._has_markers(p)]
        if marked:
            raise UnresolvedConflictError(marked)

        for relpath in targets:
            if self.layout.resolve(relpath).is_file():
                self.tracker.mark_as_original(relpath)
            else:
                self.tracker.forget(relpath)
            pending.conflicts.remove(relpath)

        report = UpgradeReport(
            status="conflicts_pending",
            from_version=pending.from_version,
            to_version=pending.version,
            component=pending.component,
            backup=pending.backup,
            conflicts=[FileConflict(path=p) for p in pending.conflicts],
        )
        if pending.conflicts:
            write_json(self.layout.pending_file, pending.model_dump(mode="json"))
            logger.info("%d conflict(s) still pending", len(pending.conflicts))
            return report

        report.enter(UpgradeState.VALIDATING)
        missing = self.validate()
        if missing:
            error = ValidationFailedError(missing)
            logger.error("%s; rolling back", error)
            self._restore(pending.backup, report, error)
            return report

        fetched = self.fetcher.fetch(pending.version)
        self._commit(
            pending.version, pending.component, pending.baselines, pending.merged,
            fetched.local_path,
        )
        self.layout.pending_file.unlink(missing_ok=True)
        report.enter(UpgradeState.COMMITTED)
        report.status = "committed"
        logger.info("conflicts resolved; upgraded %s -> %s", pending.from_version, pending.version)
        return report


def _under(relpath: str, dirs) -> bool:
    return any(relpath == d or relpath.startswith(d.rstrip("/") + "/") for d in dirs)
