"""Backup store — zip snapshots of managed paths taken before every mutation."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from stencil import __version__
from stencil.errors import BackupError, BackupNotFoundError
from stencil.fsutil import append_capped, copy_path, read_json, remove_path, write_json
from stencil.layout import ProjectLayout, normalize_relpath
from stencil.backup.models import (
    BackupHistoryEntry,
    BackupSet,
    FailedPath,
    RestoreResult,
    VerifyResult,
)

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".zip"
METADATA_SUFFIX = ".json"


def _timestamp(now: datetime) -> str:
    return now.strftime("%Y%m%dT%H%M%S%fZ")


class BackupStore:
    """Creates, lists, verifies, restores and prunes backups of a project."""

    def __init__(
        self,
        layout: ProjectLayout,
        default_paths: list[str],
        history_limit: int = 50,
    ) -> None:
        self.layout = layout
        self.default_paths = default_paths
        self.history_limit = history_limit

    @property
    def backup_dir(self) -> Path:
        return self.layout.backups_dir

    def _archive_path(self, name: str) -> Path:
        return self.backup_dir / f"{name}{ARCHIVE_SUFFIX}"

    def _metadata_path(self, name: str) -> Path:
        return self.backup_dir / f"{name}{METADATA_SUFFIX}"

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        name: str,
        paths: list[str] | None = None,
        version: str | None = None,
    ) -> BackupSet:
        """Snapshot *paths* (default: the managed set) into a new backup.

        Paths that do not exist are skipped and recorded as absent. If the
        archive cannot be finalized no metadata is written and BackupError
        is raised.
        """
        now = datetime.now(timezone.utc)
        backup_name = f"{name}-{_timestamp(now)}"
        requested = [normalize_relpath(p) for p in (paths or self.default_paths)]
        enclosing = [p for p in requested if self.layout.contains_state_dir(p)]
        if enclosing:
            raise ValueError(
                f"Cannot back up {', '.join(enclosing)}: it contains the state directory "
                f"{self.layout.state_dir_name}; name the files inside it instead"
            )

        present: list[str] = []
        absent: list[str] = []
        for relpath in dict.fromkeys(requested):
            if self.layout.resolve(relpath).exists():
                present.append(relpath)
            else:
                logger.warning("backup %s: path not found, skipping %s", backup_name, relpath)
                absent.append(relpath)

        archive = self._archive_path(backup_name)
        partial = archive.with_name(archive.name + ".partial")
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(
                partial, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False
            ) as zf:
                for relpath in present:
                    self._add_to_archive(zf, relpath)
            os.replace(partial, archive)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise BackupError(backup_name, exc) from exc

        metadata = BackupSet(
            name=backup_name,
            created_at=now,
            paths=present,
            absent=absent,
            tool_version_at_backup=version or __version__,
            size=archive.stat().st_size,
        )
        try:
            write_json(self._metadata_path(backup_name), metadata.model_dump(mode="json"))
        except OSError as exc:
            archive.unlink(missing_ok=True)
            raise BackupError(backup_name, exc) from exc

        self._append_history(backup_name, "backup", paths=len(present))
        logger.info("backup created: %s (%d paths, %d bytes)", backup_name, len(present), metadata.size)
        return metadata

    def _add_to_archive(self, zf: zipfile.ZipFile, relpath: str) -> None:
        full = self.layout.resolve(relpath)
        # Directories get their own entries so empty ones survive a restore.
        zf.write(full, arcname=relpath)
        if not full.is_dir():
            return
        for p in sorted(full.rglob("*")):
            rel = p.relative_to(self.layout.root).as_posix()
            if self.layout.is_internal(rel):
                continue
            if p.is_dir() or p.is_file():
                zf.write(p, arcname=rel)

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, name: str) -> RestoreResult:
        """Put every backed-up path back exactly as it was.

        Extraction happens in a scratch directory first; each path is then
        swapped in individually so one failure does not stop the rest.
        Paths that were absent at backup time are removed.
        """
        archive = self._archive_path(name)
        if not archive.is_file():
            raise BackupNotFoundError(name)
        metadata = self.get(name)
        result = RestoreResult(name=name, metadata=metadata)

        # Outside the state dir: restored paths may replace parts of it.
        scratch = Path(tempfile.mkdtemp(prefix="stencil-restore-"))
        try:
            self._extract(archive, scratch)
            for relpath in metadata.paths:
                source = scratch / relpath
                target = self.layout.resolve(relpath)
                try:
                    if self.layout.contains_state_dir(relpath):
                        raise PermissionError(f"{relpath} contains the state directory")
                    if not source.exists():
                        raise FileNotFoundError(f"{relpath} missing from archive")
                    remove_path(target)
                    copy_path(source, target)
                    result.restored_paths.append(relpath)
                except OSError as exc:
                    logger.error("restore %s: failed to restore %s: %s", name, relpath, exc)
                    result.failed_paths.append(FailedPath(path=relpath, error=str(exc)))
            for relpath in metadata.absent:
                target = self.layout.resolve(relpath)
                if not (target.exists() or target.is_symlink()):
                    continue
                try:
                    if self.layout.contains_state_dir(relpath):
                        raise PermissionError(f"{relpath} contains the state directory")
                    remove_path(target)
                    result.removed_paths.append(relpath)
                except OSError as exc:
                    logger.error("restore %s: failed to remove %s: %s", name, relpath, exc)
                    result.failed_paths.append(FailedPath(path=relpath, error=str(exc)))
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        self._append_history(name, "restore")
        logger.info(
            "restored %s: %d restored, %d removed, %d failed",
            name, len(result.restored_paths), len(result.removed_paths), len(result.failed_paths),
        )
        return result

    def _extract(self, archive: Path, dest: Path) -> None:
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                member = info.filename.rstrip("/")
                # Rejects absolute or escaping member names.
                normalize_relpath(member)
                zf.extract(info, dest)
                mode = info.external_attr >> 16
                if mode and not info.is_dir():
                    os.chmod(dest / member, mode & 0o7777)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, name: str) -> BackupSet:
        path = self._metadata_path(name)
        if not path.is_file():
            raise BackupNotFoundError(name)
        return BackupSet.model_validate(read_json(path))

    def list(self) -> list[BackupSet]:
        """All complete backups (archive and metadata present), newest first."""
        if not self.backup_dir.is_dir():
            return []
        backups: list[BackupSet] = []
        for meta_path in self.backup_dir.glob(f"*{METADATA_SUFFIX}"):
            name = meta_path.name[: -len(METADATA_SUFFIX)]
            if not self._archive_path(name).is_file():
                continue
            try:
                backups.append(BackupSet.model_validate(read_json(meta_path)))
            except (ValueError, ValidationError) as exc:
                logger.warning("ignoring unreadable backup metadata %s: %s", meta_path, exc)
        backups.sort(key=lambda b: (b.created_at, b.name), reverse=True)
        return backups

    def latest(self) -> BackupSet | None:
        backups = self.list()
        return backups[0] if backups else None

    def verify(self, name: str) -> VerifyResult:
        archive = self._archive_path(name)
        meta = self._metadata_path(name)
        result = VerifyResult(
            archive_exists=archive.is_file(),
            metadata_exists=meta.is_file(),
        )
        if result.archive_exists:
            result.archive_readable = archive.stat().st_size > 0 and zipfile.is_zipfile(archive)
        if result.metadata_exists:
            try:
                BackupSet.model_validate(read_json(meta))
                result.metadata_valid = True
            except (ValueError, ValidationError):
                result.metadata_valid = False
        return result

    def prune(self, keep: int = 5) -> int:
        """Delete all but the *keep* newest backups. Returns how many were removed."""
        if keep < 0:
            raise ValueError("keep must be >= 0")
        stale = self.list()[keep:]
        for backup in stale:
            self._archive_path(backup.name).unlink(missing_ok=True)
            self._metadata_path(backup.name).unlink(missing_ok=True)
            logger.debug("pruned backup %s", backup.name)
        if stale:
            logger.info("pruned %d old backup(s)", len(stale))
        return len(stale)

    def history(self) -> list[BackupHistoryEntry]:
        path = self.layout.backup_history_file
        if not path.is_file():
            return []
        return [BackupHistoryEntry.model_validate(e) for e in read_json(path)]

    def _append_history(self, name: str, kind: str, paths: int | None = None) -> None:
        entry = BackupHistoryEntry(
            name=name, timestamp=datetime.now(timezone.utc), type=kind, paths=paths
        )
        append_capped(
            self.layout.backup_history_file,
            entry.model_dump(mode="json"),
            self.history_limit,
        )
