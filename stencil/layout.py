"""Resolved on-disk layout of a stencil-managed project."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath

DEFAULT_STATE_DIR = ".stencil"


def normalize_relpath(raw: str | Path) -> str:
    """Normalize a project-relative path to POSIX form and reject escapes."""
    value = str(raw).strip().replace("\\", "/")
    posix_path = PurePosixPath(value)
    if posix_path.is_absolute():
        raise ValueError(f"Path must be relative: {raw}")

    parts: list[str] = []
    for part in posix_path.parts:
        if part in {"", "."}:
            continue
        if part == "..":
            raise ValueError(f"Path cannot escape project root: {raw}")
        parts.append(part)
    if not parts:
        raise ValueError(f"Empty path: {raw!r}")
    return "/".join(parts)


@dataclass(frozen=True)
class ProjectLayout:
    """Every path the engine reads or writes, derived from the project root."""

    root: Path
    state_dir_name: str = DEFAULT_STATE_DIR

    @classmethod
    def for_root(cls, root: str | Path, state_dir: str = DEFAULT_STATE_DIR) -> ProjectLayout:
        return cls(root=Path(root).resolve(), state_dir_name=normalize_relpath(state_dir))

    @property
    def state_dir(self) -> Path:
        return self.root / self.state_dir_name

    @property
    def version_file(self) -> Path:
        return self.state_dir / "version.json"

    @property
    def upgrade_history_file(self) -> Path:
        return self.state_dir / "upgrade-history.json"

    @property
    def customizations_file(self) -> Path:
        return self.state_dir / "customizations.json"

    @property
    def baselines_dir(self) -> Path:
        return self.state_dir / "baselines"

    @property
    def backups_dir(self) -> Path:
        return self.state_dir / "backups"

    @property
    def backup_history_file(self) -> Path:
        return self.state_dir / "backup-history.json"

    @property
    def cache_dir(self) -> Path:
        return self.state_dir / "cache"

    @property
    def pending_file(self) -> Path:
        return self.state_dir / "pending-upgrade.json"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / "upgrade.lock"

    def state_relpath(self, path: Path) -> str:
        """Project-relative POSIX path of a file inside the state dir."""
        return path.relative_to(self.root).as_posix()

    def resolve(self, relpath: str) -> Path:
        """Absolute path of a project-relative path."""
        return self.root / normalize_relpath(relpath)

    def relative(self, path: str | Path) -> str:
        """Project-relative POSIX form of an absolute or relative path."""
        p = Path(path)
        if p.is_absolute():
            p = p.resolve().relative_to(self.root)
        return normalize_relpath(p)

    def is_internal(self, relpath: str) -> bool:
        """True for engine-owned scratch areas that are never managed or backed up."""
        internal = (
            self.state_relpath(self.backups_dir),
            self.state_relpath(self.cache_dir),
        )
        return any(relpath == p or relpath.startswith(p + "/") for p in internal)

    def contains_state_dir(self, relpath: str) -> bool:
        """True if *relpath* is the state dir or one of its ancestors."""
        state = self.state_dir_name
        return relpath == state or state.startswith(relpath + "/")
