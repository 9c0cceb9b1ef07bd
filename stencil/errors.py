"""Error taxonomy for the upgrade engine and its CLI exit codes."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stencil.backup.models import RestoreResult


class StencilError(Exception):
    """Base error; ``exit_code`` is what the CLI exits with."""

    exit_code: int = 1


class NotInitializedError(StencilError):
    """No version record exists for the project yet."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Project is not initialized: {path} not found")


class AlreadyInitializedError(StencilError):
    """A version record already exists and reinitialization was not forced."""

    def __init__(self, path: str, version: str) -> None:
        self.path = path
        self.version = version
        super().__init__(
            f"Project already initialized at version {version} ({path}). "
            "Use --force to reinitialize."
        )


class FetchError(StencilError):
    """Wraps origin-specific failures while retrieving an upstream tree."""

    def __init__(self, origin: str, version: str, cause: Exception) -> None:
        self.origin = origin
        self.version = version
        super().__init__(f"Failed to fetch {version!r} from {origin}: {cause}")
        self.__cause__ = cause


class BackupError(StencilError):
    """The backup archive could not be written; nothing was recorded."""

    def __init__(self, name: str, cause: Exception) -> None:
        self.name = name
        super().__init__(f"Backup {name!r} failed: {cause}")
        self.__cause__ = cause


class BackupNotFoundError(StencilError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Backup not found: {name}")


class RestoreError(StencilError):
    """One or more paths could not be restored from a backup."""

    def __init__(self, result: RestoreResult) -> None:
        self.result = result
        failed = ", ".join(f.path for f in result.failed_paths)
        super().__init__(f"Restore of {result.name!r} failed for: {failed}")


class ValidationFailedError(StencilError):
    """Expected top-level paths are missing after an apply."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Validation failed, missing: {', '.join(missing)}")


class LockHeldError(StencilError):
    """Another operation holds the project lock."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(
            f"Another stencil operation is running ({path} exists). "
            "Remove the lock file if no other operation is active."
        )


class UnresolvedConflictError(StencilError):
    """A file still contains conflict markers and cannot be marked resolved."""

    exit_code = 2

    def __init__(self, paths: list[str]) -> None:
        self.paths = paths
        super().__init__(f"Conflict markers remain in: {', '.join(paths)}")


class ConflictsPendingError(StencilError):
    """A previous apply left conflicts that must be resolved or rolled back first."""

    exit_code = 2

    def __init__(self, version: str, paths: list[str]) -> None:
        self.version = version
        self.paths = paths
        super().__init__(
            f"Upgrade to {version} is waiting on {len(paths)} conflicted file(s). "
            "Run 'stencil upgrade resolve' or 'stencil upgrade rollback'."
        )


class NoPendingUpgradeError(StencilError):
    def __init__(self) -> None:
        super().__init__("No upgrade is waiting on conflict resolution")


def exit_code_for_exception(exc: BaseException) -> int:
    """Resolve a deterministic exit code for an exception."""
    if isinstance(exc, StencilError):
        return exc.exit_code
    return 1
