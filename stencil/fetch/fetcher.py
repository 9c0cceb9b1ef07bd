"""Content fetcher: materializes upstream template trees in a version-keyed cache."""

from __future__ import annotations

import fnmatch
import logging
import os
import re
import shutil
import tarfile
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import httpx
from git.exc import GitError

from stencil.config.models import SourceConfig
from stencil.errors import FetchError
from stencil.fetch.models import CacheEntry, CacheInfo, CachedFetch, FetchResult
from stencil.fetch.origins import LATEST, Resolver, make_resolver
from stencil.fsutil import read_json, remove_path, tree_size, write_json
from stencil.layout import ProjectLayout

logger = logging.getLogger(__name__)

_UNSAFE_KEY_RE = re.compile(r"[^A-Za-z0-9._-]+")

# Failures an origin may raise that mean "this version could not be fetched".
_ORIGIN_ERRORS = (
    httpx.HTTPError,
    GitError,
    tarfile.TarError,
    OSError,
    KeyError,
    ValueError,
)


def cache_key(origin: str, version: str) -> str:
    return _UNSAFE_KEY_RE.sub("_", f"{origin}-{version}")


class ContentFetcher:
    """Resolves versions against one configured origin and caches the trees."""

    def __init__(
        self,
        layout: ProjectLayout,
        source: SourceConfig,
        managed_dirs: list[str],
        client: httpx.Client | None = None,
    ) -> None:
        self.layout = layout
        self.source = source
        self.managed_dirs = managed_dirs
        self._resolve: Resolver = make_resolver(source, layout.root, client=client)

    @property
    def origin(self) -> str:
        return self.source.kind

    @property
    def cache_dir(self) -> Path:
        return self.layout.cache_dir

    def _sidecar(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def fetch(self, version: str | None = None) -> FetchResult:
        """Return a local tree for *version* ("latest" when omitted).

        Cached trees are returned without touching the origin. Anything the
        origin raises is wrapped in FetchError and no cache entry is left.
        """
        requested = version or LATEST
        key = cache_key(self.origin, requested)
        target = self.cache_dir / key
        sidecar = self._sidecar(key)

        if target.is_dir() and sidecar.is_file():
            record = CachedFetch.model_validate(read_json(sidecar))
            logger.debug("cache hit %s (%s)", key, record.resolved_version)
            return FetchResult(
                local_path=target,
                resolved_version=record.resolved_version,
                from_cache=True,
                origin=self.source.kind,
            )

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".fetch-{key}-", dir=self.cache_dir))
        tree = staging / "tree"
        try:
            resolved = self._resolve(requested, tree)
            remove_path(target)
            os.replace(tree, target)
            write_json(sidecar, CachedFetch(
                origin=self.source.kind,
                requested_version=requested,
                resolved_version=resolved,
                fetched_at=datetime.now(timezone.utc),
            ).model_dump(mode="json"))
        except _ORIGIN_ERRORS as exc:
            remove_path(target)
            raise FetchError(self.origin, requested, exc) from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("fetched %s %s into %s", self.origin, resolved, target)
        return FetchResult(
            local_path=target,
            resolved_version=resolved,
            from_cache=False,
            origin=self.source.kind,
        )

    def extract_managed_subtrees(
        self, fetched_path: Path, names: list[str] | None = None
    ) -> dict[str, Path]:
        """Map each requested directory name to its path inside *fetched_path*.

        Names missing upstream are left out with a warning.
        """
        found: dict[str, Path] = {}
        for name in names or self.managed_dirs:
            subtree = fetched_path / name
            if subtree.is_dir():
                found[name] = subtree
            else:
                logger.warning("upstream tree has no %s directory; skipping", name)
        return found

    def list_files(
        self, fetched_path: Path, patterns: list[str] | None = None
    ) -> list[str]:
        """Sorted, deduplicated POSIX paths of files under *fetched_path*."""
        patterns = patterns or ["*"]
        files: set[str] = set()
        for p in fetched_path.rglob("*"):
            if not p.is_file():
                continue
            rel = p.relative_to(fetched_path).as_posix()
            if any(fnmatch.fnmatchcase(rel, pattern) for pattern in patterns):
                files.add(rel)
        return sorted(files)

    def clear_cache(self) -> int:
        """Remove every cached tree. Returns the number of entries dropped."""
        if not self.cache_dir.is_dir():
            return 0
        count = sum(1 for p in self.cache_dir.iterdir() if p.is_dir())
        shutil.rmtree(self.cache_dir)
        logger.info("cleared %d cache entr%s", count, "y" if count == 1 else "ies")
        return count

    def cache_info(self) -> CacheInfo:
        if not self.cache_dir.is_dir():
            return CacheInfo(exists=False)
        now = datetime.now(timezone.utc)
        entries: list[CacheEntry] = []
        for p in sorted(self.cache_dir.iterdir()):
            if not p.is_dir() or p.name.startswith(".fetch-"):
                continue
            modified = datetime.fromtimestamp(p.stat().st_mtime, tz=timezone.utc)
            entries.append(CacheEntry(
                name=p.name,
                size=tree_size(p),
                modified=modified,
                age_seconds=(now - modified).total_seconds(),
            ))
        return CacheInfo(
            exists=True,
            size=sum(e.size for e in entries),
            entries=entries,
        )
