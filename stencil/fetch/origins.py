"""Origin resolvers: turn a version identifier into a local template tree.

Each origin is a plain function with the same contract; ``make_resolver``
picks one from the config once and binds its collaborators.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tarfile
import tempfile
from collections.abc import Callable
from functools import partial
from pathlib import Path, PurePosixPath

import httpx
from git import Repo

from stencil.config.models import SourceConfig

logger = logging.getLogger(__name__)

# Given (version, destination dir) materialize the tree and return the concrete version.
Resolver = Callable[[str, Path], str]

VERSION_FILE = "VERSION"
LATEST = "latest"


def read_tree_version(tree: Path) -> str | None:
    """The version a template tree declares in its VERSION file, if any."""
    marker = tree / VERSION_FILE
    if marker.is_file():
        value = marker.read_text(encoding="utf-8").strip()
        return value or None
    return None


# ---------------------------------------------------------------------------
# Package registry (PyPI-compatible JSON API, sdist tarballs)
# ---------------------------------------------------------------------------


def fetch_from_registry(
    source: SourceConfig, client: httpx.Client, version: str, dest: Path
) -> str:
    base = source.registry_url.rstrip("/")
    if version == LATEST:
        url = f"{base}/{source.package}/json"
    else:
        url = f"{base}/{source.package}/{version}/json"

    logger.debug("querying registry %s", url)
    response = client.get(url)
    response.raise_for_status()
    data = response.json()
    resolved = data["info"]["version"]

    sdists = [u for u in data.get("urls", []) if u.get("packagetype") == "sdist"]
    if not sdists:
        raise ValueError(f"{source.package} {resolved} has no source distribution")
    dist = sdists[0]

    with tempfile.TemporaryDirectory(prefix="download-", dir=dest.parent) as tmp:
        tarball = Path(tmp) / dist.get("filename", "templates.tar.gz")
        digest = hashlib.sha256()
        logger.debug("downloading %s", dist["url"])
        with client.stream("GET", dist["url"]) as stream:
            stream.raise_for_status()
            with open(tarball, "wb") as f:
                for chunk in stream.iter_bytes():
                    digest.update(chunk)
                    f.write(chunk)

        expected = dist.get("digests", {}).get("sha256")
        if expected and expected != digest.hexdigest():
            raise ValueError(f"checksum mismatch for {dist['url']}")

        dest.mkdir(parents=True, exist_ok=True)
        _extract_stripped(tarball, dest)

    logger.info("fetched %s %s from registry", source.package, resolved)
    return resolved


def _extract_stripped(tarball: Path, dest: Path) -> None:
    """Extract *tarball* into *dest*, dropping the leading directory component."""
    with tarfile.open(tarball, "r:*") as tar:
        members = []
        for member in tar.getmembers():
            parts = PurePosixPath(member.name).parts[1:]
            if not parts:
                continue
            member.name = str(PurePosixPath(*parts))
            members.append(member)
        tar.extractall(dest, members=members, filter="data")


# ---------------------------------------------------------------------------
# Version control (shallow clone at a tag or the default branch)
# ---------------------------------------------------------------------------


def git_ref_for(version: str) -> str:
    return "main" if version == LATEST else f"v{version}"


def fetch_from_git(source: SourceConfig, version: str, dest: Path) -> str:
    ref = git_ref_for(version)
    logger.debug("cloning %s at %s", source.git_url, ref)
    Repo.clone_from(source.git_url, dest, depth=1, branch=ref)
    shutil.rmtree(dest / ".git", ignore_errors=True)
    resolved = read_tree_version(dest) or (version if version != LATEST else ref)
    logger.info("fetched %s from git", resolved)
    return resolved


# ---------------------------------------------------------------------------
# Local sibling checkout
# ---------------------------------------------------------------------------


def find_local_source(source: SourceConfig, project_root: Path) -> Path | None:
    candidates = []
    if source.local_path:
        candidates.append(Path(source.local_path).expanduser())
    candidates.append(project_root.parent / source.package)
    for candidate in candidates:
        if not candidate.is_absolute():
            candidate = project_root / candidate
        if candidate.is_dir():
            return candidate.resolve()
    return None


def fetch_from_local(
    source: SourceConfig, project_root: Path, version: str, dest: Path
) -> str:
    location = find_local_source(source, project_root)
    if location is None:
        raise FileNotFoundError(
            f"local template source not found (local_path={source.local_path!r}, "
            f"sibling={source.package!r})"
        )
    shutil.copytree(location, dest, ignore=shutil.ignore_patterns(".git"))
    resolved = read_tree_version(dest) or "local"
    if version != LATEST and resolved != version:
        logger.warning("local source at %s is %s, not requested %s", location, resolved, version)
    logger.info("copied local templates from %s", location)
    return resolved


def make_resolver(
    source: SourceConfig,
    project_root: Path,
    client: httpx.Client | None = None,
) -> Resolver:
    """Bind the resolver for ``source.kind``."""
    if source.kind == "registry":
        return partial(
            fetch_from_registry,
            source,
            client or httpx.Client(timeout=source.timeout, follow_redirects=True),
        )
    if source.kind == "git":
        return partial(fetch_from_git, source)
    if source.kind == "local":
        return partial(fetch_from_local, source, project_root)
    raise ValueError(f"Unsupported source kind: {source.kind!r}")
