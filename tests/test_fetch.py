"""Tests for stencil.fetch: origins, cache, subtree extraction."""

import hashlib
import io
import logging
import tarfile
import tomllib
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from git.exc import GitCommandError

from stencil.config.models import SourceConfig
from stencil.errors import FetchError
from stencil.fetch import ContentFetcher, cache_key
from stencil.fetch.origins import git_ref_for, read_tree_version

MANAGED = ["rules", "templates", "workflows", "hooks"]


def _sdist(files: dict[str, str], top: str = "stencil-templates-0.5.0") -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for rel, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(f"{top}/{rel}")
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _registry_client(tarball: bytes, version: str = "0.5.0", digest: str | None = None, seen=None):
    digest = digest or hashlib.sha256(tarball).hexdigest()
    url = f"https://files.example.org/stencil-templates-{version}.tar.gz"

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request.url.path)
        if request.url.path in (
            "/pypi/stencil-templates/json",
            f"/pypi/stencil-templates/{version}/json",
        ):
            return httpx.Response(200, json={
                "info": {"version": version},
                "urls": [
                    {"packagetype": "bdist_wheel", "url": "https://files.example.org/x.whl"},
                    {
                        "packagetype": "sdist",
                        "url": url,
                        "filename": f"stencil-templates-{version}.tar.gz",
                        "digests": {"sha256": digest},
                    },
                ],
            })
        if str(request.url) == url:
            return httpx.Response(200, content=tarball)
        return httpx.Response(404)

    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def local_fetcher(layout, upstream):
    return ContentFetcher(layout, SourceConfig(kind="local", local_path=str(upstream)), MANAGED)


# ── Local origin ────────────────────────────────────────────────────


class TestLocalOrigin:
    def test_fetch_materializes_tree(self, local_fetcher, layout):
        result = local_fetcher.fetch("0.5.0")
        assert result.origin == "local"
        assert result.resolved_version == "0.5.0"
        assert not result.from_cache
        assert result.local_path == layout.cache_dir / "local-0.5.0"
        assert (result.local_path / "rules/security.md").read_text() == "never commit secrets\n"

    def test_second_fetch_is_cached(self, local_fetcher, upstream):
        local_fetcher.fetch("0.5.0")
        (upstream / "rules/security.md").write_text("changed upstream")
        result = local_fetcher.fetch("0.5.0")
        assert result.from_cache
        assert result.resolved_version == "0.5.0"
        assert (result.local_path / "rules/security.md").read_text() == "never commit secrets\n"

    def test_sibling_checkout_found_by_package_name(self, layout, upstream):
        fetcher = ContentFetcher(layout, SourceConfig(kind="local"), MANAGED)
        assert fetcher.fetch().resolved_version == "0.5.0"

    def test_version_without_marker_is_local(self, local_fetcher, upstream):
        (upstream / "VERSION").unlink()
        assert local_fetcher.fetch().resolved_version == "local"

    def test_missing_source_raises_fetch_error(self, layout, tmp_path):
        source = SourceConfig(kind="local", local_path=str(tmp_path / "nowhere"), package="nope")
        fetcher = ContentFetcher(layout, source, MANAGED)
        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch("1.0.0")
        assert exc_info.value.origin == "local"
        assert isinstance(exc_info.value.__cause__, FileNotFoundError)
        assert not (layout.cache_dir / "local-1.0.0").exists()


# ── Registry origin ─────────────────────────────────────────────────


class TestRegistryOrigin:
    def test_downloads_and_strips_top_level_dir(self, layout):
        client = _registry_client(_sdist({"rules/base.md": "v5 rules\n", "VERSION": "0.5.0\n"}))
        fetcher = ContentFetcher(layout, SourceConfig(), MANAGED, client=client)
        result = fetcher.fetch("0.5.0")
        assert result.origin == "registry"
        assert result.resolved_version == "0.5.0"
        assert (result.local_path / "rules/base.md").read_text() == "v5 rules\n"

    def test_latest_uses_project_endpoint(self, layout):
        seen = []
        client = _registry_client(_sdist({"rules/a.md": "a"}), version="0.6.1", seen=seen)
        fetcher = ContentFetcher(layout, SourceConfig(), MANAGED, client=client)
        result = fetcher.fetch()
        assert result.resolved_version == "0.6.1"
        assert seen[0] == "/pypi/stencil-templates/json"
        assert result.local_path.name == "registry-latest"

    def test_checksum_mismatch(self, layout):
        client = _registry_client(_sdist({"rules/a.md": "a"}), digest="0" * 64)
        fetcher = ContentFetcher(layout, SourceConfig(), MANAGED, client=client)
        with pytest.raises(FetchError, match="checksum"):
            fetcher.fetch("0.5.0")
        assert fetcher.cache_info().entries == []

    def test_unknown_version_is_fetch_error(self, layout):
        client = _registry_client(_sdist({"rules/a.md": "a"}))
        fetcher = ContentFetcher(layout, SourceConfig(), MANAGED, client=client)
        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch("9.9.9")
        assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)

    def test_escaping_member_is_refused(self, layout):
        tarball = _sdist({"rules/a.md": "a", "../../escape.md": "owned"})
        fetcher = ContentFetcher(layout, SourceConfig(), MANAGED, client=_registry_client(tarball))
        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch("0.5.0")
        assert isinstance(exc_info.value.__cause__, tarfile.FilterError)
        assert list(layout.root.parent.rglob("escape.md")) == []

    def test_interpreter_floor_supports_extraction_filters(self):
        pyproject = tomllib.loads((Path(__file__).parent.parent / "pyproject.toml").read_text())
        assert pyproject["project"]["requires-python"] == ">=3.11.4"
        assert hasattr(tarfile, "data_filter")


# ── Git origin ──────────────────────────────────────────────────────


class TestGitOrigin:
    def test_ref_for_version(self):
        assert git_ref_for("latest") == "main"
        assert git_ref_for("1.2.0") == "v1.2.0"

    def test_shallow_clone_at_tag(self, layout):
        def fake_clone(url, dest, **kwargs):
            (dest / ".git").mkdir(parents=True)
            (dest / "rules").mkdir()
            (dest / "rules/base.md").write_text("from git")

        source = SourceConfig(kind="git", git_url="https://git.example.com/t.git")
        fetcher = ContentFetcher(layout, source, MANAGED)
        with patch("stencil.fetch.origins.Repo.clone_from", side_effect=fake_clone) as clone:
            result = fetcher.fetch("1.2.0")

        args, kwargs = clone.call_args
        assert args[0] == "https://git.example.com/t.git"
        assert kwargs == {"depth": 1, "branch": "v1.2.0"}
        assert result.resolved_version == "1.2.0"
        assert not (result.local_path / ".git").exists()
        assert (result.local_path / "rules/base.md").read_text() == "from git"

    def test_clone_failure_is_fetch_error(self, layout):
        source = SourceConfig(kind="git")
        fetcher = ContentFetcher(layout, source, MANAGED)
        with patch(
            "stencil.fetch.origins.Repo.clone_from",
            side_effect=GitCommandError("clone", 128),
        ):
            with pytest.raises(FetchError):
                fetcher.fetch("1.2.0")
        assert not (layout.cache_dir / "git-1.2.0").exists()


# ── Tree inspection ─────────────────────────────────────────────────


class TestTreeInspection:
    def test_extract_managed_subtrees_skips_missing(self, local_fetcher, caplog):
        fetched = local_fetcher.fetch("0.5.0").local_path
        with caplog.at_level(logging.WARNING, logger="stencil.fetch.fetcher"):
            subtrees = local_fetcher.extract_managed_subtrees(fetched)
        assert set(subtrees) == {"rules", "templates", "workflows"}
        assert "hooks" in caplog.text

    def test_extract_named_subtrees(self, local_fetcher):
        fetched = local_fetcher.fetch("0.5.0").local_path
        assert list(local_fetcher.extract_managed_subtrees(fetched, ["rules"])) == ["rules"]

    def test_list_files(self, local_fetcher):
        fetched = local_fetcher.fetch("0.5.0").local_path
        files = local_fetcher.list_files(fetched / "rules")
        assert files == ["base.md", "security.md", "style.md"]

    def test_list_files_with_patterns_dedupes(self, local_fetcher):
        fetched = local_fetcher.fetch("0.5.0").local_path
        files = local_fetcher.list_files(fetched, ["rules/*", "*.md"])
        assert files.count("rules/base.md") == 1
        assert "workflows/ci.yml" not in files

    def test_read_tree_version(self, tmp_path):
        assert read_tree_version(tmp_path) is None
        (tmp_path / "VERSION").write_text("  \n")
        assert read_tree_version(tmp_path) is None


# ── Cache management ────────────────────────────────────────────────


class TestCache:
    def test_cache_info(self, local_fetcher):
        local_fetcher.fetch("0.5.0")
        info = local_fetcher.cache_info()
        assert info.exists
        assert [e.name for e in info.entries] == ["local-0.5.0"]
        assert info.size == info.entries[0].size > 0
        assert info.entries[0].age_seconds >= 0

    def test_cache_info_without_cache(self, local_fetcher):
        assert not local_fetcher.cache_info().exists

    def test_clear_cache(self, local_fetcher):
        local_fetcher.fetch("0.5.0")
        local_fetcher.fetch("latest")
        assert local_fetcher.clear_cache() == 2
        assert not local_fetcher.fetch("0.5.0").from_cache

    def test_cache_key_is_filesystem_safe(self):
        assert cache_key("git", "feature/x") == "git-feature_x"
