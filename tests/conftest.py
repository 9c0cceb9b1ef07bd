"""Shared test fixtures for stencil."""

from pathlib import Path

import pytest

from stencil.backup import BackupStore
from stencil.config.models import SourceConfig, StencilConfig
from stencil.layout import ProjectLayout
from stencil.registry import VersionRegistry
from stencil.tracking import CustomizationTracker
from stencil.upgrade import UpgradeOrchestrator, default_backup_paths

# Directories the engine owns and rewrites on its own; excluded from tree comparisons.
VOLATILE = (".stencil/backups", ".stencil/cache", ".stencil/backup-history.json")

INSTALLED = {
    "rules/base.md": "# Base rules\n\n- be kind\n- write tests\n",
    "rules/style.md": "indent: 4\nquotes: double\n",
    "templates/readme.md": "# {{ name }}\n\nDescription.\n",
    "workflows/ci.yml": "on: push\njobs:\n  test:\n    runs-on: ubuntu-latest\n",
}

UPSTREAM = {
    "VERSION": "0.5.0\n",
    "rules/base.md": "# Base rules\n\n- be kind\n- write tests\n- review code\n",
    "rules/style.md": "indent: 4\nquotes: single\n",
    "rules/security.md": "never commit secrets\n",
    "templates/readme.md": "# {{ name }}\n\nDescription.\n",
    "workflows/ci.yml": "on: [push, pull_request]\njobs:\n  test:\n    runs-on: ubuntu-latest\n",
}


def write_tree(root: Path, files: dict[str, str | bytes]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            path.write_text(content)
        else:
            path.write_bytes(content)


def snapshot(root: Path) -> dict[str, bytes]:
    """Every file under *root* except engine scratch areas."""
    files = {}
    for p in sorted(root.rglob("*")):
        rel = p.relative_to(root).as_posix()
        if any(rel == v or rel.startswith(v + "/") for v in VOLATILE):
            continue
        if p.is_file():
            files[rel] = p.read_bytes()
    return files


@pytest.fixture
def project(tmp_path):
    """A project with templates installed at 0.4.0."""
    root = tmp_path / "project"
    root.mkdir()
    write_tree(root, INSTALLED)
    return root


@pytest.fixture
def upstream(tmp_path):
    """A local sibling checkout holding template version 0.5.0."""
    root = tmp_path / "stencil-templates"
    write_tree(root, UPSTREAM)
    return root


@pytest.fixture
def layout(project):
    return ProjectLayout.for_root(project)


@pytest.fixture
def sample_config(upstream):
    return StencilConfig(
        source=SourceConfig(kind="local", local_path=str(upstream)),
        target_version="0.5.0",
    )


@pytest.fixture
def registry(layout):
    return VersionRegistry(layout)


@pytest.fixture
def tracker(layout, sample_config):
    return CustomizationTracker(
        layout,
        list(sample_config.components.values()),
        preserve_patterns=sample_config.tracking.preserve_patterns,
    )


@pytest.fixture
def backup_store(layout, sample_config):
    return BackupStore(layout, default_backup_paths(sample_config, layout))


@pytest.fixture
def orchestrator(project, sample_config):
    return UpgradeOrchestrator.from_config(project, sample_config)


@pytest.fixture
def installed(orchestrator):
    """Project initialized at 0.4.0 with every managed file tracked."""
    orchestrator.initialize("0.4.0")
    return orchestrator
