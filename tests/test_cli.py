"""Tests for the stencil CLI."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from stencil import __version__
from stencil.cli import app

from conftest import UPSTREAM, snapshot

runner = CliRunner()


@pytest.fixture
def cli(project: Path, upstream: Path, tmp_path: Path):
    """Invoke the CLI against the test project with a local template source."""
    config_path = tmp_path / "stencil.yaml"
    config_path.write_text(yaml.dump({
        "source": {"kind": "local", "local_path": str(upstream)},
        "target_version": "0.5.0",
    }))

    def invoke(*args: str, input: str | None = None):
        return runner.invoke(
            app, ["--config", str(config_path), "--root", str(project), *args], input=input
        )

    return invoke


@pytest.fixture
def initialized(cli):
    result = cli("init", "--version", "0.4.0")
    assert result.exit_code == 0, result.output
    return cli


def test_version_flag():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"stencil {__version__}" in result.output


def test_invalid_config(tmp_path: Path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("merge:\n  strategy: sideways\n")
    result = runner.invoke(app, ["--config", str(bad), "status"])
    assert result.exit_code == 1
    assert "Invalid config" in result.output


# ── project commands ────────────────────────────────────────────────


def test_init_tracks_files(cli):
    result = cli("init", "--version", "0.4.0")
    assert result.exit_code == 0
    assert "Initialized" in result.output
    assert "4 file(s) tracked" in result.output


def test_init_twice_needs_force(initialized):
    result = initialized("init", "--version", "0.4.0")
    assert result.exit_code == 1
    assert "Error:" in result.output
    assert initialized("init", "--version", "0.4.0", "--force").exit_code == 0


def test_status(initialized, project: Path):
    (project / "rules/style.md").write_text("indent: 2\nquotes: double\n")
    result = initialized("status")
    assert result.exit_code == 0
    assert "0.4.0" in result.output
    assert "0.5.0 available" in result.output
    assert "modified" in result.output


def test_info_and_track(initialized, project: Path):
    (project / "rules/style.md").write_text("indent: 2\nquotes: double\n")
    result = initialized("info", "rules/style.md")
    assert result.exit_code == 0
    assert "customized" in result.output

    result = initialized("track", "rules/style.md")
    assert result.exit_code == 0
    assert "Tracked" in result.output
    assert "unmodified" in initialized("info", "rules/style.md").output


def test_preserve(initialized):
    result = initialized("preserve", "rules/team-*")
    assert result.exit_code == 0
    assert "Added preserve pattern" in result.output
    assert "Already preserved" in initialized("preserve", "rules/team-*").output


# ── upgrade ─────────────────────────────────────────────────────────


def test_upgrade_check(initialized):
    result = initialized("upgrade", "check")
    assert result.exit_code == 0
    assert "Upgrade Available" in result.output
    assert "minor" in result.output


def test_upgrade_check_up_to_date(initialized):
    result = initialized("upgrade", "check", "--version", "0.4.0")
    assert result.exit_code == 0
    assert "Already on latest version" in result.output


def test_upgrade_preview_changes_nothing(initialized, project: Path):
    before = snapshot(project)
    result = initialized("upgrade", "preview")
    assert result.exit_code == 0
    assert "Upgrading: 0.4.0 -> 0.5.0" in result.output
    assert snapshot(project) == before


def test_upgrade_apply(initialized, project: Path):
    result = initialized("upgrade", "apply")
    assert result.exit_code == 0, result.output
    assert "Upgrade Complete" in result.output
    assert (project / "rules/security.md").read_text() == UPSTREAM["rules/security.md"]


def test_upgrade_apply_unknown_component(initialized):
    result = initialized("upgrade", "apply", "--component", "plugins")
    assert result.exit_code == 1
    assert "Unknown component" in result.output


def test_upgrade_conflicts_exit_2_then_resolve(initialized, project: Path):
    (project / "rules/style.md").write_text("indent: 4\nquotes: backtick\n")
    result = initialized("upgrade", "apply")
    assert result.exit_code == 2
    assert "need manual resolution" in result.output
    assert "rules/style.md" in result.output

    result = initialized("upgrade", "resolve")
    assert result.exit_code == 2
    assert "Conflict markers remain" in result.output

    (project / "rules/style.md").write_text("indent: 4\nquotes: single\n")
    result = initialized("upgrade", "resolve")
    assert result.exit_code == 0, result.output
    assert "Upgrade Complete" in result.output


def test_upgrade_apply_with_theirs_strategy(initialized, project: Path):
    (project / "rules/style.md").write_text("indent: 4\nquotes: backtick\n")
    result = initialized("upgrade", "apply", "--strategy", "theirs")
    assert result.exit_code == 0
    assert (project / "rules/style.md").read_text() == UPSTREAM["rules/style.md"]


def test_upgrade_rollback(initialized, project: Path):
    original = (project / "rules/base.md").read_text()
    assert initialized("upgrade", "apply").exit_code == 0

    result = initialized("upgrade", "rollback", input="n\n")
    assert result.exit_code == 1
    assert (project / "rules/base.md").read_text() == UPSTREAM["rules/base.md"]

    result = initialized("upgrade", "rollback", "--yes")
    assert result.exit_code == 0
    assert "Rolled back to 0.4.0" in result.output
    assert (project / "rules/base.md").read_text() == original


def test_upgrade_rollback_without_backups(initialized):
    result = initialized("upgrade", "rollback", "--yes")
    assert result.exit_code == 1
    assert "No backups found" in result.output


def test_upgrade_history(initialized):
    initialized("upgrade", "apply")
    result = initialized("upgrade", "history")
    assert result.exit_code == 0
    assert "upgrade" in result.output
    assert "Backups (1)" in result.output


# ── backup ──────────────────────────────────────────────────────────


def test_backup_create_list_verify_prune(initialized, project: Path):
    result = initialized("backup", "create", "nightly")
    assert result.exit_code == 0
    assert "Backup created" in result.output
    assert initialized("backup", "create", "nightly").exit_code == 0

    result = initialized("backup", "list")
    assert "Backups (2)" in result.output

    name = sorted(p.name for p in (project / ".stencil/backups").glob("*.json"))[0][: -len(".json")]
    result = initialized("backup", "verify", name)
    assert result.exit_code == 0
    assert "metadata valid" in result.output

    result = initialized("backup", "prune", "--keep", "1")
    assert result.exit_code == 0
    assert "Pruned 1 backup(s)" in result.output


def test_backup_of_state_dir_refused(initialized, project: Path):
    assert initialized("backup", "create", "nightly").exit_code == 0
    result = initialized("backup", "create", "state", "-p", ".stencil")
    assert result.exit_code == 1
    assert "Cannot back up" in result.output

    result = initialized("upgrade", "rollback", "--yes")
    assert result.exit_code == 0, result.output
    assert (project / ".stencil/version.json").is_file()
    assert "Backups (1)" in initialized("backup", "list").output


def test_backup_verify_missing(initialized):
    result = initialized("backup", "verify", "nope")
    assert result.exit_code == 1


# ── cache ───────────────────────────────────────────────────────────


def test_cache_info_and_clear(initialized):
    assert "Cache is empty" in initialized("cache", "info").output
    initialized("upgrade", "apply")

    result = initialized("cache", "info")
    assert result.exit_code == 0
    assert "local-0.5.0" in result.output

    result = initialized("cache", "clear")
    assert "Cleared 1 cache entry" in result.output


# ── config ──────────────────────────────────────────────────────────


def test_config_init_and_show(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["config", "init"])
    assert result.exit_code == 0
    assert (tmp_path / "stencil.yaml").is_file()

    result = runner.invoke(app, ["config", "init"])
    assert result.exit_code == 1
    assert "already exists" in result.output

    result = runner.invoke(app, ["config", "show"])
    assert result.exit_code == 0
    assert "stencil-templates" in result.output


def test_config_init_writes_into_root(tmp_path: Path, monkeypatch):
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["--root", str(project), "config", "init"])
    assert result.exit_code == 0
    assert (project / "stencil.yaml").is_file()
    assert not (tmp_path / "stencil.yaml").exists()


def test_root_picks_up_project_config(project: Path, upstream: Path, tmp_path: Path, monkeypatch):
    (project / "stencil.yaml").write_text(yaml.dump({
        "source": {"kind": "local", "local_path": str(upstream)},
        "target_version": "0.5.0",
    }))
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)

    result = runner.invoke(app, ["--root", str(project), "config", "show"])
    assert result.exit_code == 0
    assert "0.5.0" in result.output

    assert runner.invoke(app, ["--root", str(project), "init", "--version", "0.4.0"]).exit_code == 0
    result = runner.invoke(app, ["--root", str(project), "upgrade", "check"])
    assert result.exit_code == 0, result.output
    assert "Upgrade Available" in result.output
