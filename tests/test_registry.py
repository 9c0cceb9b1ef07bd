"""Tests for stencil.registry: version record, upgrade checks, history."""

import json
from unittest.mock import patch

import pytest

from stencil import __version__
from stencil.errors import AlreadyInitializedError, NotInitializedError
from stencil.registry import VersionRegistry, change_kind, is_newer, is_semver


# ── change_kind / is_newer ──────────────────────────────────────────


class TestChangeKind:
    @pytest.mark.parametrize(
        ("current", "latest", "expected"),
        [
            ("1.2.3", "2.0.0", "major"),
            ("1.2.3", "1.3.0", "minor"),
            ("1.2.3", "1.2.4", "patch"),
            ("1.2.3", "1.2.3", "none"),
            ("1.2.3", "main", "unknown"),
            ("local", "1.0.0", "unknown"),
            ("1.0", "2.0", "unknown"),
            ("1.0.0", "1.0.0.1", "unknown"),
            ("1.0.0", "v1.1.0", "unknown"),
            ("01.0.0", "1.1.0", "unknown"),
            ("1.0.0-rc.1", "1.0.0", "patch"),
            ("1.0.0", "1.0.0+build.5", "none"),
        ],
    )
    def test_classification(self, current, latest, expected):
        assert change_kind(current, latest) == expected

    @pytest.mark.parametrize(
        ("current", "latest"),
        [("1.0.0", "2"), ("1.0", "1.1"), ("1.0.0", "1.0.0.1"), ("1.0.0", "1.0.0.post1")],
    )
    def test_is_newer_false_unless_both_semantic(self, current, latest):
        assert not is_newer(current, latest)

    @pytest.mark.parametrize(
        ("current", "latest"),
        [
            ("1.0.0-alpha", "1.0.0"),
            ("1.0.0-alpha", "1.0.0-beta"),
            ("1.0.0-rc.1", "1.0.0-rc.2"),
            ("1.0.0-1", "1.0.0"),
            ("1.0.0-x.7.z", "1.0.0"),
        ],
    )
    def test_prerelease_sorts_below_release(self, current, latest):
        assert is_newer(current, latest)
        assert not is_newer(latest, current)

    def test_is_semver(self):
        assert is_semver("1.2.3-beta.1+sha.abc")
        assert not is_semver("1.2")
        assert not is_semver("1.2.3.4")

    def test_is_newer_uses_semantic_ordering(self):
        assert is_newer("1.9.0", "1.10.0")
        assert not is_newer("1.10.0", "1.9.0")

    def test_is_newer_false_for_equal(self):
        assert not is_newer("1.0.0", "1.0.0")

    def test_is_newer_false_for_non_semantic(self):
        assert not is_newer("1.0.0", "latest")


# ── VersionRegistry ─────────────────────────────────────────────────


class TestInitialize:
    def test_stamps_every_component(self, registry):
        record = registry.initialize("1.0.0")
        assert record.template_version == "1.0.0"
        assert set(record.components.values()) == {"1.0.0"}
        assert set(record.components) == {"rules", "templates", "workflows", "git-hooks"}

    def test_persists_record(self, registry, layout):
        registry.initialize("1.0.0")
        data = json.loads(layout.version_file.read_text())
        assert data["template_version"] == "1.0.0"

    def test_refuses_silent_reinitialize(self, registry):
        registry.initialize("1.0.0")
        with pytest.raises(AlreadyInitializedError) as exc_info:
            registry.initialize("2.0.0")
        assert exc_info.value.version == "1.0.0"

    def test_force_reinitializes(self, registry):
        registry.initialize("1.0.0")
        assert registry.initialize("2.0.0", force=True).template_version == "2.0.0"


class TestCurrent:
    def test_load_without_record_raises(self, registry):
        with pytest.raises(NotInitializedError):
            registry.load()

    def test_auto_initializes_with_tool_version(self, registry):
        record = registry.current()
        assert record.template_version == __version__
        assert registry.exists()

    def test_missing_components_default_to_template_version(self, registry, layout):
        layout.state_dir.mkdir(parents=True)
        layout.version_file.write_text(json.dumps({
            "tool_version": "1.0.0",
            "template_version": "1.0.0",
            "installed_at": "2026-01-01T00:00:00Z",
            "components": {"rules": "0.9.0"},
        }))
        record = registry.load()
        assert record.components["rules"] == "0.9.0"
        assert record.components["workflows"] == "1.0.0"


class TestCheckUpgrade:
    def test_available_when_latest_is_greater(self, registry):
        registry.initialize("1.0.0")
        check = registry.check_upgrade("1.1.0")
        assert check.available
        assert check.current == "1.0.0"
        assert check.latest == "1.1.0"
        assert check.change_kind == "minor"

    def test_not_available_when_same(self, registry):
        registry.initialize("1.0.0")
        check = registry.check_upgrade("1.0.0")
        assert not check.available
        assert check.change_kind == "none"

    def test_not_available_when_older(self, registry):
        registry.initialize("2.0.0")
        assert not registry.check_upgrade("1.0.0").available

    def test_defaults_to_tool_version(self, registry):
        registry.initialize("0.0.1")
        assert registry.check_upgrade().latest == __version__

    def test_has_no_side_effects_on_existing_record(self, registry, layout):
        registry.initialize("1.0.0")
        before = layout.version_file.read_bytes()
        registry.check_upgrade("9.9.9")
        assert layout.version_file.read_bytes() == before
        assert registry.history() == []


class TestRecordUpgrade:
    def test_stamps_all_components(self, registry):
        registry.initialize("1.0.0")
        record = registry.record_upgrade("1.1.0")
        assert record.template_version == "1.1.0"
        assert record.tool_version == "1.1.0"
        assert set(record.components.values()) == {"1.1.0"}
        assert record.last_upgrade_at is not None

    def test_component_overrides(self, registry):
        registry.initialize("1.0.0")
        record = registry.record_upgrade("1.1.0", {"rules": "1.1.0"})
        assert record.components["rules"] == "1.1.0"
        assert record.components["templates"] == "1.0.0"

    def test_unknown_override_rejected(self, registry):
        registry.initialize("1.0.0")
        with pytest.raises(ValueError, match="Unknown component"):
            registry.record_upgrade("1.1.0", {"plugins": "1.1.0"})

    def test_appends_history(self, registry):
        registry.initialize("1.0.0")
        registry.record_upgrade("1.1.0")
        history = registry.history()
        assert [(h.version, h.type) for h in history] == [("1.1.0", "upgrade")]


class TestRollback:
    def test_reverts_versions(self, registry):
        registry.initialize("1.0.0")
        registry.record_upgrade("2.0.0")
        record = registry.rollback("1.0.0")
        assert record.template_version == "1.0.0"
        assert set(record.components.values()) == {"1.0.0"}

    def test_appends_rollback_entry(self, registry):
        registry.initialize("1.0.0")
        registry.record_upgrade("2.0.0")
        registry.rollback("1.0.0")
        assert [h.type for h in registry.history()] == ["upgrade", "rollback"]


class TestHistory:
    def test_capped_oldest_first_pruned(self, layout):
        registry = VersionRegistry(layout, history_limit=3)
        registry.initialize("1.0.0")
        for minor in range(1, 6):
            registry.record_upgrade(f"1.{minor}.0")
        versions = [h.version for h in registry.history()]
        assert versions == ["1.3.0", "1.4.0", "1.5.0"]

    def test_empty_without_file(self, registry):
        assert registry.history() == []


class TestSummary:
    def test_joins_record_and_check(self, registry):
        registry.initialize("1.0.0")
        summary = registry.summary("1.0.1")
        assert summary.current.template_version == "1.0.0"
        assert summary.latest == "1.0.1"
        assert summary.upgrade.change_kind == "patch"

    def test_available_version_override(self, registry):
        with patch("stencil.registry.registry.__version__", "3.0.0"):
            assert registry.available_version() == "3.0.0"
        assert registry.available_version("4.0.0") == "4.0.0"
