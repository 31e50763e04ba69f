"""
Tests for settings loading — installforge.yml and IFG_* overrides.
"""

import textwrap
from pathlib import Path

import pytest

from installforge.core.config.loader import ForgeSettings, find_settings_file, load_settings
from installforge.core.errors import ConfigurationError


class TestDefaults:
    def test_derived_paths(self):
        s = ForgeSettings(data_dir="/srv/forge")
        assert s.output_path == Path("/srv/forge/output")
        assert s.work_path == Path("/srv/forge/work")
        assert s.store_path == Path("/srv/forge/store.json")
        assert s.ledger_path == Path("/srv/forge/builds.ndjson")

    def test_explicit_paths_win(self):
        s = ForgeSettings(data_dir="/d", output_dir="/out")
        assert s.output_path == Path("/out")


class TestLoadSettings:
    def test_file_values_anchored_to_file(self, tmp_path: Path):
        path = tmp_path / "installforge.yml"
        path.write_text(textwrap.dedent("""\
            data_dir: state
            max_concurrent_builds: 3
            registry: mock
        """))
        s = load_settings(path, env={})
        assert s.data_dir == str(tmp_path.resolve() / "state")
        assert s.max_concurrent_builds == 3
        assert s.registry == "mock"

    def test_nested_under_installforge_key(self, tmp_path: Path):
        path = tmp_path / "installforge.yml"
        path.write_text("installforge:\n  image_workers: 8\n")
        assert load_settings(path, env={}).image_workers == 8

    def test_env_overrides_file(self, tmp_path: Path):
        path = tmp_path / "installforge.yml"
        path.write_text("max_concurrent_builds: 3\n")
        s = load_settings(path, env={"IFG_MAX_CONCURRENT_BUILDS": "5", "IFG_DATA_DIR": "/abs/data"})
        assert s.max_concurrent_builds == 5
        assert s.data_dir == "/abs/data"

    def test_invalid_value(self, tmp_path: Path):
        path = tmp_path / "installforge.yml"
        path.write_text("max_concurrent_builds: 0\n")
        with pytest.raises(ConfigurationError) as exc:
            load_settings(path, env={})
        assert "max_concurrent_builds" in exc.value.message

    def test_unknown_registry(self):
        with pytest.raises(ConfigurationError):
            load_settings(env={"IFG_REGISTRY": "quay"}, search=False)

    def test_missing_explicit_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "nope.yml", env={})

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "installforge.yml"
        path.write_text("- a\n")
        with pytest.raises(ConfigurationError):
            load_settings(path, env={})

    def test_defaults_without_file(self):
        s = load_settings(env={}, search=False)
        assert s.max_concurrent_builds == 2
        assert s.registry == "docker"


class TestFindSettingsFile:
    def test_found_in_parent(self, tmp_path: Path):
        (tmp_path / "installforge.yml").write_text("{}\n")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_settings_file(nested) == (tmp_path / "installforge.yml").resolve()
