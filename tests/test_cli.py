"""
Tests for CLI commands — compose, module and build groups.
"""

import json
import logging
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from installforge.main import cli


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """The CLI reconfigures the root logger; put it back after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def config(tmp_path: Path) -> Path:
    path = tmp_path / "installforge.yml"
    path.write_text("data_dir: data\nregistry: mock\n")
    return path


def _invoke(config: Path, *args: str):
    return CliRunner().invoke(cli, ["--quiet", "--config", str(config), *args])


class TestCLIGlobal:
    """Tests for global CLI behavior."""

    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        for group in ("compose", "build", "module", "web"):
            assert group in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestComposeCommands:
    def _files(self, tmp_path: Path) -> tuple[Path, Path]:
        web = tmp_path / "web" / "docker-compose.yml"
        web.parent.mkdir()
        web.write_text("services:\n  app:\n    image: nginx:${TAG}\n    depends_on: [cache]\n  cache:\n    image: redis:7\n")
        db = tmp_path / "db.yml"
        db.write_text("services:\n  app:\n    image: postgres:16\n")
        return web, db

    def test_merge(self, tmp_path: Path):
        web, db = self._files(tmp_path)
        result = CliRunner().invoke(cli, ["--quiet", "compose", "merge", str(web), str(db), "--var", "TAG=1.25"])
        assert result.exit_code == 0, result.output
        assert "web__app:" in result.output
        assert "db__app:" in result.output
        assert "image: nginx:1.25" in result.output

    def test_merge_to_file(self, tmp_path: Path):
        web, _ = self._files(tmp_path)
        out = tmp_path / "merged.yml"
        result = CliRunner().invoke(cli, [
            "--quiet", "compose", "merge", str(web), "--no-namespace", "--var", "TAG=1", "-o", str(out),
        ])
        assert result.exit_code == 0, result.output
        assert "app:" in out.read_text()
        assert "__" not in out.read_text()

    def test_lint_clean(self, tmp_path: Path):
        web, db = self._files(tmp_path)
        result = CliRunner().invoke(cli, ["--quiet", "compose", "lint", str(web), str(db), "--var", "TAG=1"])
        assert result.exit_code == 0, result.output
        assert "No findings" in result.output

    def test_lint_errors_exit_nonzero(self, tmp_path: Path):
        web, _ = self._files(tmp_path)
        result = CliRunner().invoke(cli, ["--quiet", "compose", "lint", str(web), "--json"])
        assert result.exit_code == 1
        report = json.loads(result.output)
        assert report["ok"] is False
        assert report["findings"][0]["rule"] == "unresolved-variable"

    def test_bad_var_syntax(self, tmp_path: Path):
        web, _ = self._files(tmp_path)
        result = CliRunner().invoke(cli, ["--quiet", "compose", "merge", str(web), "--var", "oops"])
        assert result.exit_code == 1


class TestModuleCommands:
    def test_load_and_list(self, config: Path, catalog_file: Path):
        result = _invoke(config, "module", "load", str(catalog_file), "--json")
        assert result.exit_code == 0, result.output
        loaded = json.loads(result.output)
        assert loaded["modules"] == ["web", "db"]

        result = _invoke(config, "module", "list", "--json")
        rows = json.loads(result.output)
        assert [r["name"] for r in rows] == ["db", "web"]
        assert rows[1]["versions"] == [
            {"version": "1.0.0", "published": True},
            {"version": "1.1.0", "published": False},
        ]

    def test_publish(self, config: Path, catalog_file: Path):
        _invoke(config, "module", "load", str(catalog_file))
        result = _invoke(config, "module", "publish", "web", "1.1.0")
        assert result.exit_code == 0, result.output
        result = _invoke(config, "module", "publish", "web", "1.1.0")
        assert result.exit_code == 1


class TestBuildCommands:
    def test_project_build(self, config: Path, catalog_file: Path):
        _invoke(config, "module", "load", str(catalog_file))
        result = _invoke(config, "build", "project", "shop", "--json")
        assert result.exit_code == 0, result.output
        view = json.loads(result.output)
        assert view["status"] == "completed"
        assert Path(view["download_location"]).is_file()

        status = _invoke(config, "build", "status", view["build_id"], "--json")
        assert json.loads(status.output)["status"] == "completed"

        listing = _invoke(config, "build", "list", "--json")
        assert [b["build_id"] for b in json.loads(listing.output)] == [view["build_id"]]

        history = _invoke(config, "build", "history", "--json")
        assert json.loads(history.output)[0]["build_id"] == view["build_id"]

    def test_manifest_build_lint_failure(self, config: Path, tmp_path: Path):
        manifest = tmp_path / "app.yml"
        manifest.write_text(textwrap.dedent("""\
            services:
              app:
                build: .
        """))
        result = _invoke(config, "build", "manifest", str(manifest))
        assert result.exit_code == 1
        assert "lint" in result.output

    def test_unknown_project(self, config: Path):
        result = _invoke(config, "build", "project", "missing", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"] == "NotFoundError"

    def test_unknown_build(self, config: Path):
        result = _invoke(config, "build", "status", "missing")
        assert result.exit_code == 1
