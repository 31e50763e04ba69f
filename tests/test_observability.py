"""
Tests for observability — metrics registry, logging setup and the build ledger.
"""

import json
import logging
from pathlib import Path

from installforge.core.observability import metrics as m
from installforge.core.observability.logging_config import _parse_level, resolve_level, setup_logging
from installforge.core.observability.metrics import MetricsRegistry
from installforge.core.persistence.audit import BuildLedger, BuildLedgerEntry


class TestMetricsRegistry:
    def test_counter(self):
        reg = MetricsRegistry()
        reg.inc(m.BUILDS_SUBMITTED)
        reg.inc(m.BUILDS_SUBMITTED, 2)
        assert reg.value(m.BUILDS_SUBMITTED) == 3

    def test_labels_are_separate_series(self):
        reg = MetricsRegistry()
        reg.inc(m.BUILDS_FAILED, stage="lint")
        reg.inc(m.BUILDS_FAILED, stage="images")
        reg.inc(m.BUILDS_FAILED, stage="lint")
        assert reg.value(m.BUILDS_FAILED, stage="lint") == 2
        assert reg.value(m.BUILDS_FAILED, stage="images") == 1
        assert reg.value(m.BUILDS_FAILED) == 0

    def test_gauge(self):
        reg = MetricsRegistry()
        reg.add(m.BUILDS_BUILDING, 1)
        reg.add(m.BUILDS_BUILDING, 1)
        reg.add(m.BUILDS_BUILDING, -1)
        assert reg.value(m.BUILDS_BUILDING) == 1

    def test_histogram_and_timer(self):
        reg = MetricsRegistry()
        for v in (10, 20, 30):
            reg.observe(m.BUILD_DURATION_MS, v)
        hist = reg.histogram(m.BUILD_DURATION_MS)
        assert hist.count == 3
        assert hist.mean == 20
        with reg.timer(m.IMAGE_FETCH_MS):
            pass
        assert reg.histogram(m.IMAGE_FETCH_MS).count == 1

    def test_to_dict_is_json(self):
        reg = MetricsRegistry()
        reg.inc(m.BUILDS_COMPLETED)
        reg.observe(m.BUILD_DURATION_MS, 5)
        data = json.loads(json.dumps(reg.to_dict()))
        assert data["counters"][0]["value"] == 1
        assert data["histograms"][0]["count"] == 1

    def test_reset(self):
        reg = MetricsRegistry()
        reg.inc(m.BUILDS_COMPLETED)
        reg.reset()
        assert reg.value(m.BUILDS_COMPLETED) == 0


class TestLoggingSetup:
    def test_level_precedence(self, monkeypatch):
        monkeypatch.setenv("IFG_LOG_LEVEL", "INFO")
        assert resolve_level("DEBUG") == "DEBUG"
        assert resolve_level() == "INFO"
        monkeypatch.delenv("IFG_LOG_LEVEL")
        assert resolve_level() == "WARNING"

    def test_unknown_level_is_warning(self):
        assert _parse_level("chatty") == logging.WARNING
        assert _parse_level("debug") == logging.DEBUG

    def test_file_handler(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("IFG_LOG_LEVEL", raising=False)
        log_file = tmp_path / "forge.log"
        root = logging.getLogger()
        saved = list(root.handlers), root.level
        try:
            setup_logging(level="WARNING", log_file=str(log_file), log_file_level="DEBUG")
            assert root.level == logging.DEBUG
            logging.getLogger("installforge.test").debug("into the file")
            for h in root.handlers:
                h.flush()
            assert "into the file" in log_file.read_text()
        finally:
            for h in root.handlers:
                h.close()
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])


class TestBuildLedger:
    def test_write_and_read(self, tmp_path: Path):
        ledger = BuildLedger(tmp_path / "ledger" / "builds.ndjson")
        ledger.write(BuildLedgerEntry(build_id="a", status="completed", images=2))
        ledger.write(BuildLedgerEntry(build_id="b", status="failed", error_stage="lint"))
        entries = ledger.read_all()
        assert [e.build_id for e in entries] == ["a", "b"]
        assert entries[1].error_stage == "lint"

    def test_read_recent(self, tmp_path: Path):
        ledger = BuildLedger(tmp_path / "builds.ndjson")
        for i in range(5):
            ledger.write(BuildLedgerEntry(build_id=str(i)))
        assert [e.build_id for e in ledger.read_recent(2)] == ["3", "4"]

    def test_corrupt_lines_skipped(self, tmp_path: Path):
        path = tmp_path / "builds.ndjson"
        ledger = BuildLedger(path)
        ledger.write(BuildLedgerEntry(build_id="ok"))
        with path.open("a") as f:
            f.write("{not json\n")
        assert [e.build_id for e in ledger.read_all()] == ["ok"]

    def test_missing_file(self, tmp_path: Path):
        assert BuildLedger(tmp_path / "none.ndjson").read_all() == []
