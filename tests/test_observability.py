"""Tests for the observability module.

Tests for metrics collection, logging configuration, and error sanitization.
"""
import json
import logging
from datetime import datetime
from pathlib import Path

import pytest

from notestore.observability import (
    ROOT_LOGGER_NAME,
    MetricsCollector,
    _sanitize_error_message,
    configure_logging,
    timed_operation,
)


@pytest.fixture
def restore_logging():
    """Undo handler and level changes made by configure_logging."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    handlers, level = list(logger.handlers), logger.level
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)


class TestErrorMessageSanitization:
    """Tests for error message sanitization."""

    def test_sanitize_none_returns_none(self):
        assert _sanitize_error_message(None) is None

    def test_sanitize_removes_home_directory(self):
        """Home directory paths should be replaced with ~."""
        home = str(Path.home())
        result = _sanitize_error_message(f"{home}/notes/db.sqlite: locked")
        assert home not in result
        assert result.startswith("~")

    def test_sanitize_flattens_whitespace(self):
        assert _sanitize_error_message("  a\nb\r  c  ") == "a b c"

    def test_sanitize_truncates_long_messages(self):
        result = _sanitize_error_message("a" * 300)
        assert len(result) == 200
        assert result.endswith("...")


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    def test_records_success_and_failure(self):
        collector = MetricsCollector()
        collector.record_operation("upsert", 10.0, True)
        collector.record_operation("upsert", 30.0, False, "disk\nfull")

        metrics = collector.get_metrics()["upsert"]
        assert metrics["count"] == 2
        assert metrics["success_count"] == 1
        assert metrics["error_count"] == 1
        assert metrics["avg_duration_ms"] == 20.0
        assert metrics["min_duration_ms"] == 10.0
        assert metrics["max_duration_ms"] == 30.0
        assert metrics["last_error"] == "disk full"
        assert metrics["last_error_time"] is not None

    def test_summary(self):
        collector = MetricsCollector()
        collector.record_operation("search", 1.0, True)
        collector.record_operation("delete", 1.0, False, "x")

        summary = collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_errors"] == 1
        assert summary["overall_success_rate"] == 0.5
        assert summary["operations_tracked"] == ["delete", "search"]

    def test_empty_summary(self):
        summary = MetricsCollector().get_summary()
        assert summary["total_operations"] == 0
        assert summary["overall_success_rate"] == 1.0

    def test_in_memory_collector_does_not_save(self):
        collector = MetricsCollector()
        assert collector.metrics_file is None
        assert collector.save() is False

    def test_save_and_restore(self, tmp_path):
        metrics_file = tmp_path / "metrics.json"
        collector = MetricsCollector(metrics_file=metrics_file)
        collector.record_operation("search", 5.0, True)
        assert collector.save() is True

        data = json.loads(metrics_file.read_text())
        assert data["operations"]["search"]["count"] == 1
        assert data["saved_at"] is not None
        assert not (tmp_path / "metrics.json.tmp").exists()

        restored = MetricsCollector(metrics_file=metrics_file)
        assert restored.get_metrics()["search"]["count"] == 1
        started = [
            datetime.fromisoformat(c.get_summary()["started_at"])
            for c in (collector, restored)
        ]
        assert started[0] == started[1]

    def test_periodic_save(self, tmp_path):
        metrics_file = tmp_path / "metrics.json"
        collector = MetricsCollector(metrics_file=metrics_file, save_interval=2)
        collector.record_operation("get", 1.0, True)
        assert not metrics_file.exists()
        collector.record_operation("get", 1.0, True)
        assert metrics_file.exists()

    def test_corrupt_metrics_file_ignored(self, tmp_path):
        metrics_file = tmp_path / "metrics.json"
        metrics_file.write_text("{not json")
        assert MetricsCollector(metrics_file=metrics_file).get_metrics() == {}

    def test_unwritable_metrics_file_reported(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        collector = MetricsCollector(metrics_file=blocker / "metrics.json")
        collector.record_operation("get", 1.0, True)
        assert collector.save() is False


class TestTimedOperation:
    """Tests for the timed_operation context manager."""

    def test_records_success(self):
        collector = MetricsCollector()
        with timed_operation("search", collector, query="x") as op:
            op["result_count"] = 3
        assert len(op["correlation_id"]) == 8
        assert collector.get_metrics()["search"]["success_count"] == 1

    def test_records_failure_and_reraises(self):
        collector = MetricsCollector()
        with pytest.raises(ValueError):
            with timed_operation("upsert", collector):
                raise ValueError("bad input")
        metrics = collector.get_metrics()["upsert"]
        assert metrics["error_count"] == 1
        assert metrics["last_error"] == "bad input"

    def test_without_collector(self):
        with timed_operation("noop") as op:
            pass
        assert "correlation_id" in op


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_creates_log_file(self, tmp_path, restore_logging):
        log_dir = configure_logging(tmp_path / "logs", console=False)

        assert log_dir == tmp_path / "logs"
        assert len(logging.getLogger(ROOT_LOGGER_NAME).handlers) == 1
        logging.getLogger("notestore.storage").info("hello from storage")
        for handler in logging.getLogger(ROOT_LOGGER_NAME).handlers:
            handler.flush()
        assert "hello from storage" in (log_dir / "notestore.log").read_text()

    def test_sets_level(self, tmp_path, restore_logging):
        configure_logging(tmp_path, level=logging.WARNING, console=False)
        assert logging.getLogger(ROOT_LOGGER_NAME).level == logging.WARNING

    def test_level_by_name(self, tmp_path, restore_logging):
        configure_logging(tmp_path, level="debug", console=False)
        assert logging.getLogger(ROOT_LOGGER_NAME).level == logging.DEBUG

    def test_level_defaults_to_configured(self, tmp_path, restore_logging, monkeypatch):
        from notestore.config import config

        monkeypatch.setattr(config, "log_level", "ERROR")
        configure_logging(tmp_path, console=False)
        assert logging.getLogger(ROOT_LOGGER_NAME).level == logging.ERROR

    def test_reconfigure_replaces_handlers(self, tmp_path, restore_logging):
        configure_logging(tmp_path, console=True)
        configure_logging(tmp_path, console=False)
        handlers = logging.getLogger(ROOT_LOGGER_NAME).handlers
        assert len(handlers) == 1
