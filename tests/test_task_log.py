"""Tests for the in-memory task log and the JSONL delivery log."""
from __future__ import annotations

import json
import logging

import pytest

from larknotify.core.logging_config import log_delivery, setup_logging
from larknotify.core.task_log import TaskLog


class TestTaskLog:
    def test_entries_are_ordered_per_task(self):
        log = TaskLog()
        log.add("a", "info", "first")
        log.add("b", "debug", "other task")
        entry = log.add("a", "error", "second", {"code": 1})

        assert [e.message for e in log.get("a")] == ["first", "second"]
        assert entry.metadata == {"code": 1}
        assert entry.time_iso.endswith("+00:00")

    def test_rejects_unknown_level(self):
        with pytest.raises(ValueError, match="Unsupported log level"):
            TaskLog().add("a", "fatal", "nope")

    def test_get_returns_copy(self):
        log = TaskLog()
        log.add("a", "info", "x")
        log.get("a").clear()
        assert len(log.get("a")) == 1

    def test_format_tail(self):
        log = TaskLog()
        assert log.format_tail("a") == "(no log entries)"
        for i in range(5):
            log.add("a", "warn", f"line {i}")

        lines = log.format_tail("a", n=2).splitlines()
        assert len(lines) == 2
        assert lines[0].endswith("WARN line 3")
        assert lines[1].endswith("WARN line 4")

    def test_clear(self):
        log = TaskLog()
        log.add("a", "info", "x")
        log.add("b", "info", "y")
        log.clear("a")
        assert log.get("a") == []
        log.clear_all()
        assert log.get("b") == []


class TestDeliveryLog:
    def test_log_delivery_writes_jsonl(self, tmp_path):
        setup_logging(str(tmp_path), "debug")
        try:
            record = log_delivery("task-1", "completed", True, 2, transport="webhook", message_id="m1")
            for handler in logging.getLogger("larknotify._deliveries").handlers:
                handler.flush()

            lines = (tmp_path / "deliveries.log").read_text(encoding="utf-8").splitlines()
            assert json.loads(lines[-1]) == record
            assert record["transport"] == "webhook"
            assert "error" not in record
            assert (tmp_path / "larknotify.log").exists()
        finally:
            for name in ("", "larknotify._deliveries"):
                for handler in logging.getLogger(name).handlers[:]:
                    handler.close()
                    logging.getLogger(name).removeHandler(handler)

    def test_log_delivery_truncates_error(self):
        record = log_delivery("task-1", "failed", False, 3, error="x" * 5000)
        assert len(record["error"]) == 2000
        assert record["success"] is False
