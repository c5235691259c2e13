"""Unit tests for PDL logging and observability.

This module tests the structured formatter, performance monitoring,
the operation context manager and the observability hooks used by the
roadmap engine and backend selection.
"""

import json
import logging
import sys
from unittest.mock import patch

import pytest

from pdl.pdl_logging import (
    JsonFormatter,
    ObservabilityHooks,
    PerformanceMonitor,
    log_backend_selected,
    log_error_with_context,
    log_operation,
    log_performance,
    log_structural_change,
    performance_monitor,
    setup_logging,
)


@pytest.fixture
def pdl_logger():
    logger = logging.getLogger("pdl")
    saved_level = logger.level
    yield logger
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(saved_level)


class TestJsonFormatter:
    """Test cases for JsonFormatter."""

    def make_record(self, level=logging.INFO, exc_info=None):
        return logging.getLogger("pdl.test").makeRecord(
            "pdl.test", level, __file__, 1, "Phase %s inserted", ("Build",), exc_info
        )

    def test_basic_fields(self):
        data = json.loads(JsonFormatter().format(self.make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "pdl.test"
        assert data["message"] == "Phase Build inserted"
        for key in ("timestamp", "module", "function", "line"):
            assert key in data

    def test_exception_is_rendered(self):
        try:
            raise ValueError("bad position")
        except ValueError:
            record = self.make_record(logging.ERROR, sys.exc_info())

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: bad position" in data["exception"]

    def test_extra_fields_are_merged(self):
        record = self.make_record()
        record.extra_fields = {"project_name": "alpha", "position": 0}

        data = json.loads(JsonFormatter().format(record))

        assert data["project_name"] == "alpha"
        assert data["position"] == 0


class TestPerformanceMonitor:
    """Test cases for PerformanceMonitor."""

    def test_record_and_filter_metrics(self):
        monitor = PerformanceMonitor()
        monitor.record_metric("insert_phase_duration", 0.2, {"status": "success"})
        monitor.record_metric("delete_phase_duration", 0.1)

        metrics = monitor.get_metrics("insert_phase_duration")

        assert list(metrics) == ["insert_phase_duration"]
        assert metrics["insert_phase_duration"][0]["value"] == 0.2
        assert metrics["insert_phase_duration"][0]["tags"] == {"status": "success"}
        assert len(monitor.get_metrics()) == 2

    def test_samples_are_bounded(self):
        monitor = PerformanceMonitor(max_samples=3)
        for value in range(5):
            monitor.record_metric("reorder_phases_duration", value)

        samples = monitor.get_metrics("reorder_phases_duration")["reorder_phases_duration"]

        assert [sample["value"] for sample in samples] == [2, 3, 4]


class TestLogPerformance:
    """Test cases for the log_performance decorator."""

    def test_sync_success_is_recorded(self):
        @log_performance("sync_call_ok")
        def timed_call():
            return "done"

        assert timed_call() == "done"
        (sample,) = performance_monitor.get_metrics("sync_call_ok_duration")["sync_call_ok_duration"]
        assert sample["tags"]["status"] == "success"

    @pytest.mark.asyncio
    async def test_async_failure_is_recorded_and_reraised(self):
        @log_performance("async_call_fail")
        async def timed_call():
            raise LookupError("no such sprint")

        with pytest.raises(LookupError):
            await timed_call()

        (sample,) = performance_monitor.get_metrics("async_call_fail_duration")["async_call_fail_duration"]
        assert sample["tags"] == {"status": "error", "error_type": "LookupError"}


class TestLogOperation:
    """Test cases for the log_operation context manager."""

    def test_success_logs_completion(self, caplog):
        caplog.set_level(logging.DEBUG, logger="pdl")

        with log_operation("migrate_private_stores", shared="/tmp/pdl.sqlite"):
            pass

        completed = [r for r in caplog.records if r.message.startswith("Completed operation: migrate_private_stores")]
        assert completed
        assert completed[0].extra_fields["shared"] == "/tmp/pdl.sqlite"

    def test_failure_logs_and_reraises(self, caplog):
        caplog.set_level(logging.DEBUG, logger="pdl")

        with pytest.raises(OSError):
            with log_operation("migrate_private_stores"):
                raise OSError("disk full")

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert "disk full" in errors[-1].message
        assert errors[-1].extra_fields["status"] == "failed"


class TestObservabilityHooks:
    """Test cases for ObservabilityHooks."""

    def test_register_trigger_and_unregister(self):
        hooks = ObservabilityHooks()
        seen = []

        def callback(**data):
            seen.append(data)

        hooks.register_hook("structure_phase_inserted", callback)
        hooks.log_project_event("structure_phase_inserted", project_name="alpha", position=1)
        hooks.unregister_hook("structure_phase_inserted", callback)
        hooks.trigger_hooks("structure_phase_inserted", project_name="alpha")

        assert len(seen) == 1
        assert seen[0]["project_name"] == "alpha"
        assert seen[0]["position"] == 1
        assert "timestamp" in seen[0]

    def test_failing_hook_is_contained(self):
        hooks = ObservabilityHooks()
        calls = []

        def failing(**data):
            raise RuntimeError("hook exploded")

        hooks.register_hook("backend_selected", failing)
        hooks.register_hook("backend_selected", lambda **data: calls.append(data))

        hooks.trigger_hooks("backend_selected", backend="shared")

        assert calls == [{"backend": "shared"}]


class TestLoggingFunctions:
    """Test cases for logging convenience functions."""

    def test_structural_change_event_name(self):
        with patch("pdl.pdl_logging.observability_hooks") as hooks:
            log_structural_change("Phase_Deleted", "alpha", sprints_discarded=2)

        hooks.log_project_event.assert_called_once_with(
            "structure_phase_deleted", project_name="alpha", sprints_discarded=2
        )

    def test_backend_selected_event(self):
        with patch("pdl.pdl_logging.observability_hooks") as hooks:
            log_backend_selected("shared", "multiple running instances detected", "/home/u/.pdl/data/pdl.sqlite")

        args, kwargs = hooks.log_project_event.call_args
        assert args == ("backend_selected",)
        assert kwargs["backend"] == "shared"
        assert kwargs["reason"] == "multiple running instances detected"

    def test_error_with_context(self, caplog):
        caplog.set_level(logging.ERROR, logger="pdl")

        log_error_with_context(ValueError("bad move"), {"operation": "reorder_sprints"}, project_name="alpha")

        record = caplog.records[-1]
        assert record.name == "pdl.errors"
        assert record.message == "Error in reorder_sprints: bad move"
        assert record.extra_fields["error_type"] == "ValueError"
        assert record.extra_fields["context"] == {"operation": "reorder_sprints"}
        assert record.extra_fields["project_name"] == "alpha"


class TestSetupLogging:
    """Integration tests for logging configuration."""

    def test_file_handler_writes_json_lines(self, tmp_path, pdl_logger):
        log_file = tmp_path / "pdl.log"

        setup_logging(log_level="DEBUG", log_file=log_file)
        logging.getLogger("pdl.engine").info("Inserted phase")
        for handler in pdl_logger.handlers:
            handler.flush()

        lines = log_file.read_text(encoding="utf-8").strip().splitlines()
        messages = [json.loads(line)["message"] for line in lines]
        assert "PDL logging initialized" in messages
        assert "Inserted phase" in messages

    def test_console_handler_uses_stderr(self, pdl_logger):
        setup_logging()

        (handler,) = pdl_logger.handlers
        assert handler.stream is sys.stderr
