"""Tests for structured logging output shape."""

import json
import logging
import sys

import pytest

from exobus.channels.inmemory import InMemoryLauncher
from exobus.core.logging import JSONFormatter, configure_bus_logger, set_level
from exobus.core.supervisor import ProcessSupervisor


class LogCapture(logging.Handler):
    """Custom handler to capture log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def log_capture():
    """Capture records of the exobus.supervisor logger."""
    logger = configure_bus_logger("exobus.supervisor")
    handler = LogCapture()
    handler.setLevel(logging.DEBUG)
    original_level = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield handler

    logger.removeHandler(handler)
    logger.setLevel(original_level)


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="exobus.router", level=logging.WARNING, pathname="", lineno=0,
        msg="Dropped %s", args=("event",), exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_outputs_json_with_bus_fields():
    line = JSONFormatter().format(make_record(module_id="local:a", message_id=7, kind="process_fault"))
    data = json.loads(line)

    assert data["level"] == "WARNING"
    assert data["logger"] == "exobus.router"
    assert data["message"] == "Dropped event"
    assert data["module_id"] == "local:a"
    assert data["message_id"] == 7
    assert data["kind"] == "process_fault"
    assert "timestamp" in data
    assert list(data)[:5] == ["timestamp", "level", "message", "logger", "module_id"]


def test_formatter_handles_unserializable_extra():
    data = json.loads(JSONFormatter().format(make_record(detail={1, 2})))
    assert data["detail"] == "{1, 2}"


def test_formatter_includes_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = make_record()
        record.exc_info = sys.exc_info()
    data = json.loads(JSONFormatter().format(record))
    assert "RuntimeError: boom" in data["exc_info"]


def test_configure_keeps_chosen_level():
    logger = configure_bus_logger("exobus.test.level", logging.WARNING)
    assert configure_bus_logger("exobus.test.level") is logger
    assert logger.level == logging.WARNING
    assert len(logger.handlers) == 1
    assert logger.propagate is False


def test_set_level_applies_to_bus_loggers():
    original = logging.getLogger("exobus.router").level
    try:
        set_level(logging.ERROR)
        assert logging.getLogger("exobus.router").level == logging.ERROR
        assert logging.getLogger("exobus.worker").level == logging.ERROR
    finally:
        set_level(original or logging.INFO)


async def test_lifecycle_is_logged_with_module_fields(log_capture, descriptor, wait_for):
    launcher = InMemoryLauncher()
    sup = ProcessSupervisor(launcher, max_restarts=0, stop_grace_period=0.1)
    await sup.start(descriptor("a"))
    launcher.latest("local:a").exit(2)
    await wait_for(lambda: "local:a" not in sup.modules)

    messages = [r.getMessage() for r in log_capture.records]
    assert "Starting local:a" in messages
    assert "Module exited unexpectedly: local:a" in messages

    [fault] = [r for r in log_capture.records if getattr(r, "kind", None) == "process_fault"]
    assert fault.module_id == "local:a"
    assert fault.exit_code == 2
    [exhausted] = [r for r in log_capture.records if getattr(r, "kind", None) == "restart_exhausted"]
    assert exhausted.levelno == logging.ERROR
