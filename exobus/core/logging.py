"""Structured JSON logging for exobus."""

import json
import logging
from datetime import UTC, datetime
from typing import Any

# Dynamically derive standard LogRecord attributes at module import time
# This ensures future Python additions (like taskName) are automatically handled
_STANDARD_LOGRECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
)

# Well-known bus fields, emitted first when present
_BUS_FIELDS = ("module_id", "message_type", "message_id", "procedure", "restart_count")


class JSONFormatter(logging.Formatter):
    """JSON formatter with UTC ISO8601 timestamps."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for field in _BUS_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        # Add any extra fields passed via extra={}
        for key, value in vars(record).items():
            if key not in _STANDARD_LOGRECORD_KEYS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, default=str)
        except Exception:
            # Fallback to safe string representation if serialization fails
            return str(log_data)


def _setup_json_handler(logger: logging.Logger, level: int | None) -> None:
    """Configure a logger with JSON formatting.

    The handler writes to stderr: a worker's stdout is its bus channel.

    Args:
        logger: The logger to configure.
        level: The logging level to set, or None to keep the current one.
    """
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    if level is not None:
        logger.setLevel(level)
    logger.propagate = False


def configure_bus_logger(name: str = "exobus", level: int | None = None) -> logging.Logger:
    """Configure and return a bus component logger with JSON formatting.

    Components call this at construction time. Without an explicit level the
    logger keeps whatever level was configured before (INFO on first use), so
    constructing a component never resets a level chosen by the host.

    Args:
        name: The logger name, e.g. "exobus.router".
        level: Optional logging level to set.
    """
    logger = logging.getLogger(name)
    if level is None and logger.level == logging.NOTSET:
        level = logging.INFO
    _setup_json_handler(logger, level)
    return logger


def set_level(level: int) -> None:
    """Set the level of every configured exobus logger."""
    for name in (
        "exobus",
        "exobus.router",
        "exobus.supervisor",
        "exobus.manager",
        "exobus.worker",
        "exobus.channels",
        "exobus.directory",
    ):
        configure_bus_logger(name, level)
