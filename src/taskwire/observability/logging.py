"""Structured JSON logging for taskwire.

Provides structured logging with correlation context for dispatched tasks.

Usage:
    from taskwire.observability.logging import configure_logging, get_logger

    # Configure at application startup
    configure_logging(log_level="INFO", json_format=True)

    # Use in your code
    logger = get_logger(__name__)
    logger.info("Reply received", extra={"correlation_id": "abc123"})
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "taskwire_log_context", default={}
)

# Attributes every LogRecord carries; anything else came from extra={}.
_RESERVED = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "correlation_id",
        "task_id",
    }
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs log records as JSON with timestamp, level, message, and context.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if getattr(record, "correlation_id", None) is not None:
            log_data["correlation_id"] = record.correlation_id

        if getattr(record, "task_id", None) is not None:
            log_data["task_id"] = record.task_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add any additional fields from extra={}
        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ContextFilter(logging.Filter):
    """Copy the active :class:`CorrelationLogContext` fields onto each record.

    Fields passed explicitly through ``extra={}`` win over the context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    include_stdlib: bool = False,
) -> None:
    """Configure application-wide logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatter if True, plain text if False
        include_stdlib: Include logs from standard library and dependencies
    """
    level = getattr(logging, log_level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(ContextFilter())

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    if not include_stdlib:
        # Set higher level for noisy libraries
        logging.getLogger("uvicorn").setLevel(logging.WARNING)
        logging.getLogger("fastapi").setLevel(logging.WARNING)
        logging.getLogger("asyncio").setLevel(logging.WARNING)
        logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


class CorrelationLogContext:
    """Context manager for adding correlation context to logs.

    The context is stored in a :mod:`contextvars` variable, so concurrent
    asyncio tasks each see their own fields.

    Usage:
        with CorrelationLogContext(correlation_id="abc123", task_id=7):
            logger.info("Processing reply")  # Will include correlation_id
    """

    def __init__(self, **context: Any) -> None:
        self._context = context
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __enter__(self) -> CorrelationLogContext:
        """Set log context."""
        self._token = _log_context.set({**_log_context.get(), **self._context})
        return self

    def __exit__(self, *args: Any) -> None:
        """Restore the previous log context."""
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


def current_log_context() -> dict[str, Any]:
    return dict(_log_context.get())
