"""
Comfy Splice - Logging Configuration
====================================

Structured logging for the compiler and its executor glue.

Features:
- Structured JSON output for production
- Human-readable format for development
- Request ID tracking across operations
- Performance timing utilities

Usage:
    from comfy_splice.logging_config import get_logger, LogContext

    logger = get_logger(__name__)
    logger.info("Compiled workflow", extra={"template_id": "txt2img_flux"})

    with LogContext("session-123"):
        logger.info("Submitting")  # Includes request_id in all logs
"""

import contextvars
import json
import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import settings

__all__ = [
    "StructuredFormatter",
    "ContextFilter",
    "get_logger",
    "set_log_level",
    "current_request_id",
    "LogContext",
    "log_exception",
    "log_operation",
    "log_timing",
]

ROOT_LOGGER_NAME = "comfy_splice"

_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "comfy_splice_request_id", default=None
)

# Standard LogRecord attributes that never go into the JSON "extra" bag
_RESERVED_ATTRS = frozenset(
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
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "asctime",
        "taskName",
    }
)


# =============================================================================
# CUSTOM FORMATTER
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs structured log messages.

    Supports both text and JSON output formats.
    """

    def __init__(
        self, fmt: str | None = None, datefmt: str | None = None, json_output: bool = False
    ):
        super().__init__(fmt, datefmt)
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        if self.json_output:
            return self._format_json(record)
        return super().format(record)

    def _format_json(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


# =============================================================================
# CONTEXT FILTER
# =============================================================================


class ContextFilter(logging.Filter):
    """
    Stamps every record with ``component`` and the current ``request_id``.

    The request id lives in a ContextVar, so concurrent generations in
    threads or tasks each log under their own session id.
    """

    def __init__(self, component: str = ROOT_LOGGER_NAME):
        super().__init__()
        self.component = component

    def filter(self, record: logging.LogRecord) -> bool:
        record.component = self.component
        record.request_id = _request_id.get() or "-"
        return True


# =============================================================================
# LOGGER MANAGEMENT
# =============================================================================

_loggers: dict = {}
_initialized: bool = False
_context_filter: ContextFilter | None = None


def _setup_logging():
    """Initialize the logging system once."""
    global _initialized, _context_filter

    if _initialized:
        return

    config = settings.logging

    _context_filter = ContextFilter()

    if config.json_output:
        formatter = StructuredFormatter(json_output=True)
    else:
        formatter = StructuredFormatter(fmt=config.format, datefmt=config.date_format)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_context_filter)

    file_handler = None
    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_context_filter)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)
    if file_handler:
        root_logger.addHandler(file_handler)
    # Propagate so pytest's caplog and host applications still see records
    root_logger.propagate = True

    _initialized = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the given module name.

    Args:
        name: Usually __name__ of the calling module

    Returns:
        Configured logger instance under the comfy_splice namespace
    """
    _setup_logging()

    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    if name not in _loggers:
        logger = logging.getLogger(name)
        logger.addFilter(_context_filter)
        _loggers[name] = logger

    return _loggers[name]


def set_log_level(level: str):
    """Change the log level at runtime (DEBUG, INFO, WARNING, ERROR, CRITICAL)."""
    _setup_logging()
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(numeric_level)
    for logger in _loggers.values():
        logger.setLevel(numeric_level)


def current_request_id() -> str | None:
    """The session id set by the innermost active LogContext."""
    return _request_id.get()


# =============================================================================
# LOGGING CONTEXT MANAGER
# =============================================================================


class LogContext:
    """
    Context manager for request-scoped logging.

    Usage:
        with LogContext(session.id):
            logger.info("Polling for output")
    """

    def __init__(self, request_id: str):
        self.request_id = request_id
        self._token: contextvars.Token | None = None

    def __enter__(self):
        _setup_logging()
        self._token = _request_id.set(self.request_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _request_id.reset(self._token)
            self._token = None
        return False


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


def log_exception(
    logger: logging.Logger, message: str, exception: Exception, level: int = logging.ERROR, **extra
):
    """Log an exception with consistent formatting."""
    logger.log(
        level, f"{message}: {type(exception).__name__}: {exception}", exc_info=True, extra=extra
    )


def log_operation(
    logger: logging.Logger,
    operation: str,
    success: bool,
    duration_ms: float | None = None,
    **extra,
):
    """
    Log an operation result.

    Args:
        logger: The logger to use
        operation: Name of the operation
        success: Whether it succeeded
        duration_ms: Duration in milliseconds
        **extra: Additional context fields
    """
    status = "completed" if success else "failed"
    msg = f"{operation} {status}"
    if duration_ms is not None:
        msg += f" ({duration_ms:.1f}ms)"

    level = logging.INFO if success else logging.WARNING
    logger.log(level, msg, extra={"operation": operation, "success": success, **extra})


@contextmanager
def log_timing(logger: logging.Logger, operation: str, **extra):
    """
    Context manager to log operation timing.

    Usage:
        with log_timing(logger, "compile"):
            compiled = compiler.compile(...)
    """
    start = time.perf_counter()
    success = False
    try:
        yield
        success = True
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        log_operation(logger, operation, success, duration_ms, **extra)
