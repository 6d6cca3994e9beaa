"""
Logging setup for the scanflow worker.

JSON lines in production, colored console output in development. Log
calls made while a job is running carry that job's ids: ``log_context``
binds them for the current asyncio task and ``JobContextFilter`` copies
them onto every record.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import orjson

# Attributes every LogRecord has; anything else arrived via extra= or a filter
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

_log_context: ContextVar[dict[str, Any]] = ContextVar("scanflow_log_context", default={})

NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "anthropic", "sentry_sdk", "asyncio")


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """
    Attach fields to every record logged inside the block.

    Usage:
        with log_context(scan_id=scan_id):
            logger.info("Downloading scan")
    """
    token = _log_context.set({**_log_context.get(), **values})
    try:
        yield
    finally:
        _log_context.reset(token)


class JobContextFilter(logging.Filter):
    """Copy the bound job context onto records; explicit extras win."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra

        return orjson.dumps(payload, default=str).decode("utf-8")


class ConsoleFormatter(logging.Formatter):
    """Colored level names for local runs."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        plain = record.levelname
        record.levelname = f"{self.COLORS.get(plain, self.RESET)}{plain}{self.RESET}"
        try:
            return super().format(record)
        finally:
            # Other handlers see the same record
            record.levelname = plain


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    log_format: str | None = None,
) -> None:
    """
    Configure the root logger with a single stdout handler.

    Args:
        log_level: Logging level name, case-insensitive
        json_logs: Emit JSON lines instead of colored text
        log_format: Format string for console output
    """
    level = log_level.upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(JobContextFilter())
    if json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            ConsoleFormatter(
                log_format or "%(asctime)s | %(levelname)-8s | %(name)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured", extra={"log_level": level, "json_logs": json_logs}
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LoggerMixin:
    """Gives a class a ``logger`` named ``<module>.<ClassName>``."""

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(f"{type(self).__module__}.{type(self).__name__}")
