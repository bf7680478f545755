"""Structured logging for cache processes.

Provides:
- JSON log lines for log aggregation systems
- Cache context (model, instance id, operation) carried in contextvars, so
  every line logged inside a sync or a lazy load is tagged with it
- A compact console format for development

Usage:
    from rowcache.observability.logging import LogContext, configure_logging

    configure_logging(json_format=True, level="INFO")

    with LogContext(model="User", operation="sync"):
        logger.info("Full synced 120 items")  # tagged model=User operation=sync
"""

from __future__ import annotations

import contextvars
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

import orjson

from rowcache.config import settings

model_var: contextvars.ContextVar[str] = contextvars.ContextVar("model", default="")
instance_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("instance_id", default="")
operation_var: contextvars.ContextVar[str] = contextvars.ContextVar("operation", default="")

_CONTEXT_VARS: dict[str, contextvars.ContextVar[str]] = {
    "model": model_var,
    "instance_id": instance_id_var,
    "operation": operation_var,
}

# Attributes every LogRecord carries; anything else was passed via ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def current_context() -> dict[str, str]:
    """Context values set by the enclosing ``LogContext`` blocks."""
    return {key: value for key, var in _CONTEXT_VARS.items() if (value := var.get())}


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Output format:
    {"timestamp": "2026-01-10T12:34:56.789+00:00", "level": "INFO",
     "logger": "rowcache.manager", "message": "Full synced 2 items for User",
     "model": "User", "operation": "sync"}
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        payload.update(current_context())
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )

        if record.exc_info and record.exc_info[1] is not None:
            error = record.exc_info[1]
            payload["exception"] = {
                "type": type(error).__name__,
                "message": str(error),
                "traceback": self.formatException(record.exc_info),
            }

        return orjson.dumps(payload, default=str).decode()


class ConsoleFormatter(logging.Formatter):
    """Readable single-line format for development.

    Output format:
    12:34:56.789 INFO     rowcache.manager  Full synced 2 items [model=User]
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True, stream: IO[str] | None = None) -> None:
        super().__init__()
        stream = stream or sys.stderr
        self.use_colors = use_colors and stream.isatty()

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        level = f"{record.levelname:<8}"
        if self.use_colors:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"

        line = f"{clock} {level} {record.name}  {record.getMessage()}"
        context = current_context()
        if context:
            line += " [" + " ".join(f"{key}={value}" for key, value in context.items()) + "]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    json_format: bool | None = None,
    level: str | None = None,
    use_colors: bool = True,
    stream: IO[str] | None = None,
) -> logging.Handler:
    """Send ``rowcache`` logs to a single handler.

    Args:
        json_format: JSON lines instead of console output
            (default: ``ROWCACHE_LOG_JSON``)
        level: Log level name (default: ``ROWCACHE_LOG_LEVEL``)
        use_colors: ANSI colors in console output, when writing to a TTY
        stream: Output stream (default: stderr)

    Returns:
        The installed handler
    """
    if json_format is None:
        json_format = settings.log_json
    stream = stream or sys.stderr

    package_logger = logging.getLogger("rowcache")
    package_logger.setLevel((level or settings.log_level).upper())
    for existing in package_logger.handlers[:]:
        package_logger.removeHandler(existing)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        JsonFormatter() if json_format else ConsoleFormatter(use_colors=use_colors, stream=stream)
    )
    package_logger.addHandler(handler)
    package_logger.propagate = False

    # redis-py logs every reconnect attempt; the cache reports those itself
    logging.getLogger("redis").setLevel(logging.WARNING)
    return handler


class LogContext:
    """Tag log lines emitted inside the block with cache context.

    Unknown keys are ignored. Blocks nest; leaving one restores the outer values.
    """

    def __init__(self, **values: str) -> None:
        self.values = {key: value for key, value in values.items() if key in _CONTEXT_VARS}
        self._tokens: list[tuple[contextvars.ContextVar[str], contextvars.Token[str]]] = []

    def __enter__(self) -> "LogContext":
        for key, value in self.values.items():
            var = _CONTEXT_VARS[key]
            self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, *args: Any) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
