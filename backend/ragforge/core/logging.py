"""Structured logging for the API, the workers and the CLI."""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import orjson

_DEFAULT_LEVEL = os.environ.get("RAGF_LOG_LEVEL", "INFO")
_DEFAULT_JSON = os.environ.get("RAGF_LOG_JSON", "1").lower() not in {"0", "false", "no"}

CONTEXT_PREFIX = "ctx_"

# Per-request chatter from HTTP clients drowns out job and chat events.
_QUIET_LOGGERS = ("httpx", "httpcore", "urllib3")


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key[len(CONTEXT_PREFIX):]: value
        for key, value in record.__dict__.items()
        if key.startswith(CONTEXT_PREFIX) and value is not None
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``log_context`` values go under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "name": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        context = _context(record)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = record.stack_info
        return orjson.dumps(payload, default=str).decode("utf-8")


class ConsoleFormatter(logging.Formatter):
    """Human readable lines for interactive worker runs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if context:
            line += " " + " ".join(f"{key}={value}" for key, value in context.items())
        return line


def configure_logging(level: str | int = _DEFAULT_LEVEL, use_json: bool = _DEFAULT_JSON) -> None:
    logging.captureWarnings(True)
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if use_json else ConsoleFormatter())
    root.handlers = [handler]
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = "ragforge") -> logging.Logger:
    """Return a named logger, configuring the root on first use."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


def log_context(**values: Any) -> dict[str, Any]:
    """Build an ``extra`` mapping for ids and counters attached to a log line.

    >>> logger.info("Claimed job", extra=log_context(job_id=job.id, attempt=2))
    """
    return {f"{CONTEXT_PREFIX}{key}": value for key, value in values.items()}


__all__ = ["ConsoleFormatter", "JsonFormatter", "configure_logging", "get_logger", "log_context"]
