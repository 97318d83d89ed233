"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (one object per line)
    • Pretty console logs for development
    • Alert-scoped context (request_id, requester_id, alert_id) carried
      across tasks

asyncio tasks copy the current context when they are created, so every
coordinator task started after ``bind_alert_context`` logs with the alert
it belongs to: the fan-out, the timers and the status observer alike.

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Alert created", extra={"alert_id": alert.id})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

from backend.app.core.config import settings

_alert_context: ContextVar[Dict[str, Any]] = ContextVar("alert_context", default={})

# Pretty formatter tags, in display order
_CONTEXT_TAGS = (
    ("request_id", "req", 6),
    ("requester_id", "usr", 12),
    ("alert_id", "sos", 8),
)


def set_alert_context(**kwargs: Any) -> None:
    """Replace the log context; no arguments clears it."""
    _alert_context.set({k: v for k, v in kwargs.items() if v is not None})


def bind_alert_context(**kwargs: Any) -> None:
    """Add keys to the current log context, keeping the ones already bound."""
    merged = dict(_alert_context.get())
    merged.update({k: v for k, v in kwargs.items() if v is not None})
    _alert_context.set(merged)


def get_alert_context() -> Dict[str, Any]:
    return _alert_context.get()


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log shipping."""

    EXTRA_KEYS = (
        "alert_id", "requester_id", "helper_id", "recipient_count",
        "status", "duration_ms", "status_code", "endpoint",
    )

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": settings.APP_NAME,
        }
        # context first so explicit ``extra`` values win
        entry.update(get_alert_context())
        for key in self.EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "trace": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Coloured single-line format with short context tags."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        ts = self.formatTime(record, "%H:%M:%S")

        ctx = get_alert_context()
        tags = "".join(
            f" [{label}:{str(ctx[key])[-width:]}]"
            for key, label, width in _CONTEXT_TAGS
            if ctx.get(key)
        )
        line = (
            f"{color}{ts} {record.levelname:8s}{self.RESET}"
            f"{tags} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging() -> None:
    """Install one stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    # request lines come from RequestLoggingMiddleware
    for noisy in ("uvicorn.access", "httpx", "httpcore", "redis"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
