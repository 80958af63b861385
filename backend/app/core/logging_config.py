"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (machine-parseable)
    • Pretty console logs for development (human-readable)
    • Request- and worker-scoped context (request_id, worker_id, notification_id)

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Delivered", extra={"notification_id": nid, "provider": "resend"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

# ── Context variable for request/worker-scoped data ──
_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

# Extra attributes copied into JSON log entries when present on the record
EXTRA_FIELDS = (
    "notification_id", "provider", "channel", "attempt", "worker_id",
    "error_kind", "duration_ms", "status_code", "endpoint", "queue_depth",
)


def set_log_context(**kwargs: Any) -> None:
    """Set scoped log context (call from middleware or a worker loop)."""
    _log_context.set(kwargs)


def bind_log_context(**kwargs: Any) -> None:
    """Add keys to the current log context without dropping existing ones."""
    _log_context.set({**_log_context.get(), **kwargs})


def get_log_context() -> Dict[str, Any]:
    """Get current log context."""
    return _log_context.get()


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """Machine-parseable JSON log output for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": settings.APP_NAME,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # record extras win over scoped context
        for key, value in get_log_context().items():
            if value is not None:
                log_entry[key] = value
        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """
    Coloured one-line format for local development.

        12:00:01 INFO     [worker-2] ntf_3f2a91c0/resend backend.app.delivery.dispatcher: Sent ...
    """

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    @staticmethod
    def _tags(record: logging.LogRecord, ctx: Dict[str, Any]) -> str:
        scope = ctx.get("worker_id") or (ctx.get("request_id") or "")[:8]
        notification_id = getattr(record, "notification_id", None) or ctx.get("notification_id")
        provider = getattr(record, "provider", None) or ctx.get("provider")

        tags = f" [{scope}]" if scope else ""
        if notification_id:
            # ntf_ + first 8 hex chars is enough to grep for
            tags += f" {notification_id[:12]}"
            if provider:
                tags += f"/{provider}"
        elif provider:
            tags += f" {provider}"
        return tags

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        ts = self.formatTime(record, "%H:%M:%S")

        formatted = (
            f"{color}{ts} {record.levelname:8s}{self.RESET}"
            f"{self._tags(record, get_log_context())} {record.name}: {record.getMessage()}"
        )

        if record.exc_info and record.exc_info[1]:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


# ── Setup ──

def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Configure the root logger.

    Defaults follow settings: JSON lines in production, pretty output
    elsewhere, level from LOG_LEVEL. Worker processes started outside the
    API may pass their own values.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    use_json = settings.is_production if json_output is None else json_output
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())
    root.addHandler(handler)

    # Quieten noisy libraries
    for name in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger — call once per module."""
    return logging.getLogger(name)
