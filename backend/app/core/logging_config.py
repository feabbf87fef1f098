"""
Structured logging configuration.

Provides:
    • JSON lines in production, coloured console output in development
    • A context filter that stamps every record with the request context
      (request_id, client_ip, endpoint) set by the request middleware
    • Delivery fields (delivery_id, provider, channel, alert_id) passed via
      ``extra`` surfaced in both formats

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Attempt recorded", extra={"delivery_id": "dlv_1a2b", "provider": "twilio"})

Contacts are masked by the callers before they reach a log call; nothing
here inspects message text.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})

_CONTEXT_FIELDS = ("request_id", "client_ip", "endpoint", "method")
_DELIVERY_FIELDS = (
    "delivery_id", "provider", "channel", "alert_id",
    "attempt_number", "duration_ms", "status_code",
)

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosqlite", "asyncio")


def set_request_context(**kwargs: Any) -> None:
    """Set request-scoped log context; call with no arguments to clear it."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


class RequestContextFilter(logging.Filter):
    """Copy the current request context onto each record (never overwrites ``extra``)."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_request_context().items():
            if key in _CONTEXT_FIELDS and not hasattr(record, key):
                setattr(record, key, value)
        return True


def _record_fields(record: logging.LogRecord, names) -> Dict[str, Any]:
    return {k: getattr(record, k) for k in names if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        entry.update(_record_fields(record, _CONTEXT_FIELDS))
        entry.update(_record_fields(record, _DELIVERY_FIELDS))

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Coloured human-readable format for local development."""

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
        tags = ""
        request_id = getattr(record, "request_id", None)
        if request_id:
            tags += f" [{str(request_id)[:8]}]"
        subject = getattr(record, "delivery_id", None) or getattr(record, "alert_id", None)
        if subject:
            tags += f" <{subject}>"

        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{tags} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """
    Install a single stdout handler on the root logger.

    `level` overrides LOG_LEVEL; `json_output` defaults to production mode.
    Safe to call more than once.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    use_json = settings.is_production if json_output is None else json_output
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())
    handler.addFilter(RequestContextFilter())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
