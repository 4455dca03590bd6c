"""
Logging setup for the safety engine.

Two output modes, picked from ``settings.ENVIRONMENT``:
    • production  → one JSON object per line
    • otherwise   → coloured single-line console output

Safety events attach their identifiers through ``extra=`` and they are
lifted onto the JSON record:

    logger.warning(
        "Guardian deviation %.0fm", dist,
        extra={"session_id": session.id, "user_id": session.user_id},
    )

Per-request values (request id, client address, path) are bound by the
HTTP middleware and appear on every line logged while that request is
being served.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

_bound: ContextVar[Dict[str, Any]] = ContextVar("safety_log_context", default={})

# Attributes lifted from `extra=` onto JSON lines
STRUCTURED_KEYS = (
    "alert_id",
    "session_id",
    "user_id",
    "task_id",
    "job_type",
    "channel",
    "recipient_count",
    "duration_ms",
    "status_code",
    "endpoint",
)

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosqlite", "asyncio")


def bind_log_context(**values: Any) -> None:
    """Attach values to every record emitted in the current task."""
    _bound.set({**_bound.get(), **values})


def clear_log_context() -> None:
    _bound.set({})


def current_log_context() -> Dict[str, Any]:
    return dict(_bound.get())


def _structured_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: getattr(record, k) for k in STRUCTURED_KEYS if hasattr(record, k)}


class JsonLineFormatter(logging.Formatter):
    """One JSON document per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        doc: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        doc.update(_structured_fields(record))

        request = current_log_context()
        if request:
            doc["request"] = request

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            doc["error"] = {"type": type(exc).__name__, "detail": str(exc)}

        return json.dumps(doc, default=str)


class ConsoleFormatter(logging.Formatter):
    """Readable output for a developer terminal."""

    LEVEL_COLOURS = {
        logging.DEBUG: "\033[2;37m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;41m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelno, "")
        request_id = current_log_context().get("request_id")
        prefix = f"{self.formatTime(record, '%H:%M:%S')} {colour}{record.levelname:<8}{self.RESET}"
        if request_id:
            prefix += f" <{request_id[:8]}>"

        line = f"{prefix} {record.name}: {record.getMessage()}"

        fields = _structured_fields(record)
        if fields:
            line += "  " + " ".join(f"{k}={v}" for k, v in fields.items())

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            line += f"\n    ! {type(exc).__name__}: {exc}"
        return line


def setup_logging(level: Optional[str] = None, json_lines: Optional[bool] = None) -> None:
    """Install a single stdout handler on the root logger."""
    if json_lines is None:
        json_lines = settings.is_production
    level_name = (level or settings.LOG_LEVEL).upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLineFormatter() if json_lines else ConsoleFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level_name, logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
