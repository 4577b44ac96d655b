from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from datetime import UTC, datetime
from typing import Any

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")

ROOT_LOGGER_NAME = "roster"

_INTERNAL_LOGRECORD_KEYS: set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "taskName",
}

SENSITIVE_KEYS = {
    "password",
    "password_hash",
    "secret",
    "token",
    "access_token",
    "authorization",
}


def _sanitize(value: Any, *, key: str | None = None, depth: int = 0) -> Any:
    if key and key.lower() in SENSITIVE_KEYS:
        return "***"
    if depth > 4:
        return "..."
    if isinstance(value, dict):
        return {str(k): _sanitize(v, key=str(k), depth=depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_sanitize(item, depth=depth + 1) for item in value]
    return value


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _INTERNAL_LOGRECORD_KEYS:
                continue
            payload[key] = _sanitize(value, key=key)
        if record.exc_info:
            exc_type = record.exc_info[0].__name__ if record.exc_info[0] else None
            payload["exception"] = {
                "type": exc_type,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": traceback.format_exception(*record.exc_info),
            }
        return json.dumps(payload, ensure_ascii=False, default=str, separators=(",", ":"))


def setup_logging(level: str | None = None, fmt: str | None = None) -> logging.Logger:
    log = logging.getLogger(ROOT_LOGGER_NAME)
    resolved_level = (level or LOG_LEVEL).upper()
    log.setLevel(getattr(logging, resolved_level, logging.INFO))

    if not log.handlers:
        handler = logging.StreamHandler(sys.stdout)
        if (fmt or LOG_FORMAT) == "json":
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        log.addHandler(handler)
    return log
