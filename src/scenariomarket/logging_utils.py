from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any

from scenariomarket.logging_context import CONTEXT_FIELDS, get_logging_context
from scenariomarket.security.redaction import redact_data

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys() | {"message", "asctime", "extra"}
)

# (logger name, env override, level at INFO, level at DEBUG)
_HTTP_LOGGERS = (
    ("httpx", "HTTPX_LOG_LEVEL", logging.INFO, logging.DEBUG),
    ("httpcore", "HTTPCORE_LOG_LEVEL", logging.WARNING, logging.DEBUG),
)


class JsonFormatter(logging.Formatter):
    """One JSON object per record: message, structured extras, request context."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        structured = getattr(record, "extra", None)
        if isinstance(structured, dict):
            payload.update(structured)
        payload.update(
            {
                key: value
                for key, value in record.__dict__.items()
                if key not in _STANDARD_ATTRS and key not in payload
            }
        )

        context = get_logging_context()
        for name in CONTEXT_FIELDS:
            payload.setdefault(name, context.get(name))

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = "" if exc_value is None else str(exc_value)
            payload["traceback"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        return json.dumps(redact_data(payload), default=str)


def _parse_level(raw: str | int | None, default: int) -> int:
    if isinstance(raw, int):
        return raw
    if raw is None or not str(raw).strip():
        return default
    level = logging.getLevelName(str(raw).strip().upper())
    return level if isinstance(level, int) else default


def setup_logging(level: str | int | None = None) -> None:
    """Route every logger through one stderr JSON handler.

    ``level`` falls back to ``LOG_LEVEL``; the chatty HTTP client loggers get their
    own defaults unless ``HTTPX_LOG_LEVEL`` / ``HTTPCORE_LOG_LEVEL`` are set.
    """

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root_level = _parse_level(level if level is not None else os.getenv("LOG_LEVEL"), logging.INFO)
    root.setLevel(root_level)

    for name, env_name, info_level, debug_level in _HTTP_LOGGERS:
        default = debug_level if root_level <= logging.DEBUG else info_level
        logging.getLogger(name).setLevel(_parse_level(os.getenv(env_name), default))
