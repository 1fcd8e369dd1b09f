from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any

from trackrecord.logging_context import CONTEXT_FIELDS, get_logging_context
from trackrecord.security.redaction import redact_data

# logger name -> (env override, level when running at INFO or above)
_TRANSPORT_LOGGERS = {
    "httpx": ("HTTPX_LOG_LEVEL", logging.WARNING),
    "httpcore": ("HTTPCORE_LOG_LEVEL", logging.WARNING),
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, correlation fields always present, secrets masked."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            payload.update(extras)

        context = get_logging_context()
        payload.update({name: context.get(name) for name in CONTEXT_FIELDS})

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = "" if exc_value is None else str(exc_value)
            payload["traceback"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        return json.dumps(redact_data(payload), default=str)


def _parse_level(raw: str | None, default: int) -> int:
    if raw is None or not raw.strip():
        return default
    resolved = logging.getLevelName(raw.strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: str | int | None = None) -> None:
    """Route the root logger through :class:`JsonFormatter` on stderr.

    ``level`` falls back to ``LOG_LEVEL``. The HTTP transport loggers stay at
    WARNING unless running at DEBUG or overridden by their own env variable.
    """
    if isinstance(level, int):
        root_level = level
    else:
        root_level = _parse_level(level or os.getenv("LOG_LEVEL"), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)

    for name, (env_name, quiet_level) in _TRANSPORT_LOGGERS.items():
        default = logging.DEBUG if root_level <= logging.DEBUG else quiet_level
        logging.getLogger(name).setLevel(_parse_level(os.getenv(env_name), default))
