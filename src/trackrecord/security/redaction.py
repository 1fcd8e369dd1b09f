"""Masking of credentials before they reach logs or console output.

The only secret the engine holds is the per-instance ingest key. It travels in
the ``X-EA-Key`` header and comes from ``TRACK_RECORD_API_KEY``, so both names
are covered here alongside the generic authorization/token shapes an HTTP error
body may echo back.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"

# normalized (lowercase, "_" separated) key fragments that mark a value as secret
SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "apikey",
        "ea_key",
        "secret",
        "password",
        "token",
        "authorization",
    }
)
_SENSITIVE_EXACT = frozenset({"auth", "key"})

_HEADER_PATTERN = re.compile(
    r"(?i)((?:x-ea-key|x-api-key|authorization|track_record_api_key)\s*[:=]\s*)"
    r"(bearer\s+)?([^\s,;]+)"
)
_QUERY_PATTERN = re.compile(r"(?i)([?&]?)(apikey|key|token)=([^&\s]+)")
_JSON_PATTERN = re.compile(
    r'(?i)("(?:api_?key|x-ea-key|secret|password|token|authorization)"\s*:\s*")([^"\\]*)(")'
)


def _normalize_key(key: object) -> str:
    return str(key).strip().replace("-", "_").casefold()


def is_sensitive_key(key: object) -> bool:
    normalized = _normalize_key(key)
    if normalized in _SENSITIVE_EXACT:
        return True
    compact = normalized.replace("_", "")
    return any(part in normalized or part.replace("_", "") in compact for part in SENSITIVE_KEYS)


def mask_secret(value: str) -> str:
    """Keep the first and last four characters of long secrets, hide the rest."""
    if not value:
        return REDACTED
    if len(value) > 8:
        return value[:4] + "*" * (len(value) - 8) + value[-4:]
    if len(value) <= 2:
        return "*" * len(value)
    return "*" * (len(value) - 2) + value[-2:]


def sanitize_text(text: str, known_secrets: Iterable[str] | None = ()) -> str:
    try:
        result = str(text)
        for secret in known_secrets or ():
            if secret:
                result = result.replace(secret, mask_secret(str(secret)))
        result = _HEADER_PATTERN.sub(
            lambda m: f"{m.group(1)}{m.group(2) or ''}[REDACTED]", result
        )
        result = _QUERY_PATTERN.sub(
            lambda m: f"{m.group(1)}{m.group(2)}={mask_secret(m.group(3))}", result
        )
        return _JSON_PATTERN.sub(
            lambda m: f"{m.group(1)}{mask_secret(m.group(2))}{m.group(3)}", result
        )
    except Exception:  # noqa: BLE001
        return REDACTED


def sanitize_mapping(data: Mapping[Any, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in data.items():
        name = str(key)
        if is_sensitive_key(name):
            sanitized[name] = REDACTED if value is None else mask_secret(str(value))
        else:
            sanitized[name] = redact_data(value)
    return sanitized


def redact_data(value: Any) -> Any:
    try:
        if isinstance(value, Mapping):
            return sanitize_mapping(value)
        if isinstance(value, list):
            return [redact_data(item) for item in value]
        if isinstance(value, tuple):
            return tuple(redact_data(item) for item in value)
        if isinstance(value, str):
            return sanitize_text(value)
        return value
    except Exception:  # noqa: BLE001
        return REDACTED


def safe_repr(obj: object, *, known_secrets: Iterable[str] = ()) -> str:
    if isinstance(obj, Mapping):
        return repr(sanitize_mapping(obj))
    return sanitize_text(repr(obj), known_secrets=known_secrets)
