from __future__ import annotations

from enum import Enum

import httpx


class FailureCategory(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    REJECTED = "rejected"
    AUTH = "auth"
    CONFIGURATION = "configuration"
    MALFORMED = "malformed"


CONFIGURATION_CATEGORIES = frozenset({FailureCategory.AUTH, FailureCategory.CONFIGURATION})


def classify_transport_failure(
    exc: Exception | None = None, *, status_code: int | None = None
) -> FailureCategory:
    if exc is not None:
        if isinstance(exc, httpx.TimeoutException | TimeoutError):
            return FailureCategory.TIMEOUT
        # Outbound calls refused before reaching the wire: bad scheme or URL.
        if isinstance(exc, httpx.UnsupportedProtocol | httpx.InvalidURL):
            return FailureCategory.CONFIGURATION
        if isinstance(exc, httpx.TransportError):
            return FailureCategory.CONNECTION
        if isinstance(exc, ValueError):
            return FailureCategory.MALFORMED
        return FailureCategory.CONNECTION

    if status_code in {401, 403}:
        return FailureCategory.AUTH
    return FailureCategory.REJECTED


def is_configuration_failure(category: FailureCategory) -> bool:
    return category in CONFIGURATION_CATEGORIES


def remediation_hint(category: FailureCategory, *, base_url: str) -> str:
    if category is FailureCategory.AUTH:
        return (
            "Track record server rejected the shared secret; "
            "check TRACK_RECORD_API_KEY matches the instance key"
        )
    if category is FailureCategory.CONFIGURATION:
        return (
            f"Outbound requests to {base_url} are not possible; "
            "check TRACK_RECORD_URL and allow the host in the outbound allow-list"
        )
    if category is FailureCategory.TIMEOUT:
        return "Track record server did not answer within the timeout; event dropped"
    if category is FailureCategory.MALFORMED:
        return "Track record server answered with an unreadable body"
    if category is FailureCategory.CONNECTION:
        return "Track record server unreachable; event dropped"
    return "Track record server rejected the event; event dropped"
