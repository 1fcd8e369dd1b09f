from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from urllib.parse import quote

import httpx

from trackrecord.domain.digest import is_hex64
from trackrecord.domain.events import Event
from trackrecord.security.redaction import sanitize_text
from trackrecord.services.sync_errors import (
    FailureCategory,
    classify_transport_failure,
    is_configuration_failure,
    remediation_hint,
)

logger = logging.getLogger(__name__)

AUTH_HEADER = "X-EA-Key"
_ERROR_SNIPPET_LIMIT = 240


@dataclass(frozen=True)
class RecoveredState:
    seq_no: int
    last_hash: str


def _response_snippet(response: httpx.Response, known_secrets: tuple[str, ...]) -> str:
    text = response.text.strip().replace("\n", " ")
    return sanitize_text(text[:_ERROR_SNIPPET_LIMIT], known_secrets=known_secrets)


def parse_recovery_body(body: object) -> RecoveredState:
    if not isinstance(body, dict):
        raise ValueError("recovery body must be a JSON object")
    seq_raw = body.get("lastSeqNo")
    hash_raw = body.get("lastEventHash")
    if isinstance(seq_raw, bool) or not isinstance(seq_raw, int) or seq_raw < 0:
        raise ValueError(f"invalid lastSeqNo: {seq_raw!r}")
    last_hash = hash_raw.strip().lower() if isinstance(hash_raw, str) else ""
    if not is_hex64(last_hash):
        raise ValueError("invalid lastEventHash")
    return RecoveredState(seq_no=seq_raw, last_hash=last_hash)


class TrackRecordHttpClient:
    """Blocking client for the ingest and recovery endpoints.

    Every failure is reported as ``False`` / ``None``; nothing is raised to the caller.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def __enter__(self) -> TrackRecordHttpClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def close(self) -> None:
        self.client.close()

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", AUTH_HEADER: self.api_key}

    def _log_failure(
        self,
        message: str,
        category: FailureCategory,
        *,
        path: str,
        status_code: int | None = None,
        detail: str | None = None,
        level: int = logging.WARNING,
    ) -> None:
        hint = remediation_hint(category, base_url=self.base_url)
        if is_configuration_failure(category):
            # operator action required, keep it loud
            level = logging.ERROR
        logger.log(
            level,
            message,
            extra={
                "extra": {
                    "path": path,
                    "category": category.value,
                    "status_code": status_code,
                    "detail": detail,
                    "hint": hint,
                }
            },
        )

    def send(self, event: Event) -> bool:
        path = "/ingest"
        if not self.api_key:
            self._log_failure(
                "track_record_send_skipped", FailureCategory.AUTH, path=path, detail="no api key"
            )
            return False
        try:
            response = self.client.post(
                path, content=event.to_envelope_json().encode("utf-8"), headers=self._headers()
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            self._log_failure(
                "track_record_send_failed",
                classify_transport_failure(exc),
                path=path,
                detail=sanitize_text(str(exc), known_secrets=(self.api_key,)),
            )
            return False

        if response.is_success:
            logger.debug(
                "track_record_send_ok",
                extra={
                    "extra": {"event_seq_no": event.seq_no, "status_code": response.status_code}
                },
            )
            return True

        self._log_failure(
            "track_record_send_rejected",
            classify_transport_failure(status_code=response.status_code),
            path=path,
            status_code=response.status_code,
            detail=_response_snippet(response, (self.api_key,)),
        )
        return False

    def recover(self, instance_id: str) -> RecoveredState | None:
        path = f"/state/{quote(instance_id, safe='')}"
        if not instance_id:
            logger.warning(
                "track_record_recover_skipped",
                extra={"extra": {"reason": "no_instance_id"}},
            )
            return None
        if not self.api_key:
            self._log_failure(
                "track_record_recover_skipped",
                FailureCategory.AUTH,
                path=path,
                detail="no api key",
            )
            return None
        try:
            response = self.client.get(path, headers=self._headers())
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            self._log_failure(
                "track_record_recover_failed",
                classify_transport_failure(exc),
                path=path,
                detail=sanitize_text(str(exc), known_secrets=(self.api_key,)),
            )
            return None

        if not response.is_success:
            self._log_failure(
                "track_record_recover_no_state",
                classify_transport_failure(status_code=response.status_code),
                path=path,
                status_code=response.status_code,
                detail=_response_snippet(response, (self.api_key,)),
            )
            return None

        try:
            recovered = parse_recovery_body(json.loads(response.text))
        except ValueError as exc:
            self._log_failure(
                "track_record_recover_malformed",
                FailureCategory.MALFORMED,
                path=path,
                status_code=response.status_code,
                detail=str(exc),
            )
            return None

        logger.info(
            "track_record_recovered_from_server",
            extra={
                "extra": {
                    "recovered_seq_no": recovered.seq_no,
                    "last_hash_prefix": recovered.last_hash[:8],
                }
            },
        )
        return recovered
