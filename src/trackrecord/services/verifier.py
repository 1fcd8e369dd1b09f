from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from trackrecord.domain.canonical import fields_from_mapping
from trackrecord.domain.digest import GENESIS_HASH, is_hex64
from trackrecord.domain.events import EventType, compute_event_hash
from trackrecord.domain.payloads import validate_payload


class EventEnvelope(BaseModel):
    """Body of one ingested event, as sent to ``/ingest``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    event_type: EventType = Field(alias="eventType")
    seq_no: int = Field(alias="seqNo", ge=1)
    prev_hash: str = Field(alias="prevHash")
    event_hash: str = Field(alias="eventHash")
    timestamp: int = Field(ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("prev_hash", "event_hash")
    def validate_hash(cls, value: str) -> str:
        if not is_hex64(value):
            raise ValueError("must be 64 lowercase hex characters")
        return value


@dataclass(frozen=True)
class SingleEventResult:
    valid: bool
    error: str | None = None


@dataclass(frozen=True)
class ChainVerificationResult:
    valid: bool
    chain_length: int
    first_event_hash: str | None
    last_event_hash: str | None
    break_at_seq_no: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "chainLength": self.chain_length,
            "firstEventHash": self.first_event_hash,
            "lastEventHash": self.last_event_hash,
            "breakAtSeqNo": self.break_at_seq_no,
            "error": self.error,
        }


def parse_envelope(raw: Mapping[str, object] | EventEnvelope) -> EventEnvelope:
    if isinstance(raw, EventEnvelope):
        return raw
    return EventEnvelope.model_validate(dict(raw))


def recompute_hash(envelope: EventEnvelope, instance_id: str) -> str:
    return compute_event_hash(
        instance_id=instance_id,
        event_type=envelope.event_type,
        seq_no=envelope.seq_no,
        prev_hash=envelope.prev_hash,
        timestamp=envelope.timestamp,
        payload=fields_from_mapping(envelope.payload),
    )


def verify_single_event(
    envelope: Mapping[str, object] | EventEnvelope,
    instance_id: str,
    last_seq_no: int,
    last_event_hash: str,
) -> SingleEventResult:
    """Check one incoming event against the current head of the chain."""
    try:
        event = parse_envelope(envelope)
    except ValidationError as exc:
        return SingleEventResult(False, f"Malformed envelope: {exc.error_count()} error(s)")

    if event.seq_no != last_seq_no + 1:
        return SingleEventResult(False, f"Expected seqNo {last_seq_no + 1}, got {event.seq_no}")
    if event.prev_hash != last_event_hash:
        return SingleEventResult(
            False, f"prevHash mismatch: expected {last_event_hash}, got {event.prev_hash}"
        )
    payload_error = validate_payload(event.event_type, event.payload)
    if payload_error is not None:
        return SingleEventResult(False, payload_error)

    computed = recompute_hash(event, instance_id)
    if computed != event.event_hash:
        return SingleEventResult(
            False, f"eventHash mismatch: computed {computed}, received {event.event_hash}"
        )
    return SingleEventResult(True)


def verify_chain(
    envelopes: Iterable[Mapping[str, object] | EventEnvelope], instance_id: str
) -> ChainVerificationResult:
    """Walk a full export from genesis. Events must be sorted by seqNo."""
    items = list(envelopes)
    if not items:
        return ChainVerificationResult(True, 0, None, None)

    expected_seq = 1
    expected_prev = GENESIS_HASH
    first_hash: str | None = None
    last_hash: str | None = None

    def broken(at_seq: int, error: str) -> ChainVerificationResult:
        return ChainVerificationResult(
            valid=False,
            chain_length=expected_seq - 1,
            first_event_hash=first_hash,
            last_event_hash=last_hash,
            break_at_seq_no=at_seq,
            error=error,
        )

    for raw in items:
        try:
            event = parse_envelope(raw)
        except ValidationError as exc:
            return broken(expected_seq, f"Malformed envelope: {exc.error_count()} error(s)")

        if event.seq_no != expected_seq:
            return broken(
                expected_seq,
                f"Missing or unexpected seqNo: expected {expected_seq}, found {event.seq_no}",
            )
        if event.prev_hash != expected_prev:
            return broken(event.seq_no, f"prevHash mismatch at seqNo {event.seq_no}")
        payload_error = validate_payload(event.event_type, event.payload)
        if payload_error is not None:
            return broken(event.seq_no, payload_error)

        computed = recompute_hash(event, instance_id)
        if computed != event.event_hash:
            return broken(
                event.seq_no,
                f"eventHash mismatch at seqNo {event.seq_no}: "
                f"computed {computed}, stored {event.event_hash}",
            )

        if first_hash is None:
            first_hash = event.event_hash
        last_hash = event.event_hash
        expected_prev = event.event_hash
        expected_seq += 1

    return ChainVerificationResult(True, len(items), first_hash, last_hash)
