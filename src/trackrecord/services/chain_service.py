from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

from trackrecord.domain.canonical import CanonicalField, fields_from_mapping
from trackrecord.domain.events import ChainState, Event, EventType, compute_event_hash
from trackrecord.logging_context import with_event_context
from trackrecord.services.state_store import PersistenceError

logger = logging.getLogger(__name__)


class ChainPhase(StrEnum):
    UNINITIALIZED = "UNINITIALIZED"
    READY = "READY"
    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    DROPPED = "DROPPED"


class EventSender(Protocol):
    def send(self, event: Event) -> bool: ...


class StateSink(Protocol):
    def save(self, state: ChainState) -> None: ...


def _utc_now() -> datetime:
    return datetime.now(UTC)


def payload_fields(payload: object) -> tuple[CanonicalField, ...]:
    if payload is None:
        return ()
    to_fields = getattr(payload, "to_fields", None)
    if callable(to_fields):
        return tuple(to_fields())
    if isinstance(payload, Mapping):
        return fields_from_mapping(payload)
    if isinstance(payload, Iterable):
        return tuple(payload)
    raise TypeError(f"unsupported payload type: {type(payload).__name__}")


class ChainStateMachine:
    """Owns the chain head and advances it only after the server accepted an event.

    A failed send leaves ``(seqNo, lastHash)`` untouched, so the next attempt is
    built on exactly the same inputs.
    """

    def __init__(
        self,
        sender: EventSender,
        state_store: StateSink | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.sender = sender
        self.state_store = state_store
        self.clock = clock or _utc_now
        self._state: ChainState | None = None
        self._phase = ChainPhase.UNINITIALIZED
        self._last_outcome: ChainPhase | None = None
        self._session_attempted = False
        self._session_started = False
        self._session_ended = False
        self._persistence_failures = 0

    @property
    def state(self) -> ChainState | None:
        return self._state

    @property
    def phase(self) -> ChainPhase:
        return self._phase

    @property
    def last_outcome(self) -> ChainPhase | None:
        return self._last_outcome

    @property
    def session_started(self) -> bool:
        return self._session_started

    @property
    def persistence_failures(self) -> int:
        return self._persistence_failures

    def initialize(self, state: ChainState) -> None:
        if self._phase is not ChainPhase.UNINITIALIZED:
            raise RuntimeError(f"chain already initialized (phase={self._phase})")
        self._state = state
        self._phase = ChainPhase.READY
        logger.info(
            "track_record_chain_ready",
            extra={
                "extra": {
                    "head_seq_no": state.seq_no,
                    "last_hash_prefix": state.last_hash[:8],
                    "genesis": state.is_genesis,
                }
            },
        )

    def build_event(self, event_type: EventType, payload: object = None) -> Event:
        if self._state is None:
            raise RuntimeError("chain is not initialized")
        fields = payload_fields(payload)
        next_seq = self._state.seq_no + 1
        timestamp = int(self.clock().timestamp())
        event_hash = compute_event_hash(
            instance_id=self._state.instance_id,
            event_type=event_type,
            seq_no=next_seq,
            prev_hash=self._state.last_hash,
            timestamp=timestamp,
            payload=fields,
        )
        return Event(
            event_type=EventType(event_type),
            seq_no=next_seq,
            prev_hash=self._state.last_hash,
            event_hash=event_hash,
            timestamp=timestamp,
            payload=fields,
        )

    def submit(self, event_type: EventType, payload: object = None) -> Event | None:
        """Hash, send and commit one event. Returns the event when committed."""
        if self._phase is ChainPhase.UNINITIALIZED or self._state is None:
            raise RuntimeError("submit called before initialize")

        event = self.build_event(event_type, payload)
        with with_event_context(event.event_type.value, event.seq_no):
            self._phase = ChainPhase.PENDING
            try:
                accepted = bool(self.sender.send(event))
            except Exception:
                logger.exception("track_record_sender_raised")
                accepted = False

            if not accepted:
                self._finish(ChainPhase.DROPPED)
                logger.warning(
                    "track_record_event_dropped",
                    extra={"extra": {"head_seq_no": self._state.seq_no}},
                )
                return None

            self._state = self._state.advance(event.event_hash)
            self._persist(self._state)
            self._finish(ChainPhase.COMMITTED)
            logger.info(
                "track_record_event_committed",
                extra={"extra": {"event_hash_prefix": event.event_hash[:8]}},
            )
            return event

    def start_session(self, payload: object = None) -> bool:
        if self._session_attempted:
            return self._session_started
        self._session_attempted = True
        self._session_started = self.submit(EventType.SESSION_START, payload) is not None
        if not self._session_started:
            logger.warning("track_record_session_start_not_recorded")
        return self._session_started

    def end_session(self, payload: object = None) -> bool:
        if not self._session_started:
            logger.info(
                "track_record_session_end_skipped",
                extra={"extra": {"reason": "session_start_not_committed"}},
            )
            return False
        if self._session_ended:
            return True
        self._session_ended = self.submit(EventType.SESSION_END, payload) is not None
        return self._session_ended

    def _persist(self, state: ChainState) -> None:
        if self.state_store is None:
            return
        try:
            self.state_store.save(state)
        except PersistenceError as exc:
            self._persistence_failures += 1
            logger.error(
                "track_record_persist_failed",
                extra={
                    "extra": {
                        "error": str(exc),
                        "head_seq_no": state.seq_no,
                        "persistence_failures": self._persistence_failures,
                    }
                },
            )

    def _finish(self, outcome: ChainPhase) -> None:
        self._last_outcome = outcome
        self._phase = ChainPhase.READY
