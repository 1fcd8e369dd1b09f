from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict

from trackrecord.domain.canonical import (
    CanonicalField,
    canonical_encode,
    integer_field,
    string_field,
    wire_encode,
)
from trackrecord.domain.digest import GENESIS_HASH, is_hex64, sha256_hex


class ConfigurationError(ValueError):
    """Raised when the engine is wired or fed with inputs it cannot hash."""


class EventType(StrEnum):
    SESSION_START = "SESSION_START"
    SESSION_END = "SESSION_END"
    SNAPSHOT = "SNAPSHOT"
    TRADE_OPEN = "TRADE_OPEN"
    TRADE_CLOSE = "TRADE_CLOSE"
    TRADE_MODIFY = "TRADE_MODIFY"
    PARTIAL_CLOSE = "PARTIAL_CLOSE"


INSTANCE_FIELD = "eaInstanceId"
CORE_FIELDS = frozenset({INSTANCE_FIELD, "eventType", "prevHash", "seqNo", "timestamp"})


@dataclass(frozen=True)
class ChainState:
    instance_id: str
    seq_no: int
    last_hash: str

    def __post_init__(self) -> None:
        if self.seq_no < 0:
            raise ValueError("seq_no must be >= 0")
        if not is_hex64(self.last_hash):
            raise ValueError("last_hash must be 64 lowercase hex characters")

    @classmethod
    def genesis(cls, instance_id: str) -> ChainState:
        return cls(instance_id=instance_id, seq_no=0, last_hash=GENESIS_HASH)

    @property
    def is_genesis(self) -> bool:
        return self.seq_no == 0 and self.last_hash == GENESIS_HASH

    def advance(self, event_hash: str) -> ChainState:
        return ChainState(self.instance_id, self.seq_no + 1, event_hash)


def chain_hash_fields(
    *,
    instance_id: str,
    event_type: str,
    seq_no: int,
    prev_hash: str,
    timestamp: int,
    payload: Iterable[CanonicalField],
) -> list[CanonicalField]:
    payload_fields = list(payload)
    collisions = sorted(item.name for item in payload_fields if item.name in CORE_FIELDS)
    if collisions:
        raise ConfigurationError(f"payload fields collide with chain fields: {collisions}")
    return [
        string_field(INSTANCE_FIELD, instance_id),
        string_field("eventType", str(event_type)),
        string_field("prevHash", prev_hash),
        integer_field("seqNo", seq_no),
        integer_field("timestamp", timestamp),
        *payload_fields,
    ]


def compute_event_hash(
    *,
    instance_id: str,
    event_type: str,
    seq_no: int,
    prev_hash: str,
    timestamp: int,
    payload: Iterable[CanonicalField],
) -> str:
    fields = chain_hash_fields(
        instance_id=instance_id,
        event_type=event_type,
        seq_no=seq_no,
        prev_hash=prev_hash,
        timestamp=timestamp,
        payload=payload,
    )
    return sha256_hex(canonical_encode(fields))


@dataclass(frozen=True)
class Event:
    event_type: EventType
    seq_no: int
    prev_hash: str
    event_hash: str
    timestamp: int
    payload: tuple[CanonicalField, ...]

    def payload_json(self) -> str:
        return canonical_encode(self.payload)

    def to_envelope_json(self) -> str:
        # The payload object is spliced in already rendered so the numbers on the
        # wire carry the same fixed decimals as the hashed form.
        head = json.dumps(
            {
                "eventType": self.event_type.value,
                "seqNo": self.seq_no,
                "prevHash": self.prev_hash,
                "eventHash": self.event_hash,
                "timestamp": self.timestamp,
            },
            separators=(",", ":"),
        )
        return f'{head[:-1]},"payload":{wire_encode(self.payload)}}}'


class OpenPosition(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    ticket: str
    symbol: str
    direction: Literal["BUY", "SELL"]
    lots: Decimal
    open_price: Decimal
    sl: Decimal = Decimal("0")
    tp: Decimal = Decimal("0")
    magic: int = 0


class ClosedDeal(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    ticket: str
    close_price: Decimal
    profit: Decimal
    swap: Decimal = Decimal("0")
    commission: Decimal = Decimal("0")
    reason: Literal["SL", "TP", "SO", "EA"] = "EA"


class DealFill(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    ticket: str
    price: Decimal
    profit: Decimal


class AccountInfo(BaseModel):
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    login: str
    broker: str = ""
    balance: Decimal
    equity: Decimal
    is_demo: bool = False


@dataclass(frozen=True)
class KnownPosition:
    ticket: str
    sl: Decimal
    tp: Decimal
    lots: Decimal


@dataclass(frozen=True)
class CandidateEvent:
    event_type: EventType
    payload: tuple[CanonicalField, ...] = ()
