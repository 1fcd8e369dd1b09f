"""Canonical text form of an event's field set.

The encoding is the hash input of the track record chain, so every
implementation (this one, the ingest server, the verifier) has to produce the
exact same bytes for the same logical fields:

* fields are sorted by the UTF-8 bytes of their name;
* prices carry 8 decimals, money 2 decimals, integers none;
* only backslash and double quote are escaped inside strings;
* no whitespace anywhere.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import StrEnum


class FieldKind(StrEnum):
    STRING = "STRING"
    MONEY = "MONEY"
    PRICE = "PRICE"
    INTEGER = "INTEGER"
    BOOLEAN = "BOOLEAN"


PRICE_FIELDS = frozenset(
    {"openPrice", "closePrice", "newSL", "newTP", "oldSL", "oldTP", "sl", "tp"}
)
INTEGER_FIELDS = frozenset(
    {
        "seqNo",
        "timestamp",
        "openTrades",
        "uptimeSeconds",
        "previousSeqNo",
        "recoveredFromSeqNo",
    }
)

_DECIMAL_PLACES = {FieldKind.MONEY: 2, FieldKind.PRICE: 8}


def escape_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _to_decimal(value: object) -> Decimal:
    if isinstance(value, bool):
        raise TypeError("boolean is not a numeric field value")
    if isinstance(value, Decimal):
        candidate = value
    elif isinstance(value, int | float):
        candidate = Decimal(str(value))
    else:
        raise TypeError(f"unsupported numeric value: {type(value).__name__}")
    if not candidate.is_finite():
        raise ValueError(f"non-finite numeric value: {value!r}")
    return candidate


def format_fixed(value: object, places: int) -> str:
    """Fixed-point text, rounding half away from zero."""
    quantum = Decimal(1).scaleb(-places)
    try:
        rounded = _to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"value out of range for {places} decimals: {value!r}") from exc
    if rounded.is_zero():
        rounded = abs(rounded)
    return format(rounded, "f")


def format_integer(value: object) -> str:
    if isinstance(value, bool):
        raise TypeError("boolean is not an integer field value")
    if isinstance(value, int):
        return str(value)
    return str(math.floor(_to_decimal(value)))


@dataclass(frozen=True)
class CanonicalField:
    name: str
    value: object
    kind: FieldKind

    def render_value(self) -> str:
        if self.kind is FieldKind.STRING:
            return f'"{escape_string(str(self.value))}"'
        if self.kind is FieldKind.INTEGER:
            return format_integer(self.value)
        if self.kind is FieldKind.BOOLEAN:
            if not isinstance(self.value, bool):
                raise TypeError(f"field {self.name} expects a boolean")
            return "true" if self.value else "false"
        return format_fixed(self.value, _DECIMAL_PLACES[self.kind])

    def render(self) -> str:
        return f'"{escape_string(self.name)}":{self.render_value()}'

    def render_wire(self) -> str:
        """JSON member for the ingest body.

        Numbers keep their fixed decimals; strings use full JSON escaping so
        control characters cannot break the body.
        """
        name = json.dumps(self.name, ensure_ascii=False)
        if self.kind is FieldKind.STRING:
            return f"{name}:{json.dumps(str(self.value), ensure_ascii=False)}"
        return f"{name}:{self.render_value()}"


def string_field(name: str, value: str) -> CanonicalField:
    return CanonicalField(name, value, FieldKind.STRING)


def money_field(name: str, value: float | Decimal) -> CanonicalField:
    return CanonicalField(name, value, FieldKind.MONEY)


def price_field(name: str, value: float | Decimal) -> CanonicalField:
    return CanonicalField(name, value, FieldKind.PRICE)


def integer_field(name: str, value: int) -> CanonicalField:
    return CanonicalField(name, value, FieldKind.INTEGER)


def infer_field(name: str, value: object) -> CanonicalField:
    """Build a field from a plain value, picking the kind the way the ingest server does."""
    if isinstance(value, str):
        return CanonicalField(name, value, FieldKind.STRING)
    if isinstance(value, bool):
        return CanonicalField(name, value, FieldKind.BOOLEAN)
    if not isinstance(value, int | float | Decimal):
        raise TypeError(f"field {name} has unsupported type {type(value).__name__}")
    if name in INTEGER_FIELDS:
        return CanonicalField(name, value, FieldKind.INTEGER)
    if name in PRICE_FIELDS:
        return CanonicalField(name, value, FieldKind.PRICE)
    # balances, lots, pnl and any unregistered number use the 2-decimal form
    return CanonicalField(name, value, FieldKind.MONEY)


def fields_from_mapping(mapping: Mapping[str, object]) -> tuple[CanonicalField, ...]:
    return tuple(infer_field(str(k), v) for k, v in mapping.items() if v is not None)


def sort_fields(fields: Iterable[CanonicalField]) -> list[CanonicalField]:
    ordered = sorted(fields, key=lambda item: item.name.encode("utf-8"))
    for previous, current in zip(ordered, ordered[1:], strict=False):
        if previous.name == current.name:
            raise ValueError(f"duplicate canonical field: {current.name}")
    return ordered


def canonical_encode(fields: Iterable[CanonicalField]) -> str:
    return "{" + ",".join(item.render() for item in sort_fields(fields)) + "}"


def wire_encode(fields: Iterable[CanonicalField]) -> str:
    """Same member order and number text as ``canonical_encode``, valid JSON for any string."""
    return "{" + ",".join(item.render_wire() for item in sort_fields(fields)) + "}"


def canonical_encode_mapping(mapping: Mapping[str, object]) -> str:
    return canonical_encode(fields_from_mapping(mapping))
