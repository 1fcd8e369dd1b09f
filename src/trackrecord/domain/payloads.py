from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from trackrecord.domain.canonical import CanonicalField, fields_from_mapping
from trackrecord.domain.events import EventType


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    def to_fields(self) -> tuple[CanonicalField, ...]:
        return fields_from_mapping(self.model_dump(by_alias=True, exclude_none=True))


class SessionStartPayload(_Payload):
    account: str
    balance: Decimal | None = None
    broker: str
    engine_version: str = Field(alias="eaVersion")
    mode: Literal["LIVE", "PAPER"]
    symbol: str
    timeframe: str
    recovery_mode: bool | None = Field(default=None, alias="recoveryMode")


class SessionEndPayload(_Payload):
    final_balance: Decimal = Field(alias="finalBalance")
    final_equity: Decimal = Field(alias="finalEquity")
    reason: str = Field(min_length=1)
    uptime_seconds: int = Field(alias="uptimeSeconds", ge=0)


class SnapshotPayload(_Payload):
    balance: Decimal
    drawdown: Decimal = Field(ge=0)
    equity: Decimal
    open_trades: int = Field(alias="openTrades", ge=0)
    unrealized_pnl: Decimal = Field(alias="unrealizedPnL")


class TradeOpenPayload(_Payload):
    direction: Literal["BUY", "SELL"]
    lots: Decimal = Field(gt=0)
    open_price: Decimal = Field(alias="openPrice", ge=0)
    sl: Decimal = Field(ge=0)
    symbol: str = Field(min_length=1)
    ticket: str = Field(min_length=1)
    tp: Decimal = Field(ge=0)


class TradeClosePayload(_Payload):
    close_price: Decimal = Field(alias="closePrice", ge=0)
    close_reason: str = Field(alias="closeReason", min_length=1)
    commission: Decimal
    profit: Decimal
    swap: Decimal
    ticket: str = Field(min_length=1)


class TradeModifyPayload(_Payload):
    new_sl: Decimal = Field(alias="newSL", ge=0)
    new_tp: Decimal = Field(alias="newTP", ge=0)
    old_sl: Decimal = Field(alias="oldSL", ge=0)
    old_tp: Decimal = Field(alias="oldTP", ge=0)
    ticket: str = Field(min_length=1)


class PartialClosePayload(_Payload):
    closed_lots: Decimal = Field(alias="closedLots", gt=0)
    close_price: Decimal = Field(alias="closePrice", ge=0)
    profit: Decimal
    remaining_lots: Decimal = Field(alias="remainingLots", ge=0)
    ticket: str = Field(min_length=1)


PAYLOAD_MODELS: dict[EventType, type[_Payload]] = {
    EventType.SESSION_START: SessionStartPayload,
    EventType.SESSION_END: SessionEndPayload,
    EventType.SNAPSHOT: SnapshotPayload,
    EventType.TRADE_OPEN: TradeOpenPayload,
    EventType.TRADE_CLOSE: TradeClosePayload,
    EventType.TRADE_MODIFY: TradeModifyPayload,
    EventType.PARTIAL_CLOSE: PartialClosePayload,
}


def validate_payload(event_type: str, payload: Mapping[str, object]) -> str | None:
    """Return ``None`` when ``payload`` fits ``event_type``, else a readable error."""
    try:
        model = PAYLOAD_MODELS[EventType(event_type)]
    except ValueError:
        return f"Unknown event type: {event_type}"
    try:
        model.model_validate(dict(payload))
    except ValidationError as exc:
        issues = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        return f"Invalid {event_type} payload: {', '.join(issues)}"
    return None
