from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

from trackrecord.domain.events import AccountInfo, ClosedDeal, DealFill, OpenPosition
from trackrecord.services.event_detector import TradingHost


def _parse_time(raw: object) -> datetime:
    if isinstance(raw, bool):
        raise ValueError("frame time must be unix seconds or ISO-8601")
    if isinstance(raw, int | float | Decimal):
        return datetime.fromtimestamp(float(raw), UTC)
    if isinstance(raw, str):
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    raise ValueError(f"unsupported frame time: {raw!r}")


def load_frames(path: str | Path) -> list[dict[str, object]]:
    frames: list[dict[str, object]] = []
    with open(path, encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            text = line.strip()
            if not text:
                continue
            frame = json.loads(text, parse_float=Decimal)
            if not isinstance(frame, dict):
                raise ValueError(f"frame on line {line_no} is not an object")
            frames.append(frame)
    return frames


class ReplayTradingHost(TradingHost):
    """Trading host driven by recorded frames, one frame per tick.

    Closed deals and fills accumulate as history across frames, the way a
    terminal's deal history only grows.
    """

    def __init__(
        self,
        frames: Iterable[Mapping[str, object]],
        *,
        point: Decimal | str = "0.00001",
    ) -> None:
        self._frames = [dict(frame) for frame in frames]
        if not self._frames:
            raise ValueError("replay needs at least one frame")
        self._point = Decimal(str(point))
        self._index = -1
        self._positions: list[OpenPosition] = []
        self._account: AccountInfo | None = None
        self._now: datetime | None = None
        self._closed: dict[str, ClosedDeal] = {}
        self._fills: dict[str, DealFill] = {}
        self.advance()

    @classmethod
    def from_jsonl(
        cls, path: str | Path, *, point: Decimal | str = "0.00001"
    ) -> ReplayTradingHost:
        return cls(load_frames(path), point=point)

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    @property
    def frame_index(self) -> int:
        return self._index

    def has_next(self) -> bool:
        return self._index + 1 < len(self._frames)

    def advance(self) -> bool:
        if not self.has_next():
            return False
        self._index += 1
        frame = self._frames[self._index]
        self._now = _parse_time(frame.get("time", 0))
        account_raw = frame.get("account")
        if account_raw is not None:
            self._account = AccountInfo.model_validate(account_raw)
        self._positions = [
            OpenPosition.model_validate(item) for item in frame.get("positions") or []
        ]
        for item in frame.get("closedDeals") or []:
            deal = ClosedDeal.model_validate(item)
            self._closed[deal.ticket] = deal
        for item in frame.get("fills") or []:
            fill = DealFill.model_validate(item)
            self._fills[fill.ticket] = fill
        return True

    def open_positions(self) -> list[OpenPosition]:
        return list(self._positions)

    def find_closing_deal(self, ticket: str) -> ClosedDeal | None:
        return self._closed.get(ticket)

    def find_recent_fill(self, ticket: str) -> DealFill | None:
        return self._fills.get(ticket)

    def account(self) -> AccountInfo:
        if self._account is None:
            raise ValueError("replay frames carry no account information")
        return self._account

    def now(self) -> datetime:
        assert self._now is not None
        return self._now

    @property
    def point(self) -> Decimal:
        return self._point
