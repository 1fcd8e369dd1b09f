from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal

from trackrecord.domain.events import (
    AccountInfo,
    CandidateEvent,
    ClosedDeal,
    DealFill,
    Event,
    EventType,
    KnownPosition,
    OpenPosition,
)
from trackrecord.domain.payloads import (
    PartialClosePayload,
    SnapshotPayload,
    TradeClosePayload,
    TradeModifyPayload,
    TradeOpenPayload,
)
from trackrecord.logging_context import with_logging_context
from trackrecord.services.chain_service import ChainStateMachine

logger = logging.getLogger(__name__)


class TradingHost(ABC):
    """Queryable view of the supervised trading process.

    The host offers no change notifications; everything the detector learns it
    learns by polling these methods once per tick.
    """

    @abstractmethod
    def open_positions(self) -> list[OpenPosition]:
        raise NotImplementedError

    @abstractmethod
    def find_closing_deal(self, ticket: str) -> ClosedDeal | None:
        raise NotImplementedError

    def find_recent_fill(self, ticket: str) -> DealFill | None:
        del ticket
        return None

    @abstractmethod
    def account(self) -> AccountInfo:
        raise NotImplementedError

    @abstractmethod
    def now(self) -> datetime:
        raise NotImplementedError

    @property
    def point(self) -> Decimal:
        """Smallest price increment; stop/target moves at or below it are ignored."""
        return Decimal("0.00001")


def snapshot_payload(account: AccountInfo, open_trades: int) -> SnapshotPayload:
    balance = account.balance
    equity = account.equity
    drawdown = Decimal("0")
    if balance > 0:
        drawdown = max(Decimal("0"), (balance - equity) / balance * 100)
    return SnapshotPayload(
        balance=balance,
        drawdown=drawdown,
        equity=equity,
        open_trades=open_trades,
        unrealized_pnl=equity - balance,
    )


class EventDetector:
    def __init__(
        self,
        host: TradingHost,
        chain: ChainStateMachine,
        *,
        magic_number: int,
        symbol: str = "",
        snapshot_interval_seconds: int = 300,
        lots_tolerance: Decimal | float = Decimal("0.001"),
        close_lookup_max_attempts: int = 20,
    ) -> None:
        self.host = host
        self.chain = chain
        self.magic_number = magic_number
        self.symbol = symbol
        self.snapshot_interval_seconds = snapshot_interval_seconds
        self.lots_tolerance = Decimal(str(lots_tolerance))
        if close_lookup_max_attempts < 1:
            raise ValueError("close_lookup_max_attempts must be >= 1")
        self.close_lookup_max_attempts = close_lookup_max_attempts
        self._known: dict[str, KnownPosition] = {}
        self._close_misses: dict[str, int] = {}
        self._last_snapshot_at: datetime | None = None

    @property
    def known_positions(self) -> dict[str, KnownPosition]:
        return dict(self._known)

    def _owned(self, position: OpenPosition) -> bool:
        if position.magic != self.magic_number:
            return False
        return not self.symbol or position.symbol == self.symbol

    def detect(self) -> list[CandidateEvent]:
        """Diff the host's open positions against the previous tick.

        Returned in submission order: modifies and partial closes for positions
        still open, then opens, then closes, then the snapshot.
        """
        current = [position for position in self.host.open_positions() if self._owned(position)]
        current_by_ticket = {position.ticket: position for position in current}
        point = Decimal(str(self.host.point))

        updates: list[CandidateEvent] = []
        opens: list[CandidateEvent] = []
        for position in current:
            known = self._known.get(position.ticket)
            if known is None:
                opens.append(self._open_event(position))
                continue
            if abs(known.sl - position.sl) > point or abs(known.tp - position.tp) > point:
                updates.append(
                    CandidateEvent(
                        EventType.TRADE_MODIFY,
                        TradeModifyPayload(
                            new_sl=position.sl,
                            new_tp=position.tp,
                            old_sl=known.sl,
                            old_tp=known.tp,
                            ticket=position.ticket,
                        ).to_fields(),
                    )
                )
            if known.lots - position.lots > self.lots_tolerance:
                updates.append(self._partial_close_event(position, known))

        closes: list[CandidateEvent] = []
        retained: dict[str, KnownPosition] = {}
        misses: dict[str, int] = {}
        for ticket, known in self._known.items():
            if ticket in current_by_ticket:
                continue
            deal = self.host.find_closing_deal(ticket)
            if deal is None:
                attempts = self._close_misses.get(ticket, 0) + 1
                with with_logging_context(ticket=ticket):
                    if attempts >= self.close_lookup_max_attempts:
                        logger.error(
                            "track_record_close_lookup_abandoned",
                            extra={"extra": {"attempts": attempts}},
                        )
                        continue
                    if attempts == 1:
                        logger.warning("track_record_close_lookup_failed")
                # retried next tick while the host history catches up
                retained[ticket] = known
                misses[ticket] = attempts
                continue
            closes.append(
                CandidateEvent(
                    EventType.TRADE_CLOSE,
                    TradeClosePayload(
                        close_price=deal.close_price,
                        close_reason=deal.reason,
                        commission=deal.commission,
                        profit=deal.profit,
                        swap=deal.swap,
                        ticket=ticket,
                    ).to_fields(),
                )
            )

        snapshot = self._snapshot_event(len(current))
        self._known = {
            position.ticket: KnownPosition(
                ticket=position.ticket, sl=position.sl, tp=position.tp, lots=position.lots
            )
            for position in current
        }
        self._known.update(retained)
        self._close_misses = misses

        candidates = updates + opens + closes
        if snapshot is not None:
            candidates.append(snapshot)
        return candidates

    def tick(self) -> list[Event]:
        committed: list[Event] = []
        for candidate in self.detect():
            event = self.chain.submit(candidate.event_type, candidate.payload)
            if event is not None:
                committed.append(event)
        return committed

    def _open_event(self, position: OpenPosition) -> CandidateEvent:
        return CandidateEvent(
            EventType.TRADE_OPEN,
            TradeOpenPayload(
                direction=position.direction,
                lots=position.lots,
                open_price=position.open_price,
                sl=position.sl,
                symbol=position.symbol,
                ticket=position.ticket,
                tp=position.tp,
            ).to_fields(),
        )

    def _partial_close_event(self, position: OpenPosition, known: KnownPosition) -> CandidateEvent:
        fill = self.host.find_recent_fill(position.ticket)
        close_price = fill.price if fill is not None else Decimal("0")
        profit = fill.profit if fill is not None else Decimal("0")
        return CandidateEvent(
            EventType.PARTIAL_CLOSE,
            PartialClosePayload(
                closed_lots=known.lots - position.lots,
                close_price=close_price,
                profit=profit,
                remaining_lots=position.lots,
                ticket=position.ticket,
            ).to_fields(),
        )

    def _snapshot_event(self, open_trades: int) -> CandidateEvent | None:
        now = self.host.now()
        if self._last_snapshot_at is not None:
            elapsed = (now - self._last_snapshot_at).total_seconds()
            if elapsed < self.snapshot_interval_seconds:
                return None
        payload = snapshot_payload(self.host.account(), open_trades)
        # the interval restarts even if this snapshot is dropped
        self._last_snapshot_at = now
        return CandidateEvent(EventType.SNAPSHOT, payload.to_fields())
