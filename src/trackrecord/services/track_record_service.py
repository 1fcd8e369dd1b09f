from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from trackrecord.config import Settings
from trackrecord.domain.payloads import SessionEndPayload, SessionStartPayload
from trackrecord.logging_context import with_logging_context
from trackrecord.services.chain_service import ChainStateMachine, EventSender
from trackrecord.services.event_detector import EventDetector, TradingHost
from trackrecord.services.startup_recovery import (
    RecoveryClient,
    StartupRecoveryResult,
    StartupRecoveryService,
)
from trackrecord.services.state_store import ChainStateStore, PersistenceError

logger = logging.getLogger(__name__)


class TrackRecordClient(EventSender, RecoveryClient, Protocol):
    pass


class TrackRecordService:
    """Wires the engine into the host's init / tick / deinit callbacks.

    None of the hooks raise: any failure is logged and the host carries on.
    """

    def __init__(
        self,
        settings: Settings,
        host: TradingHost,
        client: TrackRecordClient,
        store: ChainStateStore,
        clock: Callable[[], datetime] | None = None,
        recovery: StartupRecoveryService | None = None,
    ) -> None:
        self.settings = settings
        self.host = host
        self.client = client
        self.store = store
        self.clock = clock or host.now
        self.recovery = recovery or StartupRecoveryService()
        self.chain = ChainStateMachine(sender=client, state_store=store, clock=self.clock)
        self.detector = EventDetector(
            host,
            self.chain,
            magic_number=settings.magic_number,
            symbol=settings.symbol,
            snapshot_interval_seconds=settings.snapshot_interval_seconds,
            lots_tolerance=settings.lots_tolerance,
            close_lookup_max_attempts=settings.close_lookup_max_attempts,
        )
        self.recovery_result: StartupRecoveryResult | None = None
        self._started_at: datetime | None = None

    @property
    def enabled(self) -> bool:
        return self.settings.is_enabled()

    @property
    def ready(self) -> bool:
        return self.chain.state is not None

    def on_init(self) -> bool:
        if not self.enabled:
            logger.info(
                "track_record_disabled",
                extra={"extra": {"tester_mode": self.settings.tester_mode}},
            )
            return False
        with with_logging_context(instance_id=self.settings.instance_id or None):
            try:
                self.recovery_result = self.recovery.run(
                    instance_id=self.settings.instance_id,
                    store=self.store,
                    client=self.client,
                )
                self.chain.initialize(self.recovery_result.state)
                self._started_at = self.clock()
                return self.chain.start_session(self._session_start_payload())
            except Exception:
                logger.exception("track_record_hook_failed", extra={"extra": {"hook": "on_init"}})
                return False

    def on_tick(self) -> int:
        if not self.enabled or not self.ready:
            return 0
        with with_logging_context(instance_id=self._instance_id()):
            try:
                return len(self.detector.tick())
            except Exception:
                logger.exception("track_record_hook_failed", extra={"extra": {"hook": "on_tick"}})
                return 0

    def on_deinit(self, reason: str) -> bool:
        if not self.enabled or not self.ready:
            return False
        with with_logging_context(instance_id=self._instance_id()):
            try:
                ended = self.chain.end_session(self._session_end_payload(reason))
            except Exception:
                logger.exception(
                    "track_record_hook_failed", extra={"extra": {"hook": "on_deinit"}}
                )
                ended = False
            self._save_final_state()
            return ended

    def _instance_id(self) -> str | None:
        state = self.chain.state
        if state is None or not state.instance_id:
            return None
        return state.instance_id

    def _session_start_payload(self) -> SessionStartPayload:
        account = self.host.account()
        source = self.recovery_result.source if self.recovery_result is not None else None
        return SessionStartPayload(
            account=account.login,
            balance=account.balance,
            broker=account.broker,
            engine_version=self.settings.engine_version,
            mode="PAPER" if account.is_demo else "LIVE",
            symbol=self.settings.symbol,
            timeframe=self.settings.timeframe,
            recovery_mode=True if source == "remote" else None,
        )

    def _session_end_payload(self, reason: str) -> SessionEndPayload:
        account = self.host.account()
        uptime = 0
        if self._started_at is not None:
            uptime = max(0, int((self.clock() - self._started_at).total_seconds()))
        return SessionEndPayload(
            final_balance=account.balance,
            final_equity=account.equity,
            reason=reason or "UNKNOWN",
            uptime_seconds=uptime,
        )

    def _save_final_state(self) -> None:
        state = self.chain.state
        if state is None:
            return
        try:
            self.store.save(state)
        except PersistenceError as exc:
            logger.error("track_record_final_save_failed", extra={"extra": {"error": str(exc)}})
