from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Protocol

from trackrecord.adapters.track_record_http import RecoveredState
from trackrecord.domain.events import ChainState
from trackrecord.services.state_store import ChainStateStore, LoadedState, PersistenceError

logger = logging.getLogger(__name__)

RecoverySource = Literal["persisted", "remote", "genesis"]


class RecoveryClient(Protocol):
    def recover(self, instance_id: str) -> RecoveredState | None: ...


@dataclass(frozen=True)
class StartupRecoveryResult:
    state: ChainState
    source: RecoverySource
    warnings: tuple[str, ...] = ()


class StartupRecoveryService:
    """Pick the chain head a fresh process resumes from.

    Local state wins when it is complete. When the sequence cache is ahead of
    the primary record, or nothing is held locally, the remote authority is
    asked. Without an answer the local high-water mark is kept, and a process
    holding nothing starts a new chain from genesis.
    """

    def run(
        self,
        *,
        instance_id: str,
        store: ChainStateStore,
        client: RecoveryClient | None,
    ) -> StartupRecoveryResult:
        logger.info("startup_recovery_started")
        warnings: list[str] = []

        local = store.load()
        if (
            local is not None
            and local.instance_id
            and instance_id
            and local.instance_id != instance_id
        ):
            warnings.append("persisted_state_instance_mismatch")
            logger.warning(
                "startup_recovery_instance_mismatch",
                extra={"extra": {"persisted_instance_id": local.instance_id}},
            )
            local = None
        if local is not None and local.seq_no == 0:
            local = None

        resolved_id = instance_id or (local.instance_id if local is not None else "")

        if local is not None and local.hash_resolved:
            return self._finish(
                StartupRecoveryResult(
                    state=local.to_chain_state(resolved_id),
                    source="persisted",
                    warnings=tuple(warnings),
                ),
                store,
            )

        if local is not None:
            warnings.append("secondary_cache_ahead_of_primary")

        remote = None
        if client is not None and resolved_id:
            remote = client.recover(resolved_id)
        if remote is not None:
            return self._finish(self._merge_remote(resolved_id, local, remote, warnings), store)

        if local is not None:
            # high-water mark wins; the primary hash is the best one held locally
            warnings.append("chain_hash_unresolved")
            logger.warning(
                "startup_recovery_hash_unresolved",
                extra={
                    "extra": {
                        "primary_seq_no": local.primary_seq_no,
                        "secondary_seq_no": local.secondary_seq_no,
                    }
                },
            )
            return self._finish(
                StartupRecoveryResult(
                    state=local.to_chain_state(resolved_id),
                    source="persisted",
                    warnings=tuple(warnings),
                ),
                store,
            )

        warnings.append("starting_fresh_chain")
        logger.warning(
            "startup_recovery_genesis",
            extra={"extra": {"reason": "no_recoverable_state"}},
        )
        return self._finish(
            StartupRecoveryResult(
                state=ChainState.genesis(resolved_id), source="genesis", warnings=tuple(warnings)
            ),
            store,
        )

    def _merge_remote(
        self,
        instance_id: str,
        local: LoadedState | None,
        remote: RecoveredState,
        warnings: list[str],
    ) -> StartupRecoveryResult:
        if local is not None and local.seq_no > remote.seq_no:
            warnings.append("local_state_ahead_of_remote")
            logger.warning(
                "startup_recovery_local_ahead",
                extra={"extra": {"local_seq_no": local.seq_no, "remote_seq_no": remote.seq_no}},
            )
            return StartupRecoveryResult(
                state=local.to_chain_state(instance_id),
                source="persisted",
                warnings=tuple(warnings),
            )

        return StartupRecoveryResult(
            state=ChainState(instance_id, remote.seq_no, remote.last_hash),
            source="remote",
            warnings=tuple(warnings),
        )

    def _finish(
        self, result: StartupRecoveryResult, store: ChainStateStore
    ) -> StartupRecoveryResult:
        try:
            store.save(result.state)
        except PersistenceError as exc:
            logger.error(
                "startup_recovery_persist_failed",
                extra={"extra": {"error": str(exc)}},
            )
            result = StartupRecoveryResult(
                state=result.state,
                source=result.source,
                warnings=(*result.warnings, "persist_failed"),
            )
        logger.info(
            "startup_recovery_completed",
            extra={
                "extra": {
                    "source": result.source,
                    "head_seq_no": result.state.seq_no,
                    "warnings": list(result.warnings),
                }
            },
        )
        return result
