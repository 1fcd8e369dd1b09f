from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from trackrecord.config import Settings
from trackrecord.domain.digest import GENESIS_HASH, is_hex64
from trackrecord.domain.events import ChainState
from trackrecord.persistence.sqlite.sqlite_connection import (
    ensure_cache_schema,
    sqlite_connection_context,
)

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when a chain state channel cannot be read or written."""


@dataclass(frozen=True)
class PersistedState:
    seq_no: int
    last_hash: str
    instance_id: str


@dataclass(frozen=True)
class LoadedState:
    seq_no: int
    last_hash: str
    instance_id: str
    primary_seq_no: int | None
    secondary_seq_no: int | None

    @property
    def hash_resolved(self) -> bool:
        """False when the secondary cache is ahead and the matching hash is not held locally."""
        return self.seq_no == (self.primary_seq_no or 0)

    def to_chain_state(self, instance_id: str | None = None) -> ChainState:
        return ChainState(
            instance_id=instance_id if instance_id is not None else self.instance_id,
            seq_no=self.seq_no,
            last_hash=self.last_hash,
        )


class PrimaryStateFile:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read(self) -> PersistedState | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"cannot read primary state {self.path}: {exc}") from exc

        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise PersistenceError(f"corrupt primary state {self.path}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"corrupt primary state {self.path}")

        seq_no = data.get("seqNo")
        last_hash = data.get("lastHash")
        instance_id = data.get("instanceId", "")
        if isinstance(seq_no, bool) or not isinstance(seq_no, int) or seq_no < 0:
            raise PersistenceError(f"invalid seqNo in {self.path}: {seq_no!r}")
        if not is_hex64(last_hash):
            raise PersistenceError(f"invalid lastHash in {self.path}")
        if not isinstance(instance_id, str):
            raise PersistenceError(f"invalid instanceId in {self.path}")
        return PersistedState(seq_no=seq_no, last_hash=last_hash, instance_id=instance_id)

    def write(self, state: ChainState) -> None:
        body = json.dumps(
            {"seqNo": state.seq_no, "lastHash": state.last_hash, "instanceId": state.instance_id},
            separators=(",", ":"),
        )
        tmp_path = self.path.with_suffix(f"{self.path.suffix}.{os.getpid()}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(body)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                pass
            raise PersistenceError(f"cannot write primary state {self.path}: {exc}") from exc


class SecondaryStateCache:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def get(self, cache_key: str) -> int | None:
        try:
            with sqlite_connection_context(self.db_path) as conn:
                ensure_cache_schema(conn)
                row = conn.execute(
                    "SELECT seq_no FROM chain_seq_cache WHERE cache_key = ?", (cache_key,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot read secondary cache {self.db_path}: {exc}") from exc
        if row is None:
            return None
        return int(row["seq_no"])

    def put(self, cache_key: str, seq_no: int) -> None:
        try:
            with sqlite_connection_context(self.db_path) as conn:
                ensure_cache_schema(conn)
                conn.execute(
                    """
                    INSERT INTO chain_seq_cache(cache_key, seq_no, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        seq_no = excluded.seq_no,
                        updated_at = excluded.updated_at
                    """,
                    (cache_key, seq_no, datetime.now(UTC).isoformat()),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot write secondary cache {self.db_path}: {exc}") from exc


class ChainStateStore:
    """Two-channel durable home of ``(seqNo, lastHash, instanceId)``.

    The primary file holds the full record and is replaced atomically. The
    secondary cache only holds ``seqNo`` under a key derived from the instance
    configuration, so it can outlive a lost state directory. Loading takes the
    higher of the two sequence numbers.
    """

    def __init__(
        self,
        primary: PrimaryStateFile,
        secondary: SecondaryStateCache,
        cache_key: str,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.cache_key = cache_key

    @classmethod
    def from_settings(cls, settings: Settings) -> ChainStateStore:
        return cls(
            primary=PrimaryStateFile(settings.primary_state_path()),
            secondary=SecondaryStateCache(settings.cache_db_path),
            cache_key=settings.cache_key(),
        )

    def save(self, state: ChainState) -> None:
        errors: list[str] = []
        try:
            self.primary.write(state)
        except PersistenceError as exc:
            errors.append(str(exc))
        try:
            self.secondary.put(self.cache_key, state.seq_no)
        except PersistenceError as exc:
            errors.append(str(exc))
        if errors:
            raise PersistenceError("; ".join(errors))

    def load(self) -> LoadedState | None:
        primary: PersistedState | None = None
        secondary_seq: int | None = None
        try:
            primary = self.primary.read()
        except PersistenceError as exc:
            logger.error(
                "track_record_primary_state_unreadable",
                extra={"extra": {"error": str(exc), "path": str(self.primary.path)}},
            )
        try:
            secondary_seq = self.secondary.get(self.cache_key)
        except PersistenceError as exc:
            logger.error(
                "track_record_secondary_cache_unreadable",
                extra={"extra": {"error": str(exc), "cache_key": self.cache_key}},
            )

        if primary is None and secondary_seq is None:
            return None

        primary_seq = primary.seq_no if primary is not None else None
        seq_no = max(primary_seq or 0, secondary_seq or 0)
        loaded = LoadedState(
            seq_no=seq_no,
            last_hash=primary.last_hash if primary is not None else GENESIS_HASH,
            instance_id=primary.instance_id if primary is not None else "",
            primary_seq_no=primary_seq,
            secondary_seq_no=secondary_seq,
        )
        if not loaded.hash_resolved:
            logger.warning(
                "track_record_secondary_cache_ahead",
                extra={
                    "extra": {
                        "primary_seq_no": primary_seq,
                        "secondary_seq_no": secondary_seq,
                    }
                },
            )
        return loaded
