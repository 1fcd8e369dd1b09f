from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from trackrecord.domain.digest import GENESIS_HASH
from trackrecord.domain.events import ChainState
from trackrecord.persistence.sqlite.sqlite_connection import sqlite_connection_context
from trackrecord.services.state_store import (
    ChainStateStore,
    PersistenceError,
    PrimaryStateFile,
    SecondaryStateCache,
)

HASH_5 = "5" * 64
HASH_8 = "8" * 64


def _store(tmp_path: Path) -> ChainStateStore:
    return ChainStateStore(
        primary=PrimaryStateFile(tmp_path / "state" / "track_record_7.json"),
        secondary=SecondaryStateCache(str(tmp_path / "cache.sqlite")),
        cache_key="TR_SEQ_7",
    )


def test_save_then_load_round_trips_both_channels(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.save(ChainState("inst-1", 3, HASH_5))
    loaded = store.load()

    assert loaded is not None
    assert loaded.seq_no == 3
    assert loaded.last_hash == HASH_5
    assert loaded.instance_id == "inst-1"
    assert loaded.primary_seq_no == 3
    assert loaded.secondary_seq_no == 3
    assert loaded.hash_resolved


def test_primary_file_layout(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.save(ChainState("inst-1", 3, HASH_5))

    data = json.loads(store.primary.path.read_text(encoding="utf-8"))
    assert data == {"seqNo": 3, "lastHash": HASH_5, "instanceId": "inst-1"}


def test_load_takes_the_higher_sequence_number(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.primary.write(ChainState("inst-1", 5, HASH_5))
    store.secondary.put("TR_SEQ_7", 8)

    loaded = store.load()

    assert loaded is not None
    assert loaded.seq_no == 8
    assert loaded.last_hash == HASH_5
    assert loaded.hash_resolved is False


def test_primary_ahead_of_secondary_keeps_primary(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.primary.write(ChainState("inst-1", 8, HASH_8))
    store.secondary.put("TR_SEQ_7", 5)

    loaded = store.load()

    assert loaded is not None
    assert loaded.seq_no == 8
    assert loaded.last_hash == HASH_8
    assert loaded.hash_resolved


def test_secondary_only_resumes_sequence_without_hash(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.secondary.put("TR_SEQ_7", 4)

    loaded = store.load()

    assert loaded is not None
    assert loaded.seq_no == 4
    assert loaded.last_hash == GENESIS_HASH
    assert loaded.primary_seq_no is None
    assert loaded.hash_resolved is False


def test_nothing_persisted_loads_none(tmp_path: Path) -> None:
    assert _store(tmp_path).load() is None


def test_corrupt_primary_raises_on_read_and_is_treated_as_empty_on_load(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    store = _store(tmp_path)
    store.primary.path.parent.mkdir(parents=True)
    store.primary.path.write_text("{not json", encoding="utf-8")
    store.secondary.put("TR_SEQ_7", 2)

    with pytest.raises(PersistenceError, match="corrupt"):
        store.primary.read()

    loaded = store.load()
    assert loaded is not None
    assert loaded.seq_no == 2
    assert "track_record_primary_state_unreadable" in caplog.text


@pytest.mark.parametrize(
    "body",
    [
        {"seqNo": -1, "lastHash": HASH_5, "instanceId": "x"},
        {"seqNo": "3", "lastHash": HASH_5, "instanceId": "x"},
        {"seqNo": 3, "lastHash": "nothex", "instanceId": "x"},
        [1, 2, 3],
    ],
)
def test_invalid_primary_content_is_rejected(tmp_path: Path, body: object) -> None:
    primary = PrimaryStateFile(tmp_path / "s.json")
    primary.path.write_text(json.dumps(body), encoding="utf-8")

    with pytest.raises(PersistenceError):
        primary.read()


def test_primary_write_replaces_atomically_and_leaves_no_temp_files(tmp_path: Path) -> None:
    primary = PrimaryStateFile(tmp_path / "s.json")
    primary.write(ChainState("inst-1", 1, HASH_5))
    primary.write(ChainState("inst-1", 2, HASH_8))

    assert [p.name for p in tmp_path.iterdir()] == ["s.json"]
    state = primary.read()
    assert state is not None
    assert (state.seq_no, state.last_hash) == (2, HASH_8)


def test_failed_replace_keeps_previous_record(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    primary = PrimaryStateFile(tmp_path / "s.json")
    primary.write(ChainState("inst-1", 1, HASH_5))

    def _boom(src, dst) -> None:
        del src, dst
        raise OSError("replace failed")

    monkeypatch.setattr(os, "replace", _boom)
    with pytest.raises(PersistenceError, match="replace failed"):
        primary.write(ChainState("inst-1", 2, HASH_8))
    monkeypatch.undo()

    state = primary.read()
    assert state is not None
    assert state.seq_no == 1
    assert [p.name for p in tmp_path.iterdir()] == ["s.json"]


def test_save_attempts_both_channels_and_reports_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    store = ChainStateStore(
        primary=PrimaryStateFile(blocker / "s.json"),
        secondary=SecondaryStateCache(str(tmp_path / "cache.sqlite")),
        cache_key="TR_SEQ_7",
    )

    with pytest.raises(PersistenceError):
        store.save(ChainState("inst-1", 6, HASH_5))

    assert store.secondary.get("TR_SEQ_7") == 6


def test_secondary_cache_upserts(tmp_path: Path) -> None:
    cache = SecondaryStateCache(str(tmp_path / "cache.sqlite"))
    cache.put("TR_SEQ_1", 1)
    cache.put("TR_SEQ_1", 9)
    cache.put("TR_SEQ_2", 3)

    with sqlite_connection_context(cache.db_path) as conn:
        rows = conn.execute(
            "SELECT cache_key, seq_no FROM chain_seq_cache ORDER BY cache_key"
        ).fetchall()

    assert [(row["cache_key"], row["seq_no"]) for row in rows] == [
        ("TR_SEQ_1", 9),
        ("TR_SEQ_2", 3),
    ]


def test_from_settings_uses_configured_paths(make_settings, tmp_path: Path) -> None:
    store = ChainStateStore.from_settings(make_settings(MAGIC_NUMBER=7))

    assert store.cache_key == "TR_SEQ_7"
    assert store.primary.path == tmp_path / "state" / "track_record_7.json"
    assert store.secondary.db_path == str(tmp_path / "cache.sqlite")
