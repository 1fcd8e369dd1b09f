from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def sqlite_connection_context(db_path: str) -> Iterator[sqlite3.Connection]:
    conn = create_sqlite_connection(db_path)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def ensure_cache_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chain_seq_cache (
            cache_key TEXT PRIMARY KEY,
            seq_no INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
