from trackrecord.persistence.sqlite.sqlite_connection import (
    create_sqlite_connection,
    ensure_cache_schema,
    sqlite_connection_context,
)

__all__ = ["create_sqlite_connection", "ensure_cache_schema", "sqlite_connection_context"]
