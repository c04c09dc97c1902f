"""File-backed local durable store (SQLite via SQLAlchemy).

One ``LocalStore`` is opened at process start and shared by the snapshot
cache and the outbox.  It owns the SQLite file, the table layout and the
clock used for every timestamp (epoch milliseconds).

Tables:
- ``response_cache``: whole composite responses by string key
- ``entity_list_cache``: paged list responses by (module, table, farm, query fingerprint)
- ``entity_record_cache``: single records by (module, table, farm, record id)
- ``outbox``: write intents awaiting replay
- ``sync_log``: append-only diagnostic events

Usage:
    from farmsync.cache.store import LocalStore

    store = LocalStore("data/farmsync_local_cache.sqlite")
    print(store.stats().response_cache_count)
    store.close()
"""

import json
import logging
import time
from collections.abc import Callable
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Any

from pydantic import BaseModel
from sqlalchemy import Connection, Engine, create_engine, event, text

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS response_cache (
        cache_key TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entity_list_cache (
        module_key TEXT NOT NULL,
        table_name TEXT NOT NULL,
        farm_id INTEGER NOT NULL,
        query_fingerprint TEXT NOT NULL,
        payload TEXT NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (module_key, table_name, farm_id, query_fingerprint)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_entity_list_recent
        ON entity_list_cache (module_key, table_name, farm_id, updated_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS entity_record_cache (
        module_key TEXT NOT NULL,
        table_name TEXT NOT NULL,
        farm_id INTEGER NOT NULL,
        record_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (module_key, table_name, farm_id, record_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_entity_record_recent
        ON entity_record_cache (module_key, table_name, farm_id, updated_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS outbox (
        outbox_id INTEGER PRIMARY KEY AUTOINCREMENT,
        action_key TEXT NOT NULL,
        payload TEXT NOT NULL,
        user_id INTEGER NOT NULL,
        farm_id INTEGER NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'PENDING',
        last_error TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_outbox_status_created
        ON outbox (status, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_log (
        log_id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        detail TEXT,
        created_at INTEGER NOT NULL
    )
    """,
)


class CacheStats(BaseModel):
    """Aggregate diagnostics for the local store."""

    file_path: str
    file_size_bytes: int = 0
    response_cache_count: int = 0
    entity_list_snapshot_count: int = 0
    entity_record_snapshot_count: int = 0
    sync_log_count: int = 0


def dump_json(value: Any) -> str:
    return json.dumps(value, default=str)


def load_json(raw: str | None, fallback: Any = None) -> Any:
    """Parse a stored JSON column, returning *fallback* for corrupt rows."""
    if raw is None:
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Discarding unparseable local payload ({len(raw)} bytes)")
        return fallback


class LocalStore:
    """Owner of the local SQLite file and its tables.

    The parent directory is created if missing.  Tables are created on
    first open; existing data is kept across restarts.

    Args:
        path: SQLite file path.
        clock: Returns the current time in seconds (``time.time`` by
            default); injectable for staleness tests.
    """

    def __init__(
        self,
        path: str | Path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._engine: Engine = create_engine(f"sqlite:///{self._path}")

        @event.listens_for(self._engine, "connect")
        def _set_pragmas(dbapi_conn: Any, _record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        with self._engine.begin() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(text(statement))
        logger.debug(f"Opened local store at {self._path}")

    @property
    def path(self) -> Path:
        return self._path

    def now_ms(self) -> int:
        """Current time in epoch milliseconds from the store clock."""
        return int(self._clock() * 1000)

    def begin(self) -> AbstractContextManager[Connection]:
        """Context manager yielding a connection inside a committed transaction."""
        return self._engine.begin()

    def connect(self) -> Connection:
        return self._engine.connect()

    def _count(self, conn: Connection, table: str) -> int:
        # table names here are module constants, never caller input
        return int(conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one())

    def stats(self) -> CacheStats:
        """File size on disk and row counts per cache table."""
        with self._engine.connect() as conn:
            counts = {
                name: self._count(conn, name)
                for name in ("response_cache", "entity_list_cache", "entity_record_cache", "sync_log")
            }

        return CacheStats(
            file_path=str(self._path),
            file_size_bytes=self._path.stat().st_size if self._path.exists() else 0,
            response_cache_count=counts["response_cache"],
            entity_list_snapshot_count=counts["entity_list_cache"],
            entity_record_snapshot_count=counts["entity_record_cache"],
            sync_log_count=counts["sync_log"],
        )

    def close(self) -> None:
        """Dispose of the engine's connection pool."""
        self._engine.dispose()
