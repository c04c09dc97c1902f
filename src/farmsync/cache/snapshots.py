"""Response cache and entity list/record snapshots.

The cache is "last known good state" for degraded operation, not a
performance cache: entries are never evicted.  Staleness is decided at
read time against the caller's ``max_age_seconds``; a stale read returns
``None`` and leaves the entry in place for a caller with a larger
tolerance.

Usage:
    from farmsync.cache import LocalCache, LocalStore

    cache = LocalCache(LocalStore("data/farmsync_local_cache.sqlite"))
    cache.list_put("TASKS", "tasks", 7, {"page": 1}, payload)
    cache.list_get("TASKS", "tasks", 7, {"page": 1}, max_age_seconds=45)
"""

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from sqlalchemy import text

from farmsync.cache.store import LocalStore, dump_json, load_json
from farmsync.config.modules import normalize_module_key
from farmsync.schema.sanitize import to_int

DEFAULT_TTL_SECONDS = 45


def query_fingerprint(query: Mapping[str, Any] | None) -> str:
    """Stable SHA-1 of *query* with keys recursively sorted.

    Example:
        >>> query_fingerprint({"a": 1, "b": 2}) == query_fingerprint({"b": 2, "a": 1})
        True
    """
    canonical = json.dumps(
        dict(query or {}), sort_keys=True, separators=(",", ":"), default=str
    )
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()


def _table(value: Any) -> str:
    return str(value or "").strip()


def _farm(value: Any) -> int:
    return to_int(value, 0)


def _record_id(value: Any) -> str:
    return str(value if value is not None else "").strip()


class LocalCache:
    """Read/write access to the three snapshot tables of a ``LocalStore``.

    Every write is an upsert on the full key that replaces payload and
    timestamp.  Keys are normalized: module key upper-cased, table
    trimmed, farm id truncated to an integer (0 if not numeric), record
    id trimmed.

    Reads without an explicit ``max_age_seconds`` use
    *default_max_age_seconds* (the configured cache TTL).
    """

    def __init__(self, store: LocalStore, default_max_age_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        self._store = store
        self._default_max_age = default_max_age_seconds

    @property
    def store(self) -> LocalStore:
        return self._store

    def _fresh(self, row: Any, max_age_seconds: float | None) -> Any:
        if row is None:
            return None
        if max_age_seconds is None:
            max_age_seconds = self._default_max_age
        age_ms = self._store.now_ms() - int(row.updated_at or 0)
        if age_ms > float(max_age_seconds) * 1000:
            return None
        return load_json(row.payload)

    # ------------------------------------------------------------------
    # Response cache
    # ------------------------------------------------------------------

    def put(self, cache_key: str, payload: Any) -> None:
        with self._store.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO response_cache (cache_key, payload, updated_at)"
                    " VALUES (:cache_key, :payload, :updated_at)"
                    " ON CONFLICT (cache_key) DO UPDATE SET"
                    " payload = excluded.payload, updated_at = excluded.updated_at"
                ),
                {
                    "cache_key": cache_key,
                    "payload": dump_json(payload),
                    "updated_at": self._store.now_ms(),
                },
            )

    def get(self, cache_key: str, max_age_seconds: float | None = None) -> Any:
        with self._store.connect() as conn:
            row = conn.execute(
                text(
                    "SELECT payload, updated_at FROM response_cache"
                    " WHERE cache_key = :cache_key LIMIT 1"
                ),
                {"cache_key": cache_key},
            ).first()
        return self._fresh(row, max_age_seconds)

    # ------------------------------------------------------------------
    # Entity list snapshots
    # ------------------------------------------------------------------

    def list_put(
        self,
        module_key: str,
        table: str,
        farm_id: Any,
        query: Mapping[str, Any] | None,
        payload: Any,
    ) -> None:
        with self._store.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO entity_list_cache"
                    " (module_key, table_name, farm_id, query_fingerprint, payload, updated_at)"
                    " VALUES (:module_key, :table_name, :farm_id, :fingerprint, :payload, :updated_at)"
                    " ON CONFLICT (module_key, table_name, farm_id, query_fingerprint) DO UPDATE SET"
                    " payload = excluded.payload, updated_at = excluded.updated_at"
                ),
                {
                    "module_key": normalize_module_key(module_key),
                    "table_name": _table(table),
                    "farm_id": _farm(farm_id),
                    "fingerprint": query_fingerprint(query),
                    "payload": dump_json(payload if payload is not None else {}),
                    "updated_at": self._store.now_ms(),
                },
            )

    def list_get(
        self,
        module_key: str,
        table: str,
        farm_id: Any,
        query: Mapping[str, Any] | None,
        max_age_seconds: float | None = None,
    ) -> Any:
        with self._store.connect() as conn:
            row = conn.execute(
                text(
                    "SELECT payload, updated_at FROM entity_list_cache"
                    " WHERE module_key = :module_key AND table_name = :table_name"
                    " AND farm_id = :farm_id AND query_fingerprint = :fingerprint"
                    " LIMIT 1"
                ),
                {
                    "module_key": normalize_module_key(module_key),
                    "table_name": _table(table),
                    "farm_id": _farm(farm_id),
                    "fingerprint": query_fingerprint(query),
                },
            ).first()
        return self._fresh(row, max_age_seconds)

    def list_get_latest(
        self,
        module_key: str,
        table: str,
        farm_id: Any,
        max_age_seconds: float | None = None,
    ) -> Any:
        """Most recently written list snapshot for the entity, any query."""
        with self._store.connect() as conn:
            row = conn.execute(
                text(
                    "SELECT payload, updated_at FROM entity_list_cache"
                    " WHERE module_key = :module_key AND table_name = :table_name"
                    " AND farm_id = :farm_id"
                    " ORDER BY updated_at DESC LIMIT 1"
                ),
                {
                    "module_key": normalize_module_key(module_key),
                    "table_name": _table(table),
                    "farm_id": _farm(farm_id),
                },
            ).first()
        return self._fresh(row, max_age_seconds)

    # ------------------------------------------------------------------
    # Entity record snapshots
    # ------------------------------------------------------------------

    def record_put(
        self,
        module_key: str,
        table: str,
        farm_id: Any,
        record_id: Any,
        payload: Any,
    ) -> None:
        rid = _record_id(record_id)
        if not rid:
            return
        with self._store.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO entity_record_cache"
                    " (module_key, table_name, farm_id, record_id, payload, updated_at)"
                    " VALUES (:module_key, :table_name, :farm_id, :record_id, :payload, :updated_at)"
                    " ON CONFLICT (module_key, table_name, farm_id, record_id) DO UPDATE SET"
                    " payload = excluded.payload, updated_at = excluded.updated_at"
                ),
                {
                    "module_key": normalize_module_key(module_key),
                    "table_name": _table(table),
                    "farm_id": _farm(farm_id),
                    "record_id": rid,
                    "payload": dump_json(payload if payload is not None else {}),
                    "updated_at": self._store.now_ms(),
                },
            )

    def record_get(
        self,
        module_key: str,
        table: str,
        farm_id: Any,
        record_id: Any,
        max_age_seconds: float | None = None,
    ) -> Any:
        rid = _record_id(record_id)
        if not rid:
            return None
        with self._store.connect() as conn:
            row = conn.execute(
                text(
                    "SELECT payload, updated_at FROM entity_record_cache"
                    " WHERE module_key = :module_key AND table_name = :table_name"
                    " AND farm_id = :farm_id AND record_id = :record_id"
                    " LIMIT 1"
                ),
                {
                    "module_key": normalize_module_key(module_key),
                    "table_name": _table(table),
                    "farm_id": _farm(farm_id),
                    "record_id": rid,
                },
            ).first()
        return self._fresh(row, max_age_seconds)

    def record_delete(
        self,
        module_key: str,
        table: str,
        farm_id: Any,
        record_id: Any,
    ) -> None:
        rid = _record_id(record_id)
        if not rid:
            return
        with self._store.begin() as conn:
            conn.execute(
                text(
                    "DELETE FROM entity_record_cache"
                    " WHERE module_key = :module_key AND table_name = :table_name"
                    " AND farm_id = :farm_id AND record_id = :record_id"
                ),
                {
                    "module_key": normalize_module_key(module_key),
                    "table_name": _table(table),
                    "farm_id": _farm(farm_id),
                    "record_id": rid,
                },
            )

    # ------------------------------------------------------------------
    # Write-through
    # ------------------------------------------------------------------

    def persist_list_snapshot(
        self,
        module_key: str,
        table: str,
        farm_id: Any,
        query: Mapping[str, Any] | None,
        payload: Mapping[str, Any],
    ) -> int:
        """Store a list response and one record snapshot per keyed row.

        Record snapshots use the single-record response shape
        ``{module_key, table, primary_key, record}``.

        Returns:
            Number of record snapshots written.
        """
        self.list_put(module_key, table, farm_id, query, payload)

        primary_key = str(payload.get("primary_key") or "").strip()
        if not primary_key:
            return 0

        written = 0
        for row in payload.get("rows") or []:
            record_id = row.get(primary_key) if isinstance(row, Mapping) else None
            if record_id is None or _record_id(record_id) == "":
                continue
            self.record_put(
                module_key,
                table,
                farm_id,
                record_id,
                {
                    "module_key": normalize_module_key(module_key),
                    "table": _table(table),
                    "primary_key": primary_key,
                    "record": row,
                },
            )
            written += 1
        return written
