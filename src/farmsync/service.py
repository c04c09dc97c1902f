"""Request orchestration over the record engine, local cache and outbox.

``RecordService`` is what a request handler calls.  It checks the
caller's module access and role capabilities, runs the record engine on
one pooled primary-store connection, and decides what happens when the
store cannot be reached:

- Reads write through to the response cache and snapshots on success.
  When the store is unavailable they fall back, in order, to the response
  cache, the exact list snapshot, then the latest list snapshot (lists)
  or the record snapshot (single records), marked ``stale=True``.
- Writes update the record snapshot on success.  When the store is
  unavailable they are queued in the outbox (``queued=True``).  Any other
  failure is reported as INTERNAL and never queued, since a rejected
  statement would fail identically on replay.

Usage:
    service = RecordService(store, engine, cache, outbox)
    caller = Caller(user_id=3, farm_id=7, role_key="MANAGER")

    response = await service.update_record(caller, "TASKS", "tasks", 42, {"status": "DONE"})
    if response.queued:
        print(f"Offline, queued as #{response.outbox_id}")
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncConnection

from farmsync.adapters.base import PrimaryStore
from farmsync.adapters.postgres import is_store_unavailable
from farmsync.cache.outbox import ActionKind, Outbox, OutboxStats
from farmsync.cache.snapshots import LocalCache, query_fingerprint
from farmsync.cache.store import CacheStats
from farmsync.config.models import DEFAULT_FALLBACK_MAX_AGE_SECONDS
from farmsync.config.modules import normalize_module_key
from farmsync.errors import ErrorKind, InvalidIdentifierError
from farmsync.records.engine import RecordEngine
from farmsync.records.models import EngineResult
from farmsync.sync.replay import (
    ModuleAccessResolver,
    PullResult,
    ReplayResult,
    pull_entity_snapshots,
    replay_outbox,
)

logger = logging.getLogger(__name__)

SOURCE_PRIMARY = "primary"
SOURCE_CACHE = "cache"
SOURCE_LOCAL_DB = "local_db"
SOURCE_OFFLINE = "offline"

ACCESS_DENIED = "Module access denied."
ENTITY_NOT_FOUND = "Entity not found in module."


# ============================================================================
# Boundary Models
# ============================================================================


class Caller(BaseModel):
    """Authenticated caller identity and role capabilities.

    Authentication and role resolution happen upstream; only their
    results are modelled here.
    """

    user_id: int
    farm_id: int
    role_key: str = "WORKER"
    can_read: bool = True
    can_write: bool = True
    can_delete: bool = True


class ServiceResponse(BaseModel):
    """Outcome of one orchestrated request.

    Attributes:
        ok: Whether the request succeeded (queued writes count as success).
        kind: Failure class when ``ok`` is ``False``.
        message: Human-readable summary.
        detail: Underlying error text for failures.
        source: ``primary``, ``cache``, ``local_db`` or ``offline``.
        stale: ``True`` when ``data`` came from a fallback copy.
        queued: ``True`` when a write was queued in the outbox.
        outbox_id: Id of the queued outbox item.
        data: Response payload.
    """

    ok: bool
    kind: ErrorKind | None = None
    message: str | None = None
    detail: str | None = None
    source: str | None = None
    stale: bool = False
    queued: bool = False
    outbox_id: int | None = None
    data: Any = None

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        return (self.kind or ErrorKind.INTERNAL).http_status


class SyncStatus(BaseModel):
    primary_available: bool
    primary_error: str | None = None
    local_db_file: str
    outbox: OutboxStats
    local_cache: CacheStats


def _fail(kind: ErrorKind, message: str, detail: str | None = None) -> ServiceResponse:
    return ServiceResponse(ok=False, kind=kind, message=message, detail=detail)


def _from_engine_error(result: EngineResult) -> ServiceResponse:
    return _fail(result.kind or ErrorKind.VALIDATION, result.error or "Request failed.")


def _sync_failure_kind(error: Exception) -> ErrorKind:
    return ErrorKind.UNAVAILABLE if is_store_unavailable(error) else ErrorKind.INTERNAL


# ============================================================================
# Record Service
# ============================================================================


class RecordService:
    """Offline-resilient entry point for module record requests.

    Args:
        store: Primary store.
        engine: Record engine.
        cache: Local snapshot cache.
        outbox: Local outbox.
        module_access: Resolver of the module keys a user may access;
            every configured module is allowed when omitted.
        fallback_max_age_seconds: Oldest cached copy served while the
            primary store is unavailable (default 30 days).
    """

    def __init__(
        self,
        store: PrimaryStore,
        engine: RecordEngine,
        cache: LocalCache,
        outbox: Outbox,
        module_access: ModuleAccessResolver | None = None,
        fallback_max_age_seconds: int = DEFAULT_FALLBACK_MAX_AGE_SECONDS,
    ) -> None:
        self._store = store
        self._engine = engine
        self._cache = cache
        self._outbox = outbox
        self._module_access = module_access
        self._fallback_max_age = fallback_max_age_seconds

    @property
    def engine(self) -> RecordEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def cache_key(caller: Caller, module_key: str, table: str | None, extra: str) -> str:
        return f"modules:{caller.user_id}:{caller.farm_id}:{module_key}:{table or 'meta'}:{extra}"

    async def _can_access(
        self, conn: AsyncConnection, caller: Caller, module_key: str, *, read: bool = True
    ) -> bool:
        """Module visibility for *caller*; write paths check their own capability first."""
        if read and not caller.can_read:
            return False
        if self._module_access is None:
            return True
        keys = await self._module_access(conn, caller.user_id, caller.farm_id)
        return module_key in {normalize_module_key(k) for k in keys}

    def _read_fallback(
        self,
        error: Exception,
        message: str,
        lookups: Iterable[tuple[str, Callable[[], Any]]],
    ) -> ServiceResponse:
        if not is_store_unavailable(error):
            logger.error(f"{message} {error}", exc_info=error)
            return _fail(ErrorKind.INTERNAL, message, str(error))

        logger.warning(f"Primary store unavailable, serving fallback: {error}")
        for source, lookup in lookups:
            payload = lookup()
            if payload is not None:
                return ServiceResponse(ok=True, source=source, stale=True, data=payload)
        return _fail(ErrorKind.UNAVAILABLE, message, str(error) or "Database unavailable.")

    def _queue_write(
        self,
        error: Exception,
        action: ActionKind,
        caller: Caller,
        payload: dict[str, Any],
        failure_message: str,
        queued_message: str,
    ) -> ServiceResponse:
        if not is_store_unavailable(error):
            logger.error(f"{failure_message} {error}", exc_info=error)
            return _fail(ErrorKind.INTERNAL, failure_message, str(error))

        logger.warning(f"Primary store unavailable, queueing {action.value}: {error}")
        outbox_id = self._outbox.enqueue(action, payload, caller.user_id, caller.farm_id)
        return ServiceResponse(
            ok=True,
            source=SOURCE_OFFLINE,
            queued=True,
            outbox_id=outbox_id,
            message=queued_message,
        )

    def _put_record_snapshot(
        self, caller: Caller, module_key: str, table: str, data: Mapping[str, Any], fallback_id: Any = None
    ) -> None:
        record = data.get("record")
        if not isinstance(record, Mapping):
            return
        record_id = record.get(str(data.get("primary_key") or ""), fallback_id)
        if record_id is None:
            return
        self._cache.record_put(module_key, table, caller.farm_id, record_id, dict(data))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_entities(self, caller: Caller, module_key: str) -> ServiceResponse:
        """Module definition plus the exposable schema of each entity."""
        key = normalize_module_key(module_key)
        module = self._engine.registry.get_module_by_key(key)
        if module is None:
            return _fail(ErrorKind.NOT_FOUND, f"Module {key} is not defined.")

        cache_id = self.cache_key(caller, key, None, "entities")
        try:
            async with self._store.connect() as conn:
                if not await self._can_access(conn, caller, key):
                    return _fail(ErrorKind.FORBIDDEN, "You do not have access to this module.")
                entities = []
                for entity in module.entities:
                    view = await self._engine.get_entity_schema(conn, key, entity.table)
                    if view is not None:
                        entities.append(view.model_dump(mode="json"))
        except InvalidIdentifierError as e:
            return _fail(ErrorKind.VALIDATION, str(e))
        except Exception as e:
            return self._read_fallback(
                e,
                "Unable to load module entities.",
                [(SOURCE_CACHE, lambda: self._cache.get(cache_id, self._fallback_max_age))],
            )

        payload = {"module": module.model_dump(mode="json"), "entities": entities}
        self._cache.put(cache_id, payload)
        return ServiceResponse(ok=True, source=SOURCE_PRIMARY, data=payload)

    async def get_entity_schema(
        self, caller: Caller, module_key: str, table: str
    ) -> ServiceResponse:
        key = normalize_module_key(module_key)
        table = (table or "").strip()
        cache_id = self.cache_key(caller, key, table, f"schema:{table}")

        try:
            async with self._store.connect() as conn:
                if not await self._can_access(conn, caller, key):
                    return _fail(ErrorKind.FORBIDDEN, ACCESS_DENIED)
                view = await self._engine.get_entity_schema(conn, key, table)
        except InvalidIdentifierError as e:
            return _fail(ErrorKind.VALIDATION, str(e))
        except Exception as e:
            return self._read_fallback(
                e,
                "Unable to load entity schema.",
                [(SOURCE_CACHE, lambda: self._cache.get(cache_id, self._fallback_max_age))],
            )

        if view is None:
            return _fail(ErrorKind.NOT_FOUND, "Entity schema not found.")

        payload = view.model_dump(mode="json")
        self._cache.put(cache_id, payload)
        return ServiceResponse(ok=True, source=SOURCE_PRIMARY, data=payload)

    async def list_records(
        self,
        caller: Caller,
        module_key: str,
        table: str,
        query: Mapping[str, Any] | None = None,
    ) -> ServiceResponse:
        key = normalize_module_key(module_key)
        table = (table or "").strip()
        query = dict(query or {})
        cache_id = self.cache_key(caller, key, table, f"list:{query_fingerprint(query)}")
        max_age = self._fallback_max_age

        try:
            async with self._store.connect() as conn:
                if not await self._can_access(conn, caller, key):
                    return _fail(ErrorKind.FORBIDDEN, ACCESS_DENIED)
                result = await self._engine.list_records(conn, key, table, caller.farm_id, query)
        except InvalidIdentifierError as e:
            return _fail(ErrorKind.VALIDATION, str(e))
        except Exception as e:
            return self._read_fallback(
                e,
                "Unable to load records.",
                [
                    (SOURCE_CACHE, lambda: self._cache.get(cache_id, max_age)),
                    (SOURCE_LOCAL_DB, lambda: self._cache.list_get(key, table, caller.farm_id, query, max_age)),
                    (SOURCE_LOCAL_DB, lambda: self._cache.list_get_latest(key, table, caller.farm_id, max_age)),
                ],
            )

        if result is None:
            return _fail(ErrorKind.NOT_FOUND, ENTITY_NOT_FOUND)

        payload = result.data or {}
        self._cache.put(cache_id, payload)
        self._cache.persist_list_snapshot(key, table, caller.farm_id, query, payload)
        return ServiceResponse(ok=True, source=SOURCE_PRIMARY, data=payload)

    async def get_record(
        self, caller: Caller, module_key: str, table: str, record_id: Any
    ) -> ServiceResponse:
        key = normalize_module_key(module_key)
        table = (table or "").strip()
        rid = str(record_id if record_id is not None else "").strip()
        if not rid:
            return _fail(ErrorKind.VALIDATION, "Invalid record id.")

        cache_id = self.cache_key(caller, key, table, f"detail:{rid}")
        max_age = self._fallback_max_age

        try:
            async with self._store.connect() as conn:
                if not await self._can_access(conn, caller, key):
                    return _fail(ErrorKind.FORBIDDEN, ACCESS_DENIED)
                result = await self._engine.get_record_by_id(conn, key, table, caller.farm_id, rid)
        except InvalidIdentifierError as e:
            return _fail(ErrorKind.VALIDATION, str(e))
        except Exception as e:
            return self._read_fallback(
                e,
                "Unable to load record.",
                [
                    (SOURCE_CACHE, lambda: self._cache.get(cache_id, max_age)),
                    (SOURCE_LOCAL_DB, lambda: self._cache.record_get(key, table, caller.farm_id, rid, max_age)),
                ],
            )

        if result is None:
            return _fail(ErrorKind.NOT_FOUND, ENTITY_NOT_FOUND)
        if result.error:
            return _from_engine_error(result)

        payload = result.data or {}
        self._cache.put(cache_id, payload)
        self._put_record_snapshot(caller, key, table, payload)
        return ServiceResponse(ok=True, source=SOURCE_PRIMARY, data=payload)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_record(
        self,
        caller: Caller,
        module_key: str,
        table: str,
        payload: Mapping[str, Any] | None,
    ) -> ServiceResponse:
        key = normalize_module_key(module_key)
        table = (table or "").strip()
        body = dict(payload or {})
        if not caller.can_write:
            return _fail(ErrorKind.FORBIDDEN, "Your role cannot create records.")

        try:
            async with self._store.connect() as conn:
                if not await self._can_access(conn, caller, key, read=False):
                    return _fail(ErrorKind.FORBIDDEN, ACCESS_DENIED)
                result = await self._engine.create_record(
                    conn, key, table, caller.farm_id, caller.user_id, body
                )
        except InvalidIdentifierError as e:
            return _fail(ErrorKind.VALIDATION, str(e))
        except Exception as e:
            return self._queue_write(
                e,
                ActionKind.MODULE_CREATE,
                caller,
                {"module_key": key, "table": table, "data": body},
                "Failed to create record.",
                "Database is offline. Action queued for sync.",
            )

        if result is None:
            return _fail(ErrorKind.NOT_FOUND, ENTITY_NOT_FOUND)
        if result.error:
            return _from_engine_error(result)

        data = result.data or {}
        self._put_record_snapshot(caller, key, table, data)
        return ServiceResponse(ok=True, source=SOURCE_PRIMARY, data=data)

    async def update_record(
        self,
        caller: Caller,
        module_key: str,
        table: str,
        record_id: Any,
        payload: Mapping[str, Any] | None,
    ) -> ServiceResponse:
        key = normalize_module_key(module_key)
        table = (table or "").strip()
        body = dict(payload or {})
        if record_id is None or str(record_id).strip() == "":
            return _fail(ErrorKind.VALIDATION, "Invalid record id.")
        if not caller.can_write:
            return _fail(ErrorKind.FORBIDDEN, "Your role cannot update records.")

        try:
            async with self._store.connect() as conn:
                if not await self._can_access(conn, caller, key, read=False):
                    return _fail(ErrorKind.FORBIDDEN, ACCESS_DENIED)
                result = await self._engine.update_record(
                    conn, key, table, caller.farm_id, caller.user_id, record_id, body
                )
        except InvalidIdentifierError as e:
            return _fail(ErrorKind.VALIDATION, str(e))
        except Exception as e:
            return self._queue_write(
                e,
                ActionKind.MODULE_UPDATE,
                caller,
                {"module_key": key, "table": table, "record_id": record_id, "data": body},
                "Failed to update record.",
                "Database is offline. Update queued for sync.",
            )

        if result is None:
            return _fail(ErrorKind.NOT_FOUND, ENTITY_NOT_FOUND)
        if result.error:
            return _from_engine_error(result)

        data = result.data or {}
        self._put_record_snapshot(caller, key, table, data, fallback_id=record_id)
        return ServiceResponse(ok=True, source=SOURCE_PRIMARY, data=data)

    async def delete_record(
        self, caller: Caller, module_key: str, table: str, record_id: Any
    ) -> ServiceResponse:
        key = normalize_module_key(module_key)
        table = (table or "").strip()
        if record_id is None or str(record_id).strip() == "":
            return _fail(ErrorKind.VALIDATION, "Invalid record id.")
        if not caller.can_delete:
            return _fail(ErrorKind.FORBIDDEN, "Your role cannot delete records.")

        try:
            async with self._store.connect() as conn:
                if not await self._can_access(conn, caller, key, read=False):
                    return _fail(ErrorKind.FORBIDDEN, ACCESS_DENIED)
                result = await self._engine.delete_record(conn, key, table, caller.farm_id, record_id)
        except InvalidIdentifierError as e:
            return _fail(ErrorKind.VALIDATION, str(e))
        except Exception as e:
            response = self._queue_write(
                e,
                ActionKind.MODULE_DELETE,
                caller,
                {"module_key": key, "table": table, "record_id": record_id},
                "Failed to delete record.",
                "Database is offline. Delete queued for sync.",
            )
            if response.queued:
                self._cache.record_delete(key, table, caller.farm_id, record_id)
            return response

        if result is None:
            return _fail(ErrorKind.NOT_FOUND, ENTITY_NOT_FOUND)
        if result.error:
            return _from_engine_error(result)

        self._cache.record_delete(key, table, caller.farm_id, record_id)
        return ServiceResponse(ok=True, source=SOURCE_PRIMARY, data=result.data)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_status(self) -> SyncStatus:
        """Primary reachability plus outbox and local cache diagnostics."""
        available = False
        error_text: str | None = None
        try:
            available = await self._store.test_connection()
        except Exception as e:
            error_text = str(e) or type(e).__name__
            logger.info(f"Primary store check failed: {error_text}")

        stats = self._cache.store.stats()
        return SyncStatus(
            primary_available=available,
            primary_error=error_text,
            local_db_file=stats.file_path,
            outbox=self._outbox.stats(),
            local_cache=stats,
        )

    async def replay(self, limit: int = 50) -> ServiceResponse:
        """Replay queued writes; the limit is clamped to [1, 250]."""
        try:
            result: ReplayResult = await replay_outbox(
                self._store, self._engine, self._outbox, limit=max(1, min(250, limit))
            )
        except Exception as e:
            logger.warning(f"Outbox replay failed: {e}")
            return _fail(_sync_failure_kind(e), "Failed to push offline outbox.", str(e))
        return ServiceResponse(ok=True, source=SOURCE_PRIMARY, data=result.model_dump(mode="json"))

    async def pull(
        self,
        caller: Caller,
        module_keys: Iterable[str] | None = None,
        page_size: int = 100,
    ) -> ServiceResponse:
        """Refresh snapshots for every entity the caller can see."""
        try:
            result: PullResult = await pull_entity_snapshots(
                self._store,
                self._engine,
                self._cache,
                self._outbox,
                self._engine.registry,
                caller.user_id,
                caller.farm_id,
                module_keys=module_keys,
                page_size=page_size,
                module_access=self._module_access,
            )
        except Exception as e:
            logger.warning(f"Snapshot pull failed: {e}")
            return _fail(_sync_failure_kind(e), "Snapshot pull failed.", str(e))
        return ServiceResponse(ok=True, source=SOURCE_PRIMARY, data=result.model_dump(mode="json"))
