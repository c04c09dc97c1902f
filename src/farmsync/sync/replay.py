"""Outbox replay and bulk snapshot pull.

``replay_outbox`` drains queued write intents against the record engine
once the primary store is reachable again.  ``pull_entity_snapshots``
refreshes the local list/record snapshots for every entity a user can
see.

Both run on one primary-store connection and isolate failures per item
(replay) or per entity (pull): a failure is rolled back, recorded and
logged, and the loop continues.

Replay is at-least-once.  A crash between the primary-store commit and
``mark_done`` leaves the item eligible, and a replayed create inserts a
second row.

Usage:
    from farmsync.sync import replay_outbox, pull_entity_snapshots

    result = await replay_outbox(store, engine, outbox, limit=50)
    print(f"{result.succeeded}/{result.attempted} applied")
"""

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncConnection

from farmsync.adapters.base import PrimaryStore
from farmsync.cache.outbox import ActionKind, Outbox, OutboxItem, OutboxStats
from farmsync.cache.snapshots import LocalCache
from farmsync.cache.store import CacheStats
from farmsync.config.modules import ModuleRegistry, normalize_module_key
from farmsync.errors import ReplayActionError
from farmsync.records.engine import RecordEngine
from farmsync.records.models import EngineResult
from farmsync.schema.sanitize import to_int

logger = logging.getLogger(__name__)

MIN_PULL_PAGE_SIZE = 10
MAX_PULL_PAGE_SIZE = 250
MAX_FAILURE_DETAILS = 200

# async (conn, user_id, farm_id) -> module keys the user may access
ModuleAccessResolver = Callable[[AsyncConnection, Any, Any], Awaitable[Iterable[str]]]


# ============================================================================
# Result Models
# ============================================================================


class ReplayResult(BaseModel):
    """Summary of one replay batch plus the outbox totals afterwards."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    stats: OutboxStats = Field(default_factory=OutboxStats)


class FailedEntity(BaseModel):
    module_key: str
    table: str
    error: str


class PullResult(BaseModel):
    """Summary of one snapshot pull.

    Attributes:
        modules_considered: Authorized modules after the caller's filter.
        entities_synced: Entities whose first page was cached.
        rows_cached: Rows written across all list snapshots.
        failures: Entities whose list query raised.
        failed_entities: Failure details (at most 200).
        cache: Local store diagnostics after the pull.
        outbox: Outbox totals after the pull.
    """

    modules_considered: int = 0
    entities_synced: int = 0
    rows_cached: int = 0
    failures: int = 0
    failed_entities: list[FailedEntity] = Field(default_factory=list)
    cache: CacheStats
    outbox: OutboxStats


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


# ============================================================================
# Replay
# ============================================================================


async def _run_action(
    engine: RecordEngine, conn: AsyncConnection, item: OutboxItem
) -> EngineResult:
    """Dispatch one outbox item to the matching record engine operation.

    Raises:
        ReplayActionError: If the action kind is unknown, the entity is
            not configured, or the engine returns an error result.
    """
    payload = item.payload
    module_key = payload.get("module_key")
    table = payload.get("table")

    match item.action_key.upper():
        case ActionKind.MODULE_CREATE:
            result = await engine.create_record(
                conn, module_key, table, item.farm_id, item.user_id, payload.get("data") or {}
            )
        case ActionKind.MODULE_UPDATE:
            result = await engine.update_record(
                conn,
                module_key,
                table,
                item.farm_id,
                item.user_id,
                payload.get("record_id"),
                payload.get("data") or {},
            )
        case ActionKind.MODULE_DELETE:
            result = await engine.delete_record(
                conn, module_key, table, item.farm_id, payload.get("record_id")
            )
        case _:
            raise ReplayActionError(f"Unsupported outbox action: {item.action_key}")

    if result is None:
        raise ReplayActionError(f"Entity {module_key}/{table} is not configured.")
    if result.error:
        raise ReplayActionError(result.error)
    return result


async def replay_outbox(
    store: PrimaryStore,
    engine: RecordEngine,
    outbox: Outbox,
    limit: int = 50,
) -> ReplayResult:
    """Apply up to *limit* PENDING/FAILED items in FIFO order.

    An empty outbox returns zero counts without touching the primary
    store.  Store errors raised while opening the connection propagate.
    """
    pending = outbox.pending(limit)
    if not pending:
        return ReplayResult(stats=outbox.stats())

    succeeded = 0
    failed = 0

    async with store.connect() as conn:
        for item in pending:
            try:
                await _run_action(engine, conn, item)
            except Exception as e:
                await conn.rollback()
                message = _error_message(e)
                outbox.mark_failed(item.outbox_id, message)
                outbox.log_event(
                    "REPLAY_FAIL",
                    {
                        "outbox_id": item.outbox_id,
                        "action_key": item.action_key,
                        "error": message,
                    },
                )
                logger.warning(f"Replay of outbox item {item.outbox_id} failed: {message}")
                failed += 1
                continue

            outbox.mark_done(item.outbox_id)
            outbox.log_event(
                "REPLAY_OK",
                {"outbox_id": item.outbox_id, "action_key": item.action_key},
            )
            logger.debug(f"Replayed outbox item {item.outbox_id} ({item.action_key})")
            succeeded += 1

    return ReplayResult(
        attempted=len(pending),
        succeeded=succeeded,
        failed=failed,
        stats=outbox.stats(),
    )


# ============================================================================
# Snapshot Pull
# ============================================================================


async def _allowed_module_keys(
    conn: AsyncConnection,
    registry: ModuleRegistry,
    module_access: ModuleAccessResolver | None,
    user_id: Any,
    farm_id: Any,
) -> set[str]:
    if module_access is None:
        return set(registry.module_keys())
    keys = await module_access(conn, user_id, farm_id)
    return {normalize_module_key(k) for k in keys}


async def pull_entity_snapshots(
    store: PrimaryStore,
    engine: RecordEngine,
    cache: LocalCache,
    outbox: Outbox,
    registry: ModuleRegistry,
    user_id: Any,
    farm_id: Any,
    module_keys: Iterable[str] | None = None,
    page_size: int = 100,
    module_access: ModuleAccessResolver | None = None,
) -> PullResult:
    """Cache the first page of every entity the user may see.

    Args:
        store: Primary store.
        engine: Record engine issuing the list queries.
        cache: Snapshot cache receiving list and record snapshots.
        outbox: Outbox (sync log and stats).
        registry: Module registry.
        user_id: Acting user.
        farm_id: Tenant whose rows are pulled.
        module_keys: Optional filter, intersected with the authorized set.
        page_size: Rows per entity, clamped to [10, 250].
        module_access: Resolver of the user's module keys; every configured
            module is allowed when omitted.

    Returns:
        ``PullResult`` with counts and the cache/outbox stats afterwards.
    """
    limit = max(MIN_PULL_PAGE_SIZE, min(MAX_PULL_PAGE_SIZE, to_int(page_size, 100)))
    requested = {normalize_module_key(k) for k in module_keys or []} - {""}
    query = {"page": 1, "page_size": limit}

    entities_synced = 0
    rows_cached = 0
    failures = 0
    failed_entities: list[FailedEntity] = []

    async with store.connect() as conn:
        allowed = await _allowed_module_keys(conn, registry, module_access, user_id, farm_id)
        targets = [
            m
            for m in registry.modules()
            if normalize_module_key(m.module_key) in allowed
            and (not requested or normalize_module_key(m.module_key) in requested)
        ]

        for module in targets:
            for entity in module.entities:
                try:
                    result = await engine.list_records(
                        conn, module.module_key, entity.table, farm_id, query
                    )
                except Exception as e:
                    await conn.rollback()
                    message = _error_message(e)
                    failures += 1
                    failed_entities.append(
                        FailedEntity(module_key=module.module_key, table=entity.table, error=message)
                    )
                    outbox.log_event(
                        "PULL_FAIL",
                        {"module_key": module.module_key, "table": entity.table, "error": message},
                    )
                    logger.warning(f"Pull of {module.module_key}/{entity.table} failed: {message}")
                    continue

                if result is None or result.data is None:
                    continue

                entities_synced += 1
                rows_cached += len(result.data.get("rows") or [])
                cache.persist_list_snapshot(
                    module.module_key, entity.table, farm_id, query, result.data
                )

    outbox.log_event(
        "PULL_DONE",
        {
            "user_id": user_id,
            "farm_id": farm_id,
            "modules_considered": len(targets),
            "entities_synced": entities_synced,
            "rows_cached": rows_cached,
            "failures": failures,
        },
    )

    return PullResult(
        modules_considered=len(targets),
        entities_synced=entities_synced,
        rows_cached=rows_cached,
        failures=failures,
        failed_entities=failed_entities[:MAX_FAILURE_DETAILS],
        cache=cache.store.stats(),
        outbox=outbox.stats(),
    )
