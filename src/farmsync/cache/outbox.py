"""Durable outbox of write intents and the append-only sync log.

State machine per item::

    PENDING --ok--> DONE          (terminal, kept for audit)
    PENDING --err-> FAILED
    FAILED  --ok--> DONE
    FAILED  --err-> FAILED        (attempts += 1, last_error overwritten)

Items are never deleted.  ``pending()`` returns PENDING and FAILED items
oldest first, so a failed item stays eligible for the next replay.

Usage:
    from farmsync.cache import Outbox, ActionKind

    outbox = Outbox(store)
    outbox_id = outbox.enqueue(
        ActionKind.MODULE_UPDATE,
        {"module_key": "TASKS", "table": "tasks", "record_id": 42, "data": {...}},
        user_id=3,
        farm_id=7,
    )
"""

import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import text

from farmsync.cache.store import LocalStore, dump_json, load_json
from farmsync.schema.sanitize import to_int

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Unknown sync error"


class ActionKind(str, Enum):
    """Closed set of replayable write intents."""

    MODULE_CREATE = "MODULE_CREATE"
    MODULE_UPDATE = "MODULE_UPDATE"
    MODULE_DELETE = "MODULE_DELETE"


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"


class OutboxItem(BaseModel):
    """One persisted write intent.

    ``action_key`` stays a plain string so an unrecognised kind read back
    from disk fails at dispatch time instead of at load time.
    """

    outbox_id: int
    action_key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    user_id: int
    farm_id: int
    attempts: int = 0
    status: OutboxStatus = OutboxStatus.PENDING
    last_error: str | None = None
    created_at: int
    updated_at: int


class OutboxStats(BaseModel):
    pending_count: int = 0
    failed_count: int = 0
    done_count: int = 0
    total_count: int = 0


_SELECT_COLUMNS = (
    "outbox_id, action_key, payload, user_id, farm_id, attempts,"
    " status, last_error, created_at, updated_at"
)


def _to_item(row: Any) -> OutboxItem:
    payload = load_json(row.payload, {})
    return OutboxItem(
        outbox_id=int(row.outbox_id),
        action_key=str(row.action_key),
        payload=payload if isinstance(payload, dict) else {},
        user_id=int(row.user_id),
        farm_id=int(row.farm_id),
        attempts=int(row.attempts),
        status=OutboxStatus(str(row.status)),
        last_error=str(row.last_error) if row.last_error else None,
        created_at=int(row.created_at),
        updated_at=int(row.updated_at),
    )


class Outbox:
    """Outbox and sync log tables of a ``LocalStore``.

    Local storage is assumed always available: any SQLite error raised
    here propagates and is fatal for the request.
    """

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    def enqueue(
        self,
        action: ActionKind | str,
        payload: dict[str, Any] | None,
        user_id: Any,
        farm_id: Any,
    ) -> int:
        """Persist a write intent as PENDING and return its id."""
        action_key = ActionKind(action).value
        now = self._store.now_ms()
        with self._store.begin() as conn:
            result = conn.execute(
                text(
                    "INSERT INTO outbox"
                    " (action_key, payload, user_id, farm_id, attempts, status,"
                    " last_error, created_at, updated_at)"
                    " VALUES (:action_key, :payload, :user_id, :farm_id, 0, 'PENDING',"
                    " NULL, :now, :now)"
                ),
                {
                    "action_key": action_key,
                    "payload": dump_json(payload or {}),
                    "user_id": to_int(user_id, 0),
                    "farm_id": to_int(farm_id, 0),
                    "now": now,
                },
            )
            outbox_id = int(result.lastrowid or 0)

        self.log_event(
            "ENQUEUE",
            {
                "outbox_id": outbox_id,
                "action_key": action_key,
                "user_id": user_id,
                "farm_id": farm_id,
            },
        )
        logger.info(f"Queued {action_key} as outbox item {outbox_id}")
        return outbox_id

    def pending(self, limit: int = 100) -> list[OutboxItem]:
        """PENDING and FAILED items, oldest first (id breaks ties)."""
        with self._store.connect() as conn:
            rows = conn.execute(
                text(
                    f"SELECT {_SELECT_COLUMNS} FROM outbox"
                    " WHERE status IN ('PENDING', 'FAILED')"
                    " ORDER BY created_at ASC, outbox_id ASC"
                    " LIMIT :limit"
                ),
                {"limit": max(0, to_int(limit, 100))},
            ).fetchall()
        return [_to_item(row) for row in rows]

    def get(self, outbox_id: int) -> OutboxItem | None:
        with self._store.connect() as conn:
            row = conn.execute(
                text(f"SELECT {_SELECT_COLUMNS} FROM outbox WHERE outbox_id = :outbox_id"),
                {"outbox_id": int(outbox_id)},
            ).first()
        return _to_item(row) if row is not None else None

    def mark_done(self, outbox_id: int) -> None:
        with self._store.begin() as conn:
            conn.execute(
                text(
                    "UPDATE outbox SET status = 'DONE', attempts = attempts + 1,"
                    " last_error = NULL, updated_at = :now"
                    " WHERE outbox_id = :outbox_id"
                ),
                {"now": self._store.now_ms(), "outbox_id": int(outbox_id)},
            )

    def mark_failed(self, outbox_id: int, message: str | None = None) -> None:
        with self._store.begin() as conn:
            conn.execute(
                text(
                    "UPDATE outbox SET status = 'FAILED', attempts = attempts + 1,"
                    " last_error = :last_error, updated_at = :now"
                    " WHERE outbox_id = :outbox_id"
                ),
                {
                    "last_error": str(message or DEFAULT_FAILURE_MESSAGE),
                    "now": self._store.now_ms(),
                    "outbox_id": int(outbox_id),
                },
            )

    def stats(self) -> OutboxStats:
        with self._store.connect() as conn:
            row = conn.execute(
                text(
                    "SELECT"
                    " SUM(CASE WHEN status = 'PENDING' THEN 1 ELSE 0 END) AS pending_count,"
                    " SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failed_count,"
                    " SUM(CASE WHEN status = 'DONE' THEN 1 ELSE 0 END) AS done_count,"
                    " COUNT(*) AS total_count"
                    " FROM outbox"
                )
            ).first()

        return OutboxStats(
            pending_count=int(row.pending_count or 0),
            failed_count=int(row.failed_count or 0),
            done_count=int(row.done_count or 0),
            total_count=int(row.total_count or 0),
        )

    def log_event(self, event_type: str, detail: dict[str, Any] | None = None) -> None:
        """Append one diagnostic event to the sync log (never read back)."""
        with self._store.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO sync_log (event_type, detail, created_at)"
                    " VALUES (:event_type, :detail, :created_at)"
                ),
                {
                    "event_type": str(event_type),
                    "detail": dump_json(detail or {}),
                    "created_at": self._store.now_ms(),
                },
            )
