"""Local durable cache: snapshots, outbox and sync log on one SQLite file.

Usage:
    from farmsync.cache import LocalStore, LocalCache, Outbox, ActionKind
"""

from farmsync.cache.outbox import (
    ActionKind,
    Outbox,
    OutboxItem,
    OutboxStats,
    OutboxStatus,
)
from farmsync.cache.snapshots import LocalCache, query_fingerprint
from farmsync.cache.store import CacheStats, LocalStore

__all__ = [
    "ActionKind",
    "Outbox",
    "OutboxItem",
    "OutboxStats",
    "OutboxStatus",
    "LocalCache",
    "query_fingerprint",
    "CacheStats",
    "LocalStore",
]
