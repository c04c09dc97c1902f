"""Primary store adapters package.

Provides the ``PrimaryStore`` Protocol, the async PostgreSQL
implementation, and the store-unavailable classifier.

Usage:
    from farmsync.adapters import PrimaryStore, AsyncPostgresStore, is_store_unavailable
"""

from farmsync.adapters.base import PrimaryStore
from farmsync.adapters.postgres import (
    AsyncPostgresStore,
    create_async_engine_pooled,
    is_store_unavailable,
    normalize_database_url,
)

__all__ = [
    "PrimaryStore",
    "AsyncPostgresStore",
    "create_async_engine_pooled",
    "is_store_unavailable",
    "normalize_database_url",
]
