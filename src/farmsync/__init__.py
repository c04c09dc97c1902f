"""farmsync: Offline-resilient data access for multi-tenant farm modules.

Provides schema-driven CRUD over allow-listed module tables, a local SQLite
cache of last known good responses, an outbox of writes queued while the
primary store is unreachable, and replay/pull synchronization.

Usage:
    from farmsync import RecordService, Caller, build_service, get_store
    from farmsync import load_config, ModuleRegistry
    from farmsync import ErrorKind, is_store_unavailable
"""

__version__ = "0.1.0"

# Adapters
from farmsync.adapters.base import PrimaryStore
from farmsync.adapters.postgres import AsyncPostgresStore, is_store_unavailable

# Cache
from farmsync.cache.outbox import ActionKind, Outbox
from farmsync.cache.snapshots import LocalCache
from farmsync.cache.store import LocalStore

# Config
from farmsync.config.loader import load_config
from farmsync.config.models import FarmSyncConfig, StoreProfile
from farmsync.config.modules import ModuleRegistry

# Errors
from farmsync.errors import ErrorKind, InvalidIdentifierError

# Factory
from farmsync.factory import (
    ProfileNotFoundError,
    build_service,
    connect_and_validate,
    get_store,
    resolve_url,
)

# Records
from farmsync.records.engine import RecordEngine
from farmsync.records.models import EngineResult

# Schema
from farmsync.schema.introspector import SchemaIntrospector

# Service
from farmsync.service import Caller, RecordService, ServiceResponse

__all__ = [
    # Adapters
    "PrimaryStore",
    "AsyncPostgresStore",
    "is_store_unavailable",
    # Cache
    "ActionKind",
    "LocalCache",
    "LocalStore",
    "Outbox",
    # Config
    "load_config",
    "FarmSyncConfig",
    "StoreProfile",
    "ModuleRegistry",
    # Errors
    "ErrorKind",
    "InvalidIdentifierError",
    # Factory
    "ProfileNotFoundError",
    "build_service",
    "connect_and_validate",
    "get_store",
    "resolve_url",
    # Records
    "EngineResult",
    "RecordEngine",
    # Schema
    "SchemaIntrospector",
    # Service
    "Caller",
    "RecordService",
    "ServiceResponse",
]
