"""Generic record engine.

Usage:
    from farmsync.records import RecordEngine, EngineResult
"""

from farmsync.records.engine import (
    ACTOR_COLUMNS,
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    RecordEngine,
    apply_actor_defaults,
    sanitize_payload,
    serialize_row,
    serialize_value,
)
from farmsync.records.models import EngineResult, EntityMeta

__all__ = [
    "ACTOR_COLUMNS",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "RecordEngine",
    "apply_actor_defaults",
    "sanitize_payload",
    "serialize_row",
    "serialize_value",
    "EngineResult",
    "EntityMeta",
]
