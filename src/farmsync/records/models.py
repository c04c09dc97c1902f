"""Result models for the generic record engine.

Engine operations return one of three outcomes:
- ``None``: the (module, table) pair is not a configured entity
- ``EngineResult`` with ``error`` and ``kind``: a handled business-rule failure
- ``EngineResult`` with ``data``: success
"""

from typing import Any

from pydantic import BaseModel

from farmsync.config.modules import EntityDef, ModuleDef
from farmsync.errors import ErrorKind
from farmsync.schema.models import EntitySchema


class EngineResult(BaseModel):
    """Outcome of one record engine operation.

    Example:
        >>> EngineResult(data={"record": None}).ok
        True
        >>> EngineResult.failure(ErrorKind.VALIDATION, "No writable fields were provided.").ok
        False
    """

    data: dict[str, Any] | None = None
    error: str | None = None
    kind: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "EngineResult":
        return cls(error=message, kind=kind)


class EntityMeta(BaseModel):
    """Resolved module, entity and introspected schema for one table."""

    module: ModuleDef
    entity: EntityDef
    table_schema: EntitySchema
