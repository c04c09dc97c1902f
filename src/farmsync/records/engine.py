"""Generic, schema-driven CRUD over allow-listed tables.

``RecordEngine`` maps a (module, table, record) triple to parameterized
SQL using introspected column metadata.  Every dynamic identifier goes
through ``sanitize_identifier``; every value is bound as a parameter.
Rows are always scoped by ``farm_id`` when the table has that column.

The engine performs no role checks and never classifies store errors:
all exceptions raised by the connection propagate to the caller.

Usage:
    from farmsync.records import RecordEngine

    engine = RecordEngine(registry, SchemaIntrospector(registry))
    async with store.connect() as conn:
        result = await engine.list_records(conn, "TASKS", "tasks", 7, {"page": 1})
        if result is None:
            ...  # 404: not a configured entity
        elif result.error:
            ...  # handled failure, see result.kind
        else:
            rows = result.data["rows"]
"""

import logging
import math
from collections.abc import Mapping
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from farmsync.config.modules import ModuleRegistry
from farmsync.errors import ErrorKind
from farmsync.records.models import EngineResult, EntityMeta
from farmsync.schema.introspector import FARM_COLUMN, SECRET_COLUMNS, SchemaIntrospector
from farmsync.schema.models import EntitySchema, EntitySchemaView, FieldDescriptor
from farmsync.schema.sanitize import (
    coerce_value,
    match_enum_value,
    sanitize_identifier,
    to_int,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 1000
MAX_SEARCH_COLUMNS = 8

ACTOR_COLUMNS: tuple[str, ...] = (
    "created_by",
    "updated_by",
    "assigned_by",
    "reported_by",
    "sender_user_id",
)
SOURCE_CHANNEL_COLUMN = "source_channel"
DEFAULT_SOURCE_CHANNEL = "API"

NO_PRIMARY_KEY = "This table does not have a primary key."
NO_FIELDS_CREATE = "No writable fields were provided."
NO_FIELDS_UPDATE = "No writable fields were provided for update."
NO_MATCH_UPDATE = "No matching record found for update."


# ============================================================================
# Row Serialization
# ============================================================================


def serialize_value(value: Any) -> Any:
    """Serialize a store value to a JSON-compatible type."""
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return value


def serialize_row(row: Mapping[str, Any]) -> dict[str, Any]:
    return {k: serialize_value(v) for k, v in row.items()}


# ============================================================================
# Query Building Helpers
# ============================================================================


def _columns_sql(schema: EntitySchema) -> str:
    return ", ".join(sanitize_identifier(name) for name in schema.readable_columns)


def _tenancy_clause(
    schema: EntitySchema, farm_id: Any, params: dict[str, Any]
) -> list[str]:
    if not schema.has_farm_id:
        return []
    params["farm_id"] = to_int(farm_id, 0)
    return [f"{sanitize_identifier(FARM_COLUMN)} = :farm_id"]


def _search_clause(
    schema: EntitySchema, search: Any, params: dict[str, Any]
) -> str | None:
    term = str(search if search is not None else "").strip()
    if not term:
        return None

    searchable = [
        c
        for c in schema.columns
        if (c.field_type in ("string", "text") or c.data_type == "enum")
        and c.name not in SECRET_COLUMNS
    ][:MAX_SEARCH_COLUMNS]
    if not searchable:
        return None

    params["search"] = f"%{term}%"
    parts = [f"CAST({sanitize_identifier(c.name)} AS TEXT) ILIKE :search" for c in searchable]
    return "(" + " OR ".join(parts) + ")"


def _filter_clauses(
    schema: EntitySchema, query: Mapping[str, Any], params: dict[str, Any]
) -> list[str]:
    clauses: list[str] = []
    for key, raw in query.items():
        if not str(key).startswith("filter_"):
            continue
        name = str(key)[len("filter_"):]
        column = schema.column(name)
        # Unknown filter keys are ignored
        if column is None:
            continue
        if raw is None or raw == "":
            continue
        param = f"f_{name}"
        params[param] = coerce_value(column, raw)
        clauses.append(f"{sanitize_identifier(name)} = :{param}")
    return clauses


def _where_sql(clauses: list[str]) -> str:
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


def _returned_row(result: Any) -> dict[str, Any] | None:
    col_names = list(result.keys())
    row = result.fetchone()
    if row is None:
        return None
    return serialize_row(dict(zip(col_names, row)))


def _caller_fields(
    schema: EntitySchema, payload: Mapping[str, Any] | None, mode: str
) -> dict[str, Any]:
    """Sanitized columns the caller actually supplied.

    Injected tenancy and actor columns do not count: a write whose only
    columns would be ``farm_id`` or ``updated_by`` changes nothing.
    """
    fields = sanitize_payload(schema, payload or {}, mode)
    fields.pop(FARM_COLUMN, None)
    return fields


def _coerce_record_id(schema: EntitySchema, record_id: Any) -> Any:
    column = schema.column(schema.primary_key or "")
    if column is not None and column.field_type == "number":
        return to_int(record_id, 0)
    return str(record_id).strip()


def apply_actor_defaults(
    schema: EntitySchema,
    payload: Mapping[str, Any] | None,
    user_id: Any,
    farm_id: Any,
    mode: str,
) -> dict[str, Any]:
    """Force tenancy and default actor attribution on a write body.

    ``farm_id`` is always overwritten with the caller's farm.  On create,
    every actor column present in the schema and absent from the payload
    defaults to *user_id*, and ``source_channel`` defaults to ``"API"``.
    On update only ``updated_by`` is defaulted.
    """
    draft = dict(payload or {})

    if schema.has_farm_id:
        draft[FARM_COLUMN] = to_int(farm_id, 0)

    actor_columns = ACTOR_COLUMNS if mode == "create" else ("updated_by",)
    if user_id is not None:
        for name in actor_columns:
            if schema.has_column(name) and name not in draft:
                draft[name] = user_id

    if mode == "create" and schema.has_column(SOURCE_CHANNEL_COLUMN):
        draft.setdefault(SOURCE_CHANNEL_COLUMN, DEFAULT_SOURCE_CHANNEL)

    return draft


def sanitize_payload(
    schema: EntitySchema, draft: Mapping[str, Any], mode: str
) -> dict[str, Any]:
    """Keep writable columns present in *draft*, coerced to column types.

    The primary key is never written on update.  Enum values that match
    nothing in the allowed set drop the column from the write.
    """
    output: dict[str, Any] = {}
    for name in schema.writable_columns:
        if mode == "update" and name == schema.primary_key:
            continue
        if name not in draft:
            continue
        column = schema.column(name)
        if column is None:
            continue

        value = coerce_value(column, draft[name])
        if column.enum_values and value is not None:
            matched = match_enum_value(column, value)
            if matched is None:
                continue
            value = matched
        output[name] = value
    return output


# ============================================================================
# Record Engine
# ============================================================================


class RecordEngine:
    """List/get/create/update/delete over any configured entity.

    Args:
        registry: Module registry resolving (module, table) pairs.
        introspector: Schema introspector (owns the schema cache).
    """

    def __init__(self, registry: ModuleRegistry, introspector: SchemaIntrospector) -> None:
        self._registry = registry
        self._introspector = introspector

    @property
    def registry(self) -> ModuleRegistry:
        return self._registry

    @property
    def introspector(self) -> SchemaIntrospector:
        return self._introspector

    async def get_entity_meta(
        self, conn: AsyncConnection, module_key: str | None, table: str | None
    ) -> EntityMeta | None:
        """Resolve module, entity and schema, or ``None`` if any is missing."""
        module = self._registry.get_module_by_key(module_key)
        if module is None:
            return None
        entity = self._registry.get_entity_by_table(module.module_key, table)
        if entity is None:
            return None
        schema = await self._introspector.get_schema(conn, table)
        if schema is None:
            return None
        return EntityMeta(module=module, entity=entity, table_schema=schema)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_records(
        self,
        conn: AsyncConnection,
        module_key: str | None,
        table: str | None,
        farm_id: Any,
        query: Mapping[str, Any] | None = None,
    ) -> EngineResult | None:
        """Return one page of rows.

        Query keys: ``page``, ``page_size``/``pageSize`` (default 20, clamped
        to [1, 1000]), ``search``, ``sort_by``/``sortBy``,
        ``sort_dir``/``sortDir`` (default ``DESC``) and any number of
        ``filter_<column>`` equality filters.
        """
        meta = await self.get_entity_meta(conn, module_key, table)
        if meta is None:
            return None

        schema = meta.table_schema
        query = query or {}

        page = max(1, to_int(query.get("page"), 1))
        raw_size = query.get("page_size", query.get("pageSize"))
        page_size = min(MAX_PAGE_SIZE, max(1, to_int(raw_size, DEFAULT_PAGE_SIZE)))

        params: dict[str, Any] = {}
        clauses = _tenancy_clause(schema, farm_id, params)
        search = _search_clause(schema, query.get("search"), params)
        if search:
            clauses.append(search)
        clauses.extend(_filter_clauses(schema, query, params))
        where_sql = _where_sql(clauses)

        default_sort = schema.primary_key or schema.columns[0].name
        requested = str(query.get("sort_by") or query.get("sortBy") or "")
        sort_by = requested if schema.has_column(requested) else default_sort
        raw_dir = str(query.get("sort_dir") or query.get("sortDir") or "DESC")
        sort_dir = "ASC" if raw_dir.upper() == "ASC" else "DESC"

        table_sql = sanitize_identifier(schema.table)

        count_result = await conn.execute(
            text(f"SELECT COUNT(*) AS total_count FROM {table_sql}{where_sql}"),
            params,
        )
        total_count = to_int(count_result.scalar_one(), 0)

        page_params = {**params, "limit": page_size, "offset": (page - 1) * page_size}
        result = await conn.execute(
            text(
                f"SELECT {_columns_sql(schema)} FROM {table_sql}{where_sql}"
                f" ORDER BY {sanitize_identifier(sort_by)} {sort_dir}"
                f" LIMIT :limit OFFSET :offset"
            ),
            page_params,
        )
        col_names = list(result.keys())
        rows = [serialize_row(dict(zip(col_names, row))) for row in result.fetchall()]

        return EngineResult(
            data={
                "module_key": meta.module.module_key,
                "table": schema.table,
                "primary_key": schema.primary_key,
                "page": page,
                "page_size": page_size,
                "total_count": total_count,
                "total_pages": max(1, math.ceil(total_count / page_size)),
                "rows": rows,
            }
        )

    async def get_record_by_id(
        self,
        conn: AsyncConnection,
        module_key: str | None,
        table: str | None,
        farm_id: Any,
        record_id: Any,
    ) -> EngineResult | None:
        """Return ``{module_key, table, primary_key, record}``.

        An absent row is ``record = None``, not an error.  Keyless tables
        fail with a VALIDATION result.
        """
        meta = await self.get_entity_meta(conn, module_key, table)
        if meta is None:
            return None
        if not meta.table_schema.primary_key:
            return EngineResult.failure(ErrorKind.VALIDATION, NO_PRIMARY_KEY)

        record = await self._fetch_record(conn, meta.table_schema, farm_id, record_id)
        return EngineResult(
            data={
                "module_key": meta.module.module_key,
                "table": meta.table_schema.table,
                "primary_key": meta.table_schema.primary_key,
                "record": record,
            }
        )

    async def _fetch_record(
        self,
        conn: AsyncConnection,
        schema: EntitySchema,
        farm_id: Any,
        record_id: Any,
    ) -> dict[str, Any] | None:
        params: dict[str, Any] = {"record_id": _coerce_record_id(schema, record_id)}
        clauses = [f"{sanitize_identifier(schema.primary_key or '')} = :record_id"]
        clauses.extend(_tenancy_clause(schema, farm_id, params))

        result = await conn.execute(
            text(
                f"SELECT {_columns_sql(schema)} FROM {sanitize_identifier(schema.table)}"
                f"{_where_sql(clauses)} LIMIT 1"
            ),
            params,
        )
        return _returned_row(result)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_record(
        self,
        conn: AsyncConnection,
        module_key: str | None,
        table: str | None,
        farm_id: Any,
        user_id: Any,
        payload: Mapping[str, Any] | None,
    ) -> EngineResult | None:
        """Insert one row and return it (via ``RETURNING``), plus ``inserted_id``.

        ``farm_id`` is always the caller's farm, whatever the payload says.
        """
        meta = await self.get_entity_meta(conn, module_key, table)
        if meta is None:
            return None

        schema = meta.table_schema
        if not _caller_fields(schema, payload, "create"):
            return EngineResult.failure(ErrorKind.VALIDATION, NO_FIELDS_CREATE)

        draft = apply_actor_defaults(schema, payload, user_id, farm_id, "create")
        values = sanitize_payload(schema, draft, "create")

        columns_sql = ", ".join(sanitize_identifier(name) for name in values)
        placeholders = ", ".join(f":v_{name}" for name in values)
        params = {f"v_{name}": value for name, value in values.items()}

        # The row comes back from the INSERT itself; nothing runs after commit
        result = await conn.execute(
            text(
                f"INSERT INTO {sanitize_identifier(schema.table)} ({columns_sql})"
                f" VALUES ({placeholders}) RETURNING {_columns_sql(schema)}"
            ),
            params,
        )
        record = _returned_row(result)
        await conn.commit()

        inserted_id = record.get(schema.primary_key) if record and schema.primary_key else None
        logger.debug(f"Inserted into {schema.table}: id={inserted_id}")

        return EngineResult(
            data={
                "module_key": meta.module.module_key,
                "table": schema.table,
                "primary_key": schema.primary_key,
                "record": record,
                "inserted_id": serialize_value(inserted_id),
            }
        )

    async def update_record(
        self,
        conn: AsyncConnection,
        module_key: str | None,
        table: str | None,
        farm_id: Any,
        user_id: Any,
        record_id: Any,
        payload: Mapping[str, Any] | None,
    ) -> EngineResult | None:
        """Update one tenant-scoped row; the primary key is never written."""
        meta = await self.get_entity_meta(conn, module_key, table)
        if meta is None:
            return None

        schema = meta.table_schema
        if not schema.primary_key:
            return EngineResult.failure(ErrorKind.VALIDATION, NO_PRIMARY_KEY)

        if not _caller_fields(schema, payload, "update"):
            return EngineResult.failure(ErrorKind.VALIDATION, NO_FIELDS_UPDATE)

        draft = apply_actor_defaults(schema, payload, user_id, farm_id, "update")
        values = sanitize_payload(schema, draft, "update")

        set_sql = ", ".join(f"{sanitize_identifier(name)} = :v_{name}" for name in values)
        params: dict[str, Any] = {f"v_{name}": value for name, value in values.items()}
        params["record_id"] = _coerce_record_id(schema, record_id)
        clauses = [f"{sanitize_identifier(schema.primary_key)} = :record_id"]
        clauses.extend(_tenancy_clause(schema, farm_id, params))

        result = await conn.execute(
            text(
                f"UPDATE {sanitize_identifier(schema.table)} SET {set_sql}"
                f"{_where_sql(clauses)} RETURNING {_columns_sql(schema)}"
            ),
            params,
        )
        record = _returned_row(result)
        if record is None:
            await conn.rollback()
            return EngineResult.failure(ErrorKind.NOT_FOUND, NO_MATCH_UPDATE)
        await conn.commit()

        return EngineResult(
            data={
                "module_key": meta.module.module_key,
                "table": schema.table,
                "primary_key": schema.primary_key,
                "record": record,
                "updated_id": serialize_value(params["record_id"]),
            }
        )

    async def delete_record(
        self,
        conn: AsyncConnection,
        module_key: str | None,
        table: str | None,
        farm_id: Any,
        record_id: Any,
    ) -> EngineResult | None:
        """Delete at most one tenant-scoped row.

        ``affected_rows == 0`` is reported, not treated as an error.
        """
        meta = await self.get_entity_meta(conn, module_key, table)
        if meta is None:
            return None

        schema = meta.table_schema
        if not schema.primary_key:
            return EngineResult.failure(ErrorKind.VALIDATION, NO_PRIMARY_KEY)

        params: dict[str, Any] = {"record_id": _coerce_record_id(schema, record_id)}
        clauses = [f"{sanitize_identifier(schema.primary_key)} = :record_id"]
        clauses.extend(_tenancy_clause(schema, farm_id, params))
        table_sql = sanitize_identifier(schema.table)

        # PostgreSQL has no DELETE ... LIMIT
        result = await conn.execute(
            text(
                f"DELETE FROM {table_sql} WHERE ctid IN"
                f" (SELECT ctid FROM {table_sql}{_where_sql(clauses)} LIMIT 1)"
            ),
            params,
        )
        affected = result.rowcount
        await conn.commit()

        return EngineResult(
            data={
                "module_key": meta.module.module_key,
                "table": schema.table,
                "deleted_id": serialize_value(params["record_id"]),
                "affected_rows": max(0, affected),
            }
        )

    # ------------------------------------------------------------------
    # Schema Exposure
    # ------------------------------------------------------------------

    async def get_entity_schema(
        self, conn: AsyncConnection, module_key: str | None, table: str | None
    ) -> EntitySchemaView | None:
        """Return the entity schema safe to expose to clients."""
        meta = await self.get_entity_meta(conn, module_key, table)
        if meta is None:
            return None

        schema = meta.table_schema
        return EntitySchemaView(
            module_key=meta.module.module_key,
            module_name=meta.module.name,
            table=schema.table,
            entity_label=meta.entity.label,
            primary_key=schema.primary_key,
            has_farm_id=schema.has_farm_id,
            fields=[
                FieldDescriptor(
                    name=c.name,
                    field_type=c.field_type,
                    data_type=c.data_type,
                    column_type=c.column_type,
                    nullable=c.nullable,
                    is_primary=c.is_primary,
                    read_only=c.read_only,
                    enum_values=list(c.enum_values),
                )
                for c in schema.columns
                if c.name not in SECRET_COLUMNS
            ],
        )
