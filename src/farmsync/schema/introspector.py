"""Entity schema introspection via information_schema.

Discovers column metadata for an allow-listed table from the primary
store's catalog and derives an ``EntitySchema``:
- Column names in declaration order, engine types, nullability, defaults
- Primary key, auto-increment (identity / ``nextval(`` defaults)
- Enumerated values (rendered as ``enum('A','B')`` from ``pg_enum``)
- Semantic field type, read-only flag, tenancy (``farm_id``) flag

Results are cached per table for the lifetime of the ``SchemaCache``;
nothing invalidates them automatically.
"""

from collections.abc import Mapping
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from farmsync.config.modules import ModuleRegistry
from farmsync.schema.models import ColumnMeta, EntitySchema, FieldType

FARM_COLUMN = "farm_id"
SECRET_COLUMNS: frozenset[str] = frozenset({"password_hash"})
TIMESTAMP_COLUMNS: frozenset[str] = frozenset({"created_at", "updated_at"})

CATALOG_QUERY = """
    SELECT
        c.column_name,
        c.data_type,
        CASE
            WHEN c.data_type = 'USER-DEFINED' THEN COALESCE((
                SELECT 'enum(' || string_agg(quote_literal(e.enumlabel), ',' ORDER BY e.enumsortorder) || ')'
                FROM pg_type t
                JOIN pg_enum e ON e.enumtypid = t.oid
                WHERE t.typname = c.udt_name
            ), c.udt_name)
            ELSE c.data_type
        END AS column_type,
        c.is_nullable,
        CASE WHEN pk.column_name IS NOT NULL THEN 'PRI' ELSE '' END AS column_key,
        c.column_default,
        CASE
            WHEN c.is_identity = 'YES'
              OR left(COALESCE(c.column_default, ''), 8) = 'nextval('
            THEN 'auto_increment'
            ELSE ''
        END AS extra
    FROM information_schema.columns c
    LEFT JOIN (
        SELECT kcu.column_name
        FROM information_schema.table_constraints tc
        JOIN information_schema.key_column_usage kcu
            ON tc.constraint_name = kcu.constraint_name
            AND tc.table_schema = kcu.table_schema
            AND tc.table_name = kcu.table_name
        WHERE tc.constraint_type = 'PRIMARY KEY'
          AND tc.table_schema = current_schema()
          AND tc.table_name = :table_name
    ) pk ON pk.column_name = c.column_name
    WHERE c.table_schema = current_schema()
      AND c.table_name = :table_name
    ORDER BY c.ordinal_position
"""

_FIELD_TYPES: dict[str, frozenset[str]] = {
    "number": frozenset({"int", "bigint", "smallint", "mediumint", "tinyint"}),
    "decimal": frozenset({"decimal", "numeric", "double", "float", "real"}),
    "date": frozenset({"date"}),
    "datetime": frozenset({"datetime", "timestamp", "timestamptz"}),
    "text": frozenset({"text", "mediumtext", "longtext"}),
    "json": frozenset({"json", "jsonb"}),
}


def normalize_data_type(data_type: str, column_type: str = "") -> str:
    """Normalize information_schema type names.

    Maps verbose PostgreSQL types to short names; user-defined types whose
    column type renders as ``enum(...)`` become ``enum``.
    """
    if column_type.lower().startswith("enum("):
        return "enum"
    type_map = {
        "character varying": "varchar",
        "character": "char",
        "timestamp with time zone": "timestamptz",
        "timestamp without time zone": "timestamp",
        "time without time zone": "time",
        "double precision": "double",
        "integer": "int",
        "boolean": "bool",
    }
    return type_map.get(data_type.lower(), data_type.lower())


def to_field_type(data_type: str) -> FieldType:
    """Closed mapping from a normalized engine type to a semantic field type."""
    value = (data_type or "").lower()
    for field_type, engine_types in _FIELD_TYPES.items():
        if value in engine_types:
            return field_type  # type: ignore[return-value]
    return "string"


def parse_enum_values(column_type: str | None) -> list[str]:
    """Parse ``enum('A','B','C')`` into ``["A", "B", "C"]``.

    Any other type string yields an empty list.

    Example:
        >>> parse_enum_values("enum('OPEN','DONE')")
        ['OPEN', 'DONE']
    """
    raw = str(column_type or "")
    if not raw.startswith("enum("):
        return []
    inside = raw[5:-1]
    values: list[str] = []
    for part in inside.split(","):
        value = part.strip()
        if value.startswith("'"):
            value = value[1:]
        if value.endswith("'"):
            value = value[:-1]
        value = value.replace("''", "'")
        if value:
            values.append(value)
    return values


def infer_read_only(column: ColumnMeta) -> bool:
    """Auto-increment columns, creation/update timestamps and secrets."""
    if column.is_auto_increment:
        return True
    if column.name in TIMESTAMP_COLUMNS:
        return True
    return column.name in SECRET_COLUMNS


def build_column(row: Mapping[str, Any]) -> ColumnMeta:
    """Build a ``ColumnMeta`` from one catalog row."""
    column_type = str(row.get("column_type") or "")
    data_type = normalize_data_type(str(row.get("data_type") or ""), column_type)
    default = row.get("column_default")

    column = ColumnMeta(
        name=str(row["column_name"]),
        data_type=data_type,
        column_type=column_type,
        field_type=to_field_type(data_type),
        nullable=str(row.get("is_nullable") or "") == "YES",
        default=None if default is None else str(default),
        is_primary=str(row.get("column_key") or "") == "PRI",
        is_auto_increment="auto_increment" in str(row.get("extra") or "").lower(),
        enum_values=parse_enum_values(column_type),
    )
    column.read_only = infer_read_only(column)
    return column


def build_entity_schema(table: str, rows: list[Mapping[str, Any]]) -> EntitySchema:
    """Derive an ``EntitySchema`` from ordered catalog rows.

    The primary key is the single ``PRI`` column; tables without one, or
    with a composite key, get ``primary_key=None``.
    """
    columns = [build_column(row) for row in rows]
    primary = [c.name for c in columns if c.is_primary]

    return EntitySchema(
        table=table,
        primary_key=primary[0] if len(primary) == 1 else None,
        columns=columns,
        has_farm_id=any(c.name == FARM_COLUMN for c in columns),
        readable_columns=[c.name for c in columns if c.name not in SECRET_COLUMNS],
        writable_columns=[c.name for c in columns if not c.read_only],
    )


class SchemaCache:
    """Process-wide table -> ``EntitySchema`` mapping.

    Owned by whoever builds the ``SchemaIntrospector`` so tests can reset it.
    """

    def __init__(self) -> None:
        self._schemas: dict[str, EntitySchema] = {}

    def get(self, table: str) -> EntitySchema | None:
        return self._schemas.get(table)

    def set(self, table: str, schema: EntitySchema) -> None:
        self._schemas[table] = schema

    def clear(self) -> None:
        self._schemas.clear()

    def __contains__(self, table: object) -> bool:
        return table in self._schemas

    def __len__(self) -> int:
        return len(self._schemas)


class SchemaIntrospector:
    """Introspects allow-listed tables of the primary store.

    Usage:
        introspector = SchemaIntrospector(ModuleRegistry())
        async with store.connect() as conn:
            schema = await introspector.get_schema(conn, "tasks")

    Args:
        registry: Module registry providing the table allow-list.
        cache: Optional shared ``SchemaCache`` (a private one is created
            otherwise).
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        cache: SchemaCache | None = None,
    ) -> None:
        self._registry = registry
        self._cache = cache if cache is not None else SchemaCache()

    @property
    def cache(self) -> SchemaCache:
        return self._cache

    async def get_schema(
        self, conn: AsyncConnection, table: str | None
    ) -> EntitySchema | None:
        """Return the cached or freshly introspected schema for *table*.

        Returns ``None`` when the table is blank, not allow-listed, or has no
        columns in the catalog.  Catalog query failures propagate.
        """
        name = (table or "").strip()
        if not name or not self._registry.is_allowed_table(name):
            return None

        cached = self._cache.get(name)
        if cached is not None:
            return cached

        result = await conn.execute(text(CATALOG_QUERY), {"table_name": name})
        rows = result.mappings().all()
        if not rows:
            return None

        schema = build_entity_schema(name, list(rows))
        self._cache.set(name, schema)
        return schema

    def clear_cache(self) -> None:
        """Forget every cached schema (administrative / test use)."""
        self._cache.clear()
