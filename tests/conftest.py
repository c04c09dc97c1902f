"""Shared fixtures: in-memory primary store fake and temp local store.

``FakeConnection`` stands in for ``sqlalchemy.ext.asyncio.AsyncConnection``.
It records every statement and interprets the small SQL dialect the
record engine emits (catalog lookup, COUNT, SELECT, INSERT and UPDATE with
RETURNING, ctid DELETE) over plain dict rows.
"""

import re
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from farmsync.cache.outbox import Outbox
from farmsync.cache.snapshots import LocalCache
from farmsync.cache.store import LocalStore
from farmsync.config.modules import ModuleRegistry
from farmsync.records.engine import RecordEngine
from farmsync.schema.introspector import SchemaIntrospector


# ============================================================================
# Catalog helpers
# ============================================================================


def catalog_row(
    name: str,
    data_type: str,
    *,
    pk: bool = False,
    nullable: bool = True,
    auto: bool = False,
    column_type: str | None = None,
    default: str | None = None,
) -> dict[str, Any]:
    """One row shaped like the introspector's catalog query output."""
    return {
        "column_name": name,
        "data_type": data_type,
        "column_type": column_type if column_type is not None else data_type,
        "is_nullable": "YES" if nullable else "NO",
        "column_key": "PRI" if pk else "",
        "column_default": default,
        "extra": "auto_increment" if auto else "",
    }


TASKS_CATALOG = [
    catalog_row("task_id", "integer", pk=True, nullable=False, auto=True,
                default="nextval('tasks_task_id_seq'::regclass)"),
    catalog_row("farm_id", "integer", nullable=False),
    catalog_row("title", "character varying", nullable=False),
    catalog_row("status", "USER-DEFINED",
                column_type="enum('OPEN','IN_PROGRESS','DONE')"),
    catalog_row("priority", "smallint"),
    catalog_row("due_date", "date"),
    catalog_row("cost", "numeric"),
    catalog_row("notes", "text"),
    catalog_row("created_by", "integer"),
    catalog_row("updated_by", "integer"),
    catalog_row("assigned_by", "integer"),
    catalog_row("source_channel", "character varying"),
    catalog_row("created_at", "timestamp with time zone", nullable=False,
                default="now()"),
]

FARM_USERS_CATALOG = [
    catalog_row("farm_user_id", "integer", pk=True, nullable=False, auto=True),
    catalog_row("farm_id", "integer", nullable=False),
    catalog_row("email", "character varying", nullable=False),
    catalog_row("password_hash", "character varying"),
]

ORGANIZATIONS_CATALOG = [
    catalog_row("organization_id", "integer", pk=True, nullable=False, auto=True),
    catalog_row("name", "character varying", nullable=False),
]

AUDIT_LOG_CATALOG = [
    catalog_row("farm_id", "integer", nullable=False),
    catalog_row("event", "text"),
]


def task_row(task_id: int, farm_id: int, title: str, **extra: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "task_id": task_id,
        "farm_id": farm_id,
        "title": title,
        "status": "OPEN",
        "priority": 1,
        "due_date": date(2026, 3, 1),
        "cost": Decimal("12.50"),
        "notes": None,
        "created_by": 1,
        "updated_by": 1,
        "assigned_by": None,
        "source_channel": "API",
        "created_at": datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc),
    }
    row.update(extra)
    return row


# ============================================================================
# Fake primary store
# ============================================================================


class FakeTable:
    def __init__(self, catalog: list[dict[str, Any]], rows: list[dict[str, Any]] | None = None) -> None:
        self.catalog = catalog
        self.rows = rows or []
        primary = [r["column_name"] for r in catalog if r["column_key"] == "PRI"]
        self.primary_key = primary[0] if len(primary) == 1 else None


class FakeMappings:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self._rows = rows

    def all(self) -> list[dict[str, Any]]:
        return list(self._rows)


class FakeResult:
    def __init__(
        self,
        columns: list[str] | None = None,
        rows: list[tuple] | None = None,
        scalar: Any = None,
        rowcount: int = 0,
        mapping_rows: list[dict[str, Any]] | None = None,
    ) -> None:
        self._columns = columns or []
        self._rows = rows or []
        self._scalar = scalar
        self.rowcount = rowcount
        self._mapping_rows = mapping_rows or []

    def keys(self) -> list[str]:
        return list(self._columns)

    def fetchall(self) -> list[tuple]:
        return list(self._rows)

    def fetchone(self) -> tuple | None:
        return self._rows[0] if self._rows else None

    def scalar(self) -> Any:
        return self._scalar

    def scalar_one(self) -> Any:
        return self._scalar

    def scalar_one_or_none(self) -> Any:
        return self._scalar

    def mappings(self) -> FakeMappings:
        return FakeMappings(self._mapping_rows)


_EQ_RE = re.compile(r'"(\w+)" = :(\w+)')
_SEARCH_RE = re.compile(r'CAST\("(\w+)" AS TEXT\) ILIKE :search')
_ORDER_RE = re.compile(r'ORDER BY "(\w+)" (ASC|DESC)')


def _matches(row: dict[str, Any], where: str, params: dict[str, Any]) -> bool:
    for column, param in _EQ_RE.findall(where):
        if str(row.get(column)) != str(params[param]):
            return False
    search_columns = _SEARCH_RE.findall(where)
    if search_columns:
        term = str(params["search"]).strip("%").lower()
        if not any(term in str(row.get(c) or "").lower() for c in search_columns):
            return False
    return True


def _where(sql: str) -> str:
    if " WHERE " not in sql:
        return ""
    part = sql.rsplit(" WHERE ", 1)[1]
    for stop in (" ORDER BY ", " LIMIT ", " RETURNING "):
        part = part.split(stop, 1)[0]
    return part


def _returning(sql: str, rows: list[dict[str, Any]]) -> FakeResult:
    if " RETURNING " not in sql:
        return FakeResult(rowcount=len(rows))
    columns = re.findall(r'"(\w+)"', sql.rsplit(" RETURNING ", 1)[1])
    return FakeResult(
        columns=columns,
        rows=[tuple(r.get(c) for c in columns) for r in rows],
        rowcount=len(rows),
    )


class FakeConnection:
    """Records statements and interprets engine SQL over in-memory tables."""

    def __init__(self, tables: dict[str, FakeTable] | None = None) -> None:
        self.tables: dict[str, FakeTable] = tables or {}
        self.statements: list[tuple[str, dict[str, Any]]] = []
        self.commits = 0
        self.rollbacks = 0
        self._failures: list[tuple[str, Exception]] = []

    def fail_on(self, fragment: str, error: Exception) -> None:
        """Raise *error* for every statement containing *fragment*."""
        self._failures.append((fragment, error))

    def clear_failures(self) -> None:
        self._failures.clear()

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1

    async def execute(self, statement: Any, params: dict[str, Any] | None = None) -> FakeResult:
        sql = " ".join(str(statement).split())
        params = dict(params or {})
        self.statements.append((sql, params))

        for fragment, error in self._failures:
            if fragment in sql:
                raise error

        if "information_schema.columns" in sql:
            table = self.tables.get(params["table_name"])
            return FakeResult(mapping_rows=table.catalog if table else [])
        if "information_schema.tables" in sql:
            return FakeResult(columns=["table_name"], rows=[(name,) for name in self.tables])
        if sql == "SELECT 1":
            return FakeResult(scalar=1)
        if sql.startswith("SELECT COUNT(*)"):
            return self._count(sql, params)
        if sql.startswith("SELECT "):
            return self._select(sql, params)
        if sql.startswith("INSERT INTO "):
            return self._insert(sql, params)
        if sql.startswith("UPDATE "):
            return self._update(sql, params)
        if sql.startswith("DELETE FROM "):
            return self._delete(sql, params)
        raise AssertionError(f"Unexpected statement: {sql}")

    def _table(self, sql: str, keyword: str) -> FakeTable:
        name = re.search(keyword + r' "(\w+)"', sql).group(1)
        return self.tables[name]

    def _count(self, sql: str, params: dict[str, Any]) -> FakeResult:
        table = self._table(sql, "FROM")
        where = _where(sql)
        return FakeResult(scalar=sum(1 for r in table.rows if _matches(r, where, params)))

    def _select(self, sql: str, params: dict[str, Any]) -> FakeResult:
        table = self._table(sql, "FROM")
        columns = re.findall(r'"(\w+)"', sql.split(" FROM ", 1)[0])
        where = _where(sql)
        rows = [r for r in table.rows if _matches(r, where, params)]

        order = _ORDER_RE.search(sql)
        if order:
            column, direction = order.groups()
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=direction == "DESC")

        offset = int(params.get("offset", 0))
        limit = int(params["limit"]) if "limit" in params else (1 if sql.endswith("LIMIT 1") else len(rows))
        rows = rows[offset:offset + limit]
        return FakeResult(columns=columns, rows=[tuple(r.get(c) for c in columns) for r in rows])

    def _insert(self, sql: str, params: dict[str, Any]) -> FakeResult:
        table = self._table(sql, "INSERT INTO")
        columns = re.findall(r'"(\w+)"', sql.split(" VALUES ", 1)[0])[1:]
        row = {c["column_name"]: None for c in table.catalog}
        row.update({c: params[f"v_{c}"] for c in columns})
        if "created_at" in row and row["created_at"] is None:
            row["created_at"] = datetime(2026, 2, 1, tzinfo=timezone.utc)

        pk = table.primary_key
        if pk and row.get(pk) is None:
            row[pk] = max((int(r[pk]) for r in table.rows), default=0) + 1
        table.rows.append(row)
        return _returning(sql, [row])

    def _update(self, sql: str, params: dict[str, Any]) -> FakeResult:
        table = self._table(sql, "UPDATE")
        set_part = sql.split(" SET ", 1)[1].split(" WHERE ", 1)[0]
        where = _where(sql)
        changed = []
        for row in table.rows:
            if _matches(row, where, params):
                for column, param in _EQ_RE.findall(set_part):
                    row[column] = params[param]
                changed.append(row)
        return _returning(sql, changed)

    def _delete(self, sql: str, params: dict[str, Any]) -> FakeResult:
        table = self._table(sql, "DELETE FROM")
        where = _where(sql)
        for index, row in enumerate(table.rows):
            if _matches(row, where, params):
                del table.rows[index]
                return FakeResult(rowcount=1)
        return FakeResult(rowcount=0)


class FakeStore:
    """``PrimaryStore`` double that hands out one shared ``FakeConnection``."""

    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn
        self.connect_error: Exception | None = None
        self.connect_count = 0
        self.closed = False

    @asynccontextmanager
    async def connect(self):
        self.connect_count += 1
        if self.connect_error is not None:
            raise self.connect_error
        yield self.conn

    async def test_connection(self) -> bool:
        if self.connect_error is not None:
            raise self.connect_error
        return True

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Manually advanced clock in epoch seconds."""

    def __init__(self, start: float = 1_767_225_600.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def tables() -> dict[str, FakeTable]:
    return {
        "tasks": FakeTable(
            TASKS_CATALOG,
            [
                task_row(1, 7, "Clean feeders"),
                task_row(2, 7, "Vaccinate batch B4", status="DONE"),
                task_row(3, 8, "Other farm task"),
            ],
        ),
        "farm_users": FakeTable(
            FARM_USERS_CATALOG,
            [{"farm_user_id": 1, "farm_id": 7, "email": "a@farm.test", "password_hash": "x"}],
        ),
        "organizations": FakeTable(
            ORGANIZATIONS_CATALOG, [{"organization_id": 1, "name": "Co-op"}]
        ),
        "audit_log": FakeTable(AUDIT_LOG_CATALOG, [{"farm_id": 7, "event": "login"}]),
    }


@pytest.fixture
def conn(tables: dict[str, FakeTable]) -> FakeConnection:
    return FakeConnection(tables)


@pytest.fixture
def store(conn: FakeConnection) -> FakeStore:
    return FakeStore(conn)


@pytest.fixture
def registry() -> ModuleRegistry:
    return ModuleRegistry()


@pytest.fixture
def engine(registry: ModuleRegistry) -> RecordEngine:
    return RecordEngine(registry, SchemaIntrospector(registry))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def local_store(tmp_path, clock: FakeClock):
    local = LocalStore(tmp_path / "farmsync_local_cache.sqlite", clock=clock)
    yield local
    local.close()


@pytest.fixture
def cache(local_store: LocalStore) -> LocalCache:
    return LocalCache(local_store)


@pytest.fixture
def outbox(local_store: LocalStore) -> Outbox:
    return Outbox(local_store)
