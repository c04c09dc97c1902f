"""Identifier validation and value coercion.

Every dynamic table or column name passes through ``sanitize_identifier``
before it is concatenated into SQL; every value passes through
``coerce_value`` before it is bound as a parameter.

Usage:
    from farmsync.schema.sanitize import sanitize_identifier, coerce_value

    sql = f"SELECT * FROM {sanitize_identifier(table)}"
    params = {"v_qty": coerce_value(column, raw)}
"""

import json
import math
import re
from datetime import date, datetime
from typing import Any

from farmsync.errors import InvalidIdentifierError
from farmsync.schema.models import ColumnMeta

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")

# Narrow integer types that accept boolean input
BOOLEAN_INT_TYPES: frozenset[str] = frozenset({"tinyint", "smallint"})


def sanitize_identifier(name: str) -> str:
    """Validate *name* and return it double-quoted for PostgreSQL.

    Raises:
        InvalidIdentifierError: If *name* is empty or contains any character
            outside ``[A-Za-z0-9_]``.

    Example:
        >>> sanitize_identifier("farm_id")
        '"farm_id"'
    """
    raw = str(name or "")
    if not _IDENTIFIER_RE.match(raw):
        raise InvalidIdentifierError(f"Invalid identifier: {raw!r}")
    return f'"{raw}"'


def to_int(value: Any, fallback: int = 0) -> int:
    """Truncate *value* to an integer, or return *fallback* if not numeric."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else fallback
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        pass
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return int(number) if math.isfinite(number) else fallback


def to_decimal(value: Any, fallback: float = 0.0) -> float:
    """Parse *value* as a float, or return *fallback* if not numeric."""
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except (TypeError, ValueError):
            return fallback
    return number if math.isfinite(number) else fallback


def to_date_input(value: Any) -> str | None:
    """Return the ``YYYY-MM-DD`` part of *value*, or ``None`` when blank."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    raw = str(value if value is not None else "").strip()
    if not raw:
        return None
    return raw[:10]


def blank_value_policy(column: ColumnMeta, raw: str) -> str | None:
    """Decide what a blank string becomes for *column*.

    Nullable columns store ``None``.  Non-nullable columns receive the raw
    value unchanged and the store decides whether to accept it.
    """
    return None if column.nullable else raw


def coerce_value(column: ColumnMeta, raw: Any) -> Any:
    """Coerce *raw* to the value bound for *column*.

    Callers drop absent keys before calling; ``None`` passes through.
    """
    if raw is None:
        return None

    if isinstance(raw, str) and raw.strip() == "":
        return blank_value_policy(column, raw)

    match column.field_type:
        case "number":
            if isinstance(raw, bool) and column.data_type in BOOLEAN_INT_TYPES:
                return 1 if raw else 0
            return to_int(raw, 0)
        case "decimal":
            return to_decimal(raw, 0.0)
        case "date":
            return to_date_input(raw)
        case "datetime":
            if isinstance(raw, datetime):
                return raw.isoformat()
            return str(raw)
        case "json":
            if isinstance(raw, str):
                return raw
            return json.dumps(raw, default=str)
        case _:
            return str(raw)


def match_enum_value(column: ColumnMeta, value: Any) -> str | None:
    """Case-insensitively match *value* against the column's allowed set.

    Returns the canonical allowed value, or ``None`` when nothing matches.
    """
    normalized = str(value).upper()
    for allowed in column.enum_values:
        if allowed.upper() == normalized:
            return allowed
    return None
