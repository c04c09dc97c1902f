"""Tests for identifier validation and value coercion.

Verifies that:
- ``sanitize_identifier`` quotes safe names and rejects everything else
- numeric, date, datetime and json coercion follow the column's field type
- blank strings become ``None`` only for nullable columns
- enum matching is case-insensitive and returns the canonical value
"""

from datetime import date, datetime

import pytest

from farmsync.errors import InvalidIdentifierError
from farmsync.schema.models import ColumnMeta
from farmsync.schema.sanitize import (
    coerce_value,
    match_enum_value,
    sanitize_identifier,
    to_date_input,
    to_decimal,
    to_int,
)


def _column(field_type: str, data_type: str = "", nullable: bool = True, **kw) -> ColumnMeta:
    return ColumnMeta(
        name="col",
        data_type=data_type or field_type,
        field_type=field_type,
        nullable=nullable,
        **kw,
    )


# ============================================================================
# Identifiers
# ============================================================================


class TestSanitizeIdentifier:
    """Only [A-Za-z0-9_] names are accepted."""

    @pytest.mark.parametrize("name", ["tasks", "farm_id", "Col_2", "_x"])
    def test_valid_names_are_quoted(self, name: str) -> None:
        assert sanitize_identifier(name) == f'"{name}"'

    @pytest.mark.parametrize(
        "name",
        ["", "tasks;drop", "farm-id", "a b", 'x"y', "tasks.id", "ñame"],
    )
    def test_invalid_names_raise(self, name: str) -> None:
        with pytest.raises(InvalidIdentifierError):
            sanitize_identifier(name)

    def test_invalid_identifier_is_value_error(self) -> None:
        """Callers catching ValueError also catch identifier failures."""
        with pytest.raises(ValueError):
            sanitize_identifier("1; DELETE FROM tasks")


# ============================================================================
# Scalar Coercion Helpers
# ============================================================================


class TestToInt:
    def test_truncates_floats_and_numeric_strings(self) -> None:
        assert to_int(3.9) == 3
        assert to_int("42") == 42
        assert to_int(" 7.8 ") == 7

    def test_bool_becomes_int(self) -> None:
        assert to_int(True) == 1
        assert to_int(False) == 0

    def test_non_numeric_uses_fallback(self) -> None:
        assert to_int("abc", 5) == 5
        assert to_int(None, 9) == 9
        assert to_int(float("nan"), 2) == 2


class TestToDecimal:
    def test_parses_strings(self) -> None:
        assert to_decimal("12.5") == 12.5

    def test_non_finite_uses_fallback(self) -> None:
        assert to_decimal("inf", 1.0) == 1.0
        assert to_decimal("n/a") == 0.0


class TestToDateInput:
    def test_truncates_to_date_part(self) -> None:
        assert to_date_input("2026-03-01T10:00:00") == "2026-03-01"
        assert to_date_input(datetime(2026, 3, 1, 10, 0)) == "2026-03-01"
        assert to_date_input(date(2026, 3, 1)) == "2026-03-01"

    def test_blank_is_none(self) -> None:
        assert to_date_input("  ") is None
        assert to_date_input(None) is None


# ============================================================================
# Column Coercion
# ============================================================================


class TestCoerceValue:
    """coerce_value dispatches on the column's semantic field type."""

    def test_none_passes_through(self) -> None:
        assert coerce_value(_column("number", nullable=False), None) is None

    def test_blank_string_on_nullable_column_is_none(self) -> None:
        assert coerce_value(_column("number", "int"), "") is None
        assert coerce_value(_column("string", "varchar"), "   ") is None

    def test_blank_string_on_required_column_is_passed_through(self) -> None:
        """The store decides whether an empty value is acceptable."""
        assert coerce_value(_column("string", "varchar", nullable=False), "") == ""

    def test_number(self) -> None:
        assert coerce_value(_column("number", "int"), "12") == 12
        assert coerce_value(_column("number", "int"), "abc") == 0

    def test_bool_into_narrow_int(self) -> None:
        assert coerce_value(_column("number", "smallint"), True) == 1
        assert coerce_value(_column("number", "tinyint"), False) == 0

    def test_decimal(self) -> None:
        assert coerce_value(_column("decimal", "numeric"), "3.25") == 3.25

    def test_date(self) -> None:
        assert coerce_value(_column("date"), "2026-04-02 00:00:00") == "2026-04-02"

    def test_datetime(self) -> None:
        moment = datetime(2026, 4, 2, 6, 30)
        assert coerce_value(_column("datetime", "timestamp"), moment) == "2026-04-02T06:30:00"
        assert coerce_value(_column("datetime", "timestamp"), "2026-04-02 06:30") == "2026-04-02 06:30"

    def test_json_serializes_structures(self) -> None:
        column = _column("json", "jsonb")
        assert coerce_value(column, {"a": [1, 2]}) == '{"a": [1, 2]}'
        assert coerce_value(column, '{"raw": true}') == '{"raw": true}'

    def test_everything_else_is_string(self) -> None:
        assert coerce_value(_column("string", "varchar"), 15) == "15"
        assert coerce_value(_column("text"), True) == "True"


class TestMatchEnumValue:
    def test_case_insensitive_match_returns_canonical(self) -> None:
        column = _column("string", "enum", enum_values=["OPEN", "IN_PROGRESS", "DONE"])
        assert match_enum_value(column, "in_progress") == "IN_PROGRESS"

    def test_no_match_is_none(self) -> None:
        column = _column("string", "enum", enum_values=["OPEN", "DONE"])
        assert match_enum_value(column, "ARCHIVED") is None
