"""Pydantic models for introspected entity schemas.

This module contains schema-domain models:
- Introspection models: ColumnMeta, EntitySchema
- Network-safe exposure models: FieldDescriptor, EntitySchemaView

Schemas are data, not generated types: any allow-listed table works as
long as the catalog can describe it.
"""

from typing import Literal

from pydantic import BaseModel, Field

FieldType = Literal["number", "decimal", "date", "datetime", "text", "json", "string"]


# ============================================================================
# Schema Introspection Models
# ============================================================================


class ColumnMeta(BaseModel):
    """Introspected metadata for one column.

    Example:
        >>> col = ColumnMeta(name="title", data_type="varchar", column_type="varchar")
        >>> col.field_type
        'string'
    """

    name: str
    data_type: str
    column_type: str = ""
    field_type: FieldType = "string"
    nullable: bool = True
    default: str | None = None
    is_primary: bool = False
    is_auto_increment: bool = False
    read_only: bool = False
    enum_values: list[str] = Field(default_factory=list)


class EntitySchema(BaseModel):
    """Derived, cached metadata for one table."""

    table: str
    primary_key: str | None = None
    columns: list[ColumnMeta] = Field(default_factory=list)
    has_farm_id: bool = False
    readable_columns: list[str] = Field(default_factory=list)
    writable_columns: list[str] = Field(default_factory=list)

    def column(self, name: str) -> ColumnMeta | None:
        """Look up a column by exact name."""
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def has_column(self, name: str) -> bool:
        return self.column(name) is not None


# ============================================================================
# Exposure Models
# ============================================================================


class FieldDescriptor(BaseModel):
    """One column as exposed over a network boundary."""

    name: str
    field_type: FieldType
    data_type: str
    column_type: str
    nullable: bool
    is_primary: bool
    read_only: bool
    enum_values: list[str] = Field(default_factory=list)


class EntitySchemaView(BaseModel):
    """Entity schema safe to return to clients (secret columns removed)."""

    module_key: str
    module_name: str
    table: str
    entity_label: str
    primary_key: str | None = None
    has_farm_id: bool = False
    fields: list[FieldDescriptor] = Field(default_factory=list)
