"""Entity schema introspection and input sanitization.

Provides live catalog introspection (``SchemaIntrospector``), the
injectable per-table ``SchemaCache``, and the identifier/value sanitizer
used by the record engine.

Usage:
    from farmsync.schema import SchemaIntrospector, SchemaCache
    from farmsync.schema import sanitize_identifier, coerce_value
"""

from farmsync.schema.introspector import (
    SchemaCache,
    SchemaIntrospector,
    build_entity_schema,
    parse_enum_values,
    to_field_type,
)
from farmsync.schema.models import (
    ColumnMeta,
    EntitySchema,
    EntitySchemaView,
    FieldDescriptor,
    FieldType,
)
from farmsync.schema.sanitize import (
    blank_value_policy,
    coerce_value,
    match_enum_value,
    sanitize_identifier,
    to_date_input,
    to_decimal,
    to_int,
)

__all__ = [
    "SchemaCache",
    "SchemaIntrospector",
    "build_entity_schema",
    "parse_enum_values",
    "to_field_type",
    "ColumnMeta",
    "EntitySchema",
    "EntitySchemaView",
    "FieldDescriptor",
    "FieldType",
    "blank_value_policy",
    "coerce_value",
    "match_enum_value",
    "sanitize_identifier",
    "to_date_input",
    "to_decimal",
    "to_int",
]
