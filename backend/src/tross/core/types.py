"""Field type registry with storage and query defaults."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldType:
    name: str
    storage_type: str  # PostgreSQL column type
    text_like: bool = False  # may be used with ILIKE search
    json: bool = False  # serialized with json.dumps before binding
    integer: bool = False  # primary keys of this type are coerced to int


# Built-in field types
FIELD_TYPES: dict[str, FieldType] = {
    "string": FieldType("string", "VARCHAR(255)", text_like=True),
    "text": FieldType("text", "TEXT", text_like=True),
    "email": FieldType("email", "VARCHAR(255)", text_like=True),
    "phone": FieldType("phone", "VARCHAR(50)", text_like=True),
    "enum": FieldType("enum", "VARCHAR(50)", text_like=True),
    "uuid": FieldType("uuid", "UUID"),
    "integer": FieldType("integer", "INTEGER", integer=True),
    "number": FieldType("number", "NUMERIC"),
    "decimal": FieldType("decimal", "NUMERIC(12, 2)"),
    "currency": FieldType("currency", "NUMERIC(12, 2)"),
    "boolean": FieldType("boolean", "BOOLEAN"),
    "date": FieldType("date", "DATE"),
    "timestamp": FieldType("timestamp", "TIMESTAMPTZ"),
    "foreignKey": FieldType("foreignKey", "INTEGER", integer=True),
    "json": FieldType("json", "JSON", json=True),
    "jsonb": FieldType("jsonb", "JSONB", json=True),
    "array": FieldType("array", "TEXT[]"),
}

SUPPORTED_FIELD_TYPES = frozenset(FIELD_TYPES)


def get_field_type(type_name: str) -> FieldType:
    """Get field type definition.

    Raises:
        KeyError: If the type is not in the catalogue
    """
    return FIELD_TYPES[type_name]


def is_supported_type(type_name: str) -> bool:
    return type_name in FIELD_TYPES
