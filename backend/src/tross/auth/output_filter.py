"""Sensitive field redaction for records leaving the entity layer."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tross.metadata.loader import EntityMetadata


# Stripped from every record regardless of entity configuration.
# An outputFields whitelist cannot bring these back.
ALWAYS_SENSITIVE_FIELDS = frozenset(
    {
        "auth0_id",
        "refresh_token",
        "api_key",
        "api_secret",
        "secret_key",
        "private_key",
        "password",
        "password_hash",
    }
)


def is_sensitive_field(field_name: str, metadata: EntityMetadata | None = None) -> bool:
    if field_name in ALWAYS_SENSITIVE_FIELDS:
        return True
    return metadata is not None and field_name in metadata.sensitive_fields


def filter_output(record: Any, metadata: EntityMetadata | None = None) -> Any:
    """Return a copy of *record* with sensitive fields removed.

    Args:
        record: A row dict. None passes through; a list is filtered element-wise
        metadata: Entity metadata supplying sensitive_fields and outputFields

    Returns:
        A new dict. The input is never mutated.
    """
    if record is None:
        return None
    if isinstance(record, list):
        return filter_output_array(record, metadata)
    if not isinstance(record, Mapping):
        return record

    result = {k: v for k, v in record.items() if not is_sensitive_field(k, metadata)}

    if metadata is not None and metadata.output_fields:
        allowed = set(metadata.output_fields)
        result = {k: v for k, v in result.items() if k in allowed}

    return result


def filter_output_array(records: Any, metadata: EntityMetadata | None = None) -> Any:
    """Filter every record in *records*; a non-list falls back to filter_output."""
    if not isinstance(records, list):
        return filter_output(records, metadata)
    return [filter_output(r, metadata) for r in records]
