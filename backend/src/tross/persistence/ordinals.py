"""Ordinal defaults for ordered columns.

Returns the next value for columns such as ``roles.priority``: the
configured default on an empty table, otherwise ``MAX(column) + 1``.
Table and column names are checked against a fixed allow-list before
any SQL is built.
"""

from __future__ import annotations

import logging
from typing import Any

from tross.core.errors import ValidationError
from tross.persistence.client import DatabaseClient

logger = logging.getLogger(__name__)

ALLOWED_TABLES = frozenset({"roles", "users", "work_orders", "invoices"})
ALLOWED_FIELDS = frozenset({"priority", "sequence_number", "sort_order", "display_order"})


async def get_next_ordinal_value(
    client: DatabaseClient,
    table: str,
    field: str,
    default: int,
) -> int:
    """Get the next ordinal value for *table*.*field*.

    Args:
        client: Database client (transactional when called inside a write)
        table: Table name, must be in ALLOWED_TABLES
        field: Column name, must be in ALLOWED_FIELDS
        default: Value returned when the table has no rows

    Raises:
        ValidationError: If the table or field is not allow-listed
    """
    if table not in ALLOWED_TABLES:
        raise ValidationError(f"Invalid table for ordinal value: {table}")
    if field not in ALLOWED_FIELDS:
        raise ValidationError(f"Invalid field for ordinal value: {field}")

    sql = f'SELECT COALESCE(MAX("{field}"), %s - 1) + 1 AS next_value FROM "{table}"'
    try:
        result = await client.query(sql, [default])
    except Exception as e:
        logger.error(
            "get_next_ordinal_value failed for %s.%s: %s", table, field, e
        )
        raise

    row: dict[str, Any] | None = result.first
    if row is None or row.get("next_value") is None:
        return default
    return int(row["next_value"])
