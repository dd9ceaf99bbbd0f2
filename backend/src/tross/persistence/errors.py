"""Translate PostgreSQL constraint errors into the entity error taxonomy.

Database constraints stay the source of truth for integrity; this
module only maps their SQLSTATE codes onto ConstraintError (409) or
ValidationError (400) with a readable message.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from tross.core.errors import ConstraintError, EntityServiceError, ValidationError

if TYPE_CHECKING:
    from tross.metadata.loader import EntityMetadata

logger = logging.getLogger(__name__)

# https://www.postgresql.org/docs/current/errcodes-appendix.html
FOREIGN_KEY_VIOLATION = "23503"
UNIQUE_VIOLATION = "23505"
CHECK_VIOLATION = "23514"
NOT_NULL_VIOLATION = "23502"
NUMERIC_VALUE_OUT_OF_RANGE = "22003"
INVALID_DATETIME_FORMAT = "22007"
DATETIME_FIELD_OVERFLOW = "22008"
INVALID_TEXT_REPRESENTATION = "22P02"

_KEY_DETAIL = re.compile(r"Key \(([^)]+)\)")
_UNIQUE_CONSTRAINT = re.compile(r'"[^"]*_([^_"]+)_key"')


def _display_name(field: str | None) -> str:
    if not field:
        return "Value"
    return " ".join(part.capitalize() for part in field.split("_"))


def extract_field(exc: Any) -> str | None:
    """Pull the offending column out of a psycopg error's diagnostics."""
    diag = getattr(exc, "diag", None)
    column = getattr(diag, "column_name", None)
    if column:
        return column

    detail = getattr(diag, "message_detail", None) or ""
    match = _KEY_DETAIL.search(detail)
    if match:
        return match.group(1)

    match = _UNIQUE_CONSTRAINT.search(str(exc))
    if match:
        return match.group(1)
    return None


def translate_db_error(exc: BaseException, metadata: EntityMetadata | None = None) -> BaseException:
    """Map a driver error to an EntityServiceError when its SQLSTATE is known.

    Returns:
        The translated error, or *exc* unchanged when it is not a
        recognised constraint or data error
    """
    if isinstance(exc, EntityServiceError):
        return exc

    sqlstate = getattr(exc, "sqlstate", None)
    if not sqlstate:
        return exc

    entity = metadata.entity_key if metadata else "record"
    field = extract_field(exc)
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None)

    if sqlstate == UNIQUE_VIOLATION:
        if field is None and metadata is not None:
            field = metadata.identity_field
        logger.warning("Unique violation on %s (field=%s)", entity, field)
        return ConstraintError(f"{_display_name(field)} already exists", constraint, field)

    if sqlstate == FOREIGN_KEY_VIOLATION:
        logger.warning("Foreign key violation on %s (field=%s)", entity, field)
        return ConstraintError(
            f"Referenced {_display_name(field)} does not exist or is still in use",
            constraint,
            field,
        )

    if sqlstate == CHECK_VIOLATION:
        return ValidationError(
            f"Invalid value for {field or 'field'}. Please check allowed values.", field
        )

    if sqlstate == NOT_NULL_VIOLATION:
        return ValidationError(f"{field or 'Required field'} cannot be empty", field)

    if sqlstate in (INVALID_DATETIME_FORMAT, DATETIME_FIELD_OVERFLOW):
        return ValidationError("Invalid date format. Please use YYYY-MM-DD format.")

    if sqlstate == NUMERIC_VALUE_OUT_OF_RANGE:
        return ValidationError("Numeric value is out of allowed range")

    if sqlstate == INVALID_TEXT_REPRESENTATION:
        return ValidationError("Invalid data format provided")

    return exc
