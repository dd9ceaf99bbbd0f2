"""Cascade deletion of dependent rows.

Dependents are deleted one statement at a time, in the order the
entity declares them, on the caller's (transactional) client. Any
failure propagates so the surrounding transaction rolls back as a
whole; partial cascades are never reported as success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from tross.metadata.loader import (
    Dependent,
    EntityMetadata,
    ForeignKeyDependent,
    PolymorphicDependent,
)
from tross.persistence.client import DatabaseClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CascadeDetail:
    table: str
    foreign_key: str
    polymorphic: bool
    deleted: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "foreignKey": self.foreign_key,
            "polymorphic": self.polymorphic,
            "deleted": self.deleted,
        }


@dataclass
class CascadeResult:
    total_deleted: int = 0
    details: list[CascadeDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalDeleted": self.total_deleted,
            "details": [d.to_dict() for d in self.details],
        }


def build_dependent_delete(dependent: Dependent, parent_id: Any) -> tuple[str, list[Any]]:
    """Return the DELETE statement and params for one dependent."""
    if isinstance(dependent, PolymorphicDependent):
        return (
            f'DELETE FROM "{dependent.table}" '
            f'WHERE "{dependent.foreign_key}" = %s AND "{dependent.type_column}" = %s',
            [parent_id, dependent.type_value],
        )
    if isinstance(dependent, ForeignKeyDependent):
        return (
            f'DELETE FROM "{dependent.table}" WHERE "{dependent.foreign_key}" = %s',
            [parent_id],
        )
    raise TypeError(f"Unsupported dependent type: {type(dependent).__name__}")


async def delete_dependents(
    client: DatabaseClient,
    metadata: EntityMetadata,
    parent_id: Any,
) -> CascadeResult:
    """Delete every dependent row of *parent_id*.

    Args:
        client: Client bound to the parent delete's transaction
        metadata: Parent entity metadata
        parent_id: Primary key of the parent row

    Returns:
        CascadeResult with per-dependent counts. No query is issued when
        the entity declares no dependents.
    """
    result = CascadeResult()
    if not metadata.dependents:
        return result

    for dependent in metadata.dependents:
        sql, params = build_dependent_delete(dependent, parent_id)
        try:
            outcome = await client.query(sql, params)
        except Exception as e:
            logger.error(
                "Cascade delete failed for %s.%s on %s %s: %s",
                dependent.table,
                dependent.foreign_key,
                metadata.entity_key,
                parent_id,
                e,
            )
            raise

        deleted = outcome.rowcount or 0
        result.details.append(
            CascadeDetail(
                table=dependent.table,
                foreign_key=dependent.foreign_key,
                polymorphic=dependent.polymorphic,
                deleted=deleted,
            )
        )
        result.total_deleted += deleted

    logger.debug(
        "Cascaded %d dependent row(s) for %s %s",
        result.total_deleted,
        metadata.entity_key,
        parent_id,
    )
    return result
