"""Field-level role permissions.

An entity's ``fieldAccess`` block gives, per field, the minimum role for
create, read and update. Reads drop fields the caller cannot see; writes
that touch a field the caller cannot write are refused outright.
Fields without a rule fall back to the entity-level permission.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from tross.auth.permissions import PermissionMatrix
from tross.auth.types import PermissionContext
from tross.core.errors import PermissionDenied
from tross.metadata.loader import EntityMetadata, FieldAccess

logger = logging.getLogger(__name__)


class FieldAccessPolicy:
    """Applies an entity's fieldAccess rules for one caller's role."""

    def __init__(self, matrix: PermissionMatrix):
        self.matrix = matrix

    def _priority(self, ctx: PermissionContext) -> int | None:
        if ctx.role_priority is not None:
            return ctx.role_priority
        return self.matrix.role_priority(ctx.role)

    def can_access(
        self,
        metadata: EntityMetadata,
        ctx: PermissionContext,
        field_name: str,
        operation: str,
    ) -> bool:
        rule = metadata.field_access.get(field_name)
        if rule is None:
            return True
        level = rule.level(operation)
        if level is None:
            return True
        if FieldAccess.is_closed(level):
            return False
        required = self.matrix.role_priority(level)
        priority = self._priority(ctx)
        return priority is not None and required is not None and priority >= required

    def fields_for_operation(
        self, metadata: EntityMetadata, ctx: PermissionContext, operation: str
    ) -> list[str]:
        """Return the declared fields the caller may *operation*."""
        return [
            name for name in metadata.fields if self.can_access(metadata, ctx, name, operation)
        ]

    def check_write(
        self,
        metadata: EntityMetadata,
        ctx: PermissionContext,
        data: Mapping[str, Any],
        operation: str,
    ) -> None:
        """Refuse a create/update payload that touches a field the role cannot write.

        Raises:
            PermissionDenied: Listing every disallowed field
        """
        blocked = [name for name in data if not self.can_access(metadata, ctx, name, operation)]
        if not blocked:
            return

        levels = [metadata.field_access[name].level(operation) for name in blocked]
        open_levels = [lvl for lvl in levels if not FieldAccess.is_closed(lvl)]
        minimum = None
        if len(open_levels) == len(levels):
            minimum = max(open_levels, key=lambda lvl: self.matrix.role_priority(lvl) or 0)

        logger.info(
            "Field access denied: role=%s operation=%s entity=%s fields=%s",
            ctx.role,
            operation,
            metadata.entity_key,
            ",".join(blocked),
        )
        raise PermissionDenied(
            f"Role '{ctx.role}' cannot {operation} field(s): {', '.join(blocked)}",
            minimum,
        )

    def filter_writable(
        self,
        metadata: EntityMetadata,
        ctx: PermissionContext,
        data: Mapping[str, Any],
        operation: str,
    ) -> dict[str, Any]:
        """Return a copy of *data* keeping only the fields the role may write."""
        return {
            name: value
            for name, value in data.items()
            if self.can_access(metadata, ctx, name, operation)
        }

    def filter_readable(
        self,
        record: Mapping[str, Any] | None,
        metadata: EntityMetadata,
        ctx: PermissionContext,
    ) -> dict[str, Any] | None:
        """Drop the fields the caller's role may not read."""
        if record is None:
            return None
        if not metadata.field_access:
            return dict(record)
        return {
            name: value
            for name, value in record.items()
            if self.can_access(metadata, ctx, name, "read")
        }

    def filter_readable_array(
        self,
        records: list[Mapping[str, Any]],
        metadata: EntityMetadata,
        ctx: PermissionContext,
    ) -> list[dict[str, Any]]:
        return [self.filter_readable(r, metadata, ctx) for r in records if r is not None]
