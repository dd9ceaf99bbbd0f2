"""Audit bridge: turns completed mutations into audit records.

Audit logging is advisory. ``log_entity_audit`` validates its input,
maps the entity and operation to fixed action and resource constants,
and hands the record to the sink. It never raises: invalid input is
logged as a warning and dropped, and sink failures are logged as
errors and swallowed so they cannot fail or roll back the business
operation.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol

from tross.audit.constants import (
    AUDITED_OPERATIONS,
    AuditResult,
    get_audit_action,
    get_resource_type,
)
from tross.audit.context import AuditContext

if TYPE_CHECKING:
    from tross.metadata.loader import EntityMetadataRegistry

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """External audit store."""

    async def log(self, record: dict[str, Any]) -> None: ...


class AuditBridge:
    """Ships entity audit records to an AuditSink."""

    def __init__(self, sink: AuditSink, registry: EntityMetadataRegistry | None = None):
        self.sink = sink
        self.registry = registry

    def is_audit_enabled(self, entity_key: str) -> bool:
        """True when the entity has audit constants and has not opted out."""
        if get_resource_type(entity_key) is None:
            return False
        if self.registry is not None and self.registry.has(entity_key):
            return self.registry.get(entity_key).audit_enabled
        return True

    async def log_entity_audit(
        self,
        operation: str,
        entity_key: str,
        result: Mapping[str, Any] | None,
        audit_context: AuditContext | None,
    ) -> None:
        """Write one audit record for a completed create, update or delete.

        Args:
            operation: "create", "update" or "delete"
            entity_key: Entity that was mutated
            result: The resulting record; its "id" becomes the resource id
            audit_context: Who made the change, from where, and the old/new values
        """
        if operation not in AUDITED_OPERATIONS:
            logger.warning(
                "Invalid audit operation: operation=%r entity=%r", operation, entity_key
            )
            return

        action = get_audit_action(entity_key, operation)
        resource_type = get_resource_type(entity_key)
        if action is None or resource_type is None:
            logger.warning(
                "Invalid entity name for audit: entity=%r operation=%s", entity_key, operation
            )
            return

        if audit_context is None:
            logger.warning(
                "No audit context provided: entity=%s operation=%s", entity_key, operation
            )
            return

        resource_id = result.get("id") if isinstance(result, Mapping) else None
        record = {
            "user_id": audit_context.user_id,
            "action": action.value,
            "resource_type": resource_type.value,
            "resource_id": resource_id,
            "old_values": audit_context.old_values,
            "new_values": audit_context.new_values,
            "ip_address": audit_context.ip_address,
            "user_agent": audit_context.user_agent,
            "result": AuditResult.SUCCESS.value,
        }

        try:
            await self.sink.log(record)
        except Exception as e:
            logger.error(
                "Failed to write audit log: operation=%s entity=%s resource_id=%s error=%s",
                operation,
                entity_key,
                resource_id,
                e,
            )
