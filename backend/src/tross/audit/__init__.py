"""Audit trail for entity mutations.

Usage:
    from tross.audit import AuditBridge, build_audit_context

    bridge = AuditBridge(PostgresAuditSink(client), registry)
    await bridge.log_entity_audit("delete", "role", row, build_audit_context(request))
"""

from tross.audit.bridge import AuditBridge, AuditSink
from tross.audit.constants import (
    AuditAction,
    AuditResourceType,
    AuditResult,
    get_audit_action,
    get_resource_type,
)
from tross.audit.context import (
    AuditContext,
    build_audit_context,
    get_client_ip,
    get_user_agent,
)
from tross.audit.sink import PostgresAuditSink

__all__ = [
    "AuditAction",
    "AuditBridge",
    "AuditContext",
    "AuditResourceType",
    "AuditResult",
    "AuditSink",
    "PostgresAuditSink",
    "build_audit_context",
    "get_audit_action",
    "get_client_ip",
    "get_resource_type",
    "get_user_agent",
]
