"""Row-level security filters.

Derives the extra WHERE fragment that limits which rows a caller may
see or touch. The fragment is always ANDed onto the query, so an
operation can be permitted by the evaluator and still match no rows.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from tross.auth.types import PermissionContext
from tross.metadata.loader import EntityMetadata

logger = logging.getLogger(__name__)

DENY_CLAUSE = "1=0"


@dataclass(frozen=True)
class RLSFilter:
    """WHERE fragment produced for one caller and entity.

    Attributes:
        clause: SQL fragment with %s placeholders, "" for no restriction
        params: Values bound to the placeholders in ``clause``
        applied: True when rows are actually being restricted
    """

    clause: str = ""
    params: list[Any] = field(default_factory=list)
    applied: bool = False


_UNRESTRICTED = RLSFilter()
_DENIED = RLSFilter(clause=DENY_CLAUSE, applied=True)


def _column_policy(config_key: str, default_column: str) -> Callable[[Any, EntityMetadata], RLSFilter]:
    def handler(user_id: Any, metadata: EntityMetadata) -> RLSFilter:
        if user_id is None:
            return _DENIED
        column = metadata.rls_filter_config.get(config_key, default_column)
        return RLSFilter(clause=f'"{column}" = %s', params=[user_id], applied=True)

    return handler


POLICY_HANDLERS: dict[str, Callable[[Any, EntityMetadata], RLSFilter]] = {
    "all_records": lambda user_id, metadata: _UNRESTRICTED,
    "public_resource": lambda user_id, metadata: _UNRESTRICTED,
    "own_record_only": _column_policy("ownRecordField", "id"),
    "own_work_orders_only": _column_policy("customerField", "customer_id"),
    "assigned_work_orders_only": _column_policy("assignedField", "assigned_technician_id"),
    "own_invoices_only": _column_policy("customerField", "customer_id"),
    "own_contracts_only": _column_policy("customerField", "customer_id"),
    "deny_all": lambda user_id, metadata: _DENIED,
}


def supported_policies() -> list[str]:
    return list(POLICY_HANDLERS)


def policy_allows_access(policy: str | None) -> bool:
    """True when *policy* can ever match rows."""
    return policy is not None and policy != "deny_all" and policy in POLICY_HANDLERS


class RLSFilterBuilder:
    """Builds row restrictions from an entity's per-role policy map."""

    def policy_for(self, ctx: PermissionContext, metadata: EntityMetadata) -> str | None:
        """Return the policy name for the caller's role.

        None means the entity declares no row-level policy at all. A
        policy map that does not mention the role resolves to deny_all.
        """
        if metadata.rls_policy is None:
            return None
        role = (ctx.role or "").lower()
        return metadata.rls_policy.get(role, "deny_all")

    def build(self, ctx: PermissionContext, metadata: EntityMetadata) -> RLSFilter:
        policy = self.policy_for(ctx, metadata)
        if policy is None:
            return _UNRESTRICTED

        handler = POLICY_HANDLERS.get(policy)
        if handler is None:
            logger.warning(
                "Unknown RLS policy '%s' for %s (role=%s), denying access",
                policy,
                metadata.table_name,
                ctx.role,
            )
            return _DENIED

        result = handler(ctx.user_id, metadata)
        logger.debug(
            "RLS policy %s on %s: %s",
            policy,
            metadata.table_name,
            result.clause or "(none)",
        )
        return result
