"""Types shared by the permission evaluator and row-level security."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Union


class Operation(Enum):
    """CRUD operation being authorized."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


OPERATIONS = tuple(op.value for op in Operation)


@dataclass(frozen=True)
class PermissionContext:
    """Who is asking, and for what.

    Built per request by the routing layer. The entity service fills in
    ``resource`` and ``operation`` before evaluation.

    Attributes:
        user_id: Authenticated user's id (None if unauthenticated)
        role: Role name, e.g. "dispatcher"
        role_priority: Numeric priority of the role; resolved from the
            permission matrix when None
        resource: Authorization resource (EntityMetadata.rls_resource)
        operation: "create", "read", "update" or "delete"
        owner_id: Owner of the target row, for custom predicates
    """

    user_id: Any
    role: str | None
    role_priority: int | None = None
    resource: str | None = None
    operation: str | None = None
    owner_id: Any = None

    def for_operation(self, resource: str, operation: Operation | str) -> PermissionContext:
        op = operation.value if isinstance(operation, Operation) else operation
        return replace(self, resource=resource, operation=op)


@dataclass(frozen=True)
class Allowed:
    allowed: bool = True


@dataclass(frozen=True)
class Denied:
    """Evaluator refusal.

    Attributes:
        reason: User-facing explanation
        minimum_required: Lowest role name that would be allowed, or None
            when no role can perform the operation
    """

    reason: str
    minimum_required: str | None = None
    allowed: bool = False


Decision = Union[Allowed, Denied]
