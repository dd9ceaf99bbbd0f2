"""Role hierarchy, permission matrix and the permission evaluator."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Union

from tross.auth.predicates import PredicateRegistry, register_builtin_predicates
from tross.auth.types import OPERATIONS, Allowed, Decision, Denied, PermissionContext
from tross.core.errors import MetadataError
from tross.metadata.validator import PERMISSIONS_SCHEMA, load_yaml, validate_document

if TYPE_CHECKING:
    from tross.metadata.loader import EntityMetadataRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleDefinition:
    name: str
    priority: int
    description: str = ""


@dataclass(frozen=True)
class MinimumRole:
    """Operation open to the role and every higher-priority role."""

    role: str
    priority: int


@dataclass(frozen=True)
class Disabled:
    """Operation closed to every role (system-only)."""


@dataclass(frozen=True)
class CustomPredicate:
    """Minimum role plus a registered predicate that must also hold.

    Roles at or above ``bypass_role`` skip the predicate.
    """

    predicate: str
    role: str
    priority: int
    bypass_role: str | None = None
    bypass_priority: int | None = None

    def applies_to(self, priority: int) -> bool:
        return self.bypass_priority is None or priority < self.bypass_priority


Requirement = Union[MinimumRole, Disabled, CustomPredicate]


@dataclass(frozen=True)
class PermissionMatrix:
    """Immutable role hierarchy and (resource, operation) requirements.

    Attributes:
        roles: Role name -> definition, ordered by ascending priority
        resources: Resource -> operation -> requirement
    """

    roles: Mapping[str, RoleDefinition]
    resources: Mapping[str, Mapping[str, Requirement]]

    def role_priority(self, role_name: str | None) -> int | None:
        """Return the priority for a role name (case-insensitive), None if unknown."""
        if not role_name or not isinstance(role_name, str):
            return None
        role = self.roles.get(role_name.lower())
        return role.priority if role else None

    def requirement(self, resource: str | None, operation: str | None) -> Requirement | None:
        if resource is None or operation is None:
            return None
        return self.resources.get(resource, {}).get(operation)

    def minimum_role(self, resource: str, operation: str) -> str | None:
        req = self.requirement(resource, operation)
        if isinstance(req, (MinimumRole, CustomPredicate)):
            return req.role
        return None

    def role_hierarchy(self) -> dict[str, int]:
        return {name: role.priority for name, role in self.roles.items()}

    def has_minimum_role(self, user_role: str | None, required_role: str | None) -> bool:
        user_priority = self.role_priority(user_role)
        required_priority = self.role_priority(required_role)
        if user_priority is None or required_priority is None:
            return False
        return user_priority >= required_priority

    def ensure_resources(self, registry: EntityMetadataRegistry) -> None:
        """Fail fast when metadata names a resource or role the matrix lacks.

        Covers each entity's rls_resource and every role named in its
        fieldAccess rules.
        """
        missing = sorted(
            {e.rls_resource for e in registry if e.rls_resource not in self.resources}
        )
        if missing:
            raise MetadataError(
                f"Permission matrix has no entry for resource(s): {', '.join(missing)}"
            )

        for entity in registry:
            for field_name, rule in entity.field_access.items():
                for operation, level in rule.levels():
                    if not rule.is_closed(level) and level not in self.roles:
                        raise MetadataError(
                            f"Entity '{entity.entity_key}' fieldAccess.{field_name}.{operation} "
                            f"names unknown role '{level}'"
                        )


# ------------------------------------------------------------------
# Loading
# ------------------------------------------------------------------


def _resolve_requirement(
    resource: str,
    operation: str,
    raw: object,
    roles: Mapping[str, RoleDefinition],
) -> Requirement:
    if isinstance(raw, dict) and raw.get("disabled") is True:
        return Disabled()

    bypass_name = None
    if isinstance(raw, dict):
        predicate = raw.get("predicate")
        role_name = raw.get("minimumRole")
        bypass_name = raw.get("bypassRole")
    else:
        predicate = None
        role_name = raw

    if not isinstance(role_name, str) or role_name.lower() not in roles:
        raise MetadataError(f'Invalid minimumRole "{role_name}" for {resource}.{operation}')
    role = roles[role_name.lower()]

    if predicate is None:
        return MinimumRole(role=role.name, priority=role.priority)

    if not PredicateRegistry.is_registered(predicate):
        raise MetadataError(
            f"Unknown permission predicate '{predicate}' for {resource}.{operation}"
        )
    if bypass_name is None:
        return CustomPredicate(predicate=predicate, role=role.name, priority=role.priority)

    if not isinstance(bypass_name, str) or bypass_name.lower() not in roles:
        raise MetadataError(f'Invalid bypassRole "{bypass_name}" for {resource}.{operation}')
    bypass = roles[bypass_name.lower()]
    return CustomPredicate(
        predicate=predicate,
        role=role.name,
        priority=role.priority,
        bypass_role=bypass.name,
        bypass_priority=bypass.priority,
    )


def matrix_from_dict(data: dict) -> PermissionMatrix:
    """Build and validate a PermissionMatrix from a parsed permissions document.

    Raises:
        MetadataError: If the document fails validation
    """
    register_builtin_predicates()

    if not isinstance(data, dict):
        raise MetadataError("Permission config must be a mapping")
    raw_roles = data.get("roles")
    raw_resources = data.get("resources")
    if not isinstance(raw_roles, dict) or not raw_roles:
        raise MetadataError('Missing or invalid "roles" object')
    if not isinstance(raw_resources, dict) or not raw_resources:
        raise MetadataError('Missing or invalid "resources" object')

    seen_priorities: dict[int, str] = {}
    role_list: list[RoleDefinition] = []
    for name, cfg in raw_roles.items():
        priority = (cfg or {}).get("priority")
        if not isinstance(priority, int) or isinstance(priority, bool) or priority < 1:
            raise MetadataError(f'Invalid priority for role "{name}"')
        if priority in seen_priorities:
            raise MetadataError(
                f"Duplicate priority {priority} - each role must have unique priority"
            )
        seen_priorities[priority] = name
        role_list.append(
            RoleDefinition(name=name.lower(), priority=priority, description=(cfg or {}).get("description", ""))
        )
    role_list.sort(key=lambda r: r.priority)
    roles = MappingProxyType({r.name: r for r in role_list})

    resources: dict[str, Mapping[str, Requirement]] = {}
    for resource, ops in raw_resources.items():
        if not isinstance(ops, dict):
            raise MetadataError(f'Missing permissions for resource "{resource}"')
        resolved: dict[str, Requirement] = {}
        for op in OPERATIONS:
            if op not in ops:
                raise MetadataError(f'Missing "{op}" permission for resource "{resource}"')
            resolved[op] = _resolve_requirement(resource, op, ops[op], roles)
        resources[resource] = MappingProxyType(resolved)

    return PermissionMatrix(roles=roles, resources=MappingProxyType(resources))


def load_permission_matrix(path: Path) -> PermissionMatrix:
    """Load ``permissions.yaml`` into an immutable matrix.

    Raises:
        MetadataError: If the file is missing, malformed or invalid
    """
    if not path.exists():
        raise MetadataError(f"Permission config not found at {path}")
    data, issues = load_yaml(path)
    if not issues:
        issues = validate_document(data, PERMISSIONS_SCHEMA, path)
    if issues:
        raise MetadataError("; ".join(str(i) for i in issues))

    matrix = matrix_from_dict(data)
    logger.info(
        "Loaded permission matrix: %d roles, %d resources",
        len(matrix.roles),
        len(matrix.resources),
    )
    return matrix


# ------------------------------------------------------------------
# Evaluation
# ------------------------------------------------------------------


class PermissionEvaluator:
    """Decides whether a role may perform an operation on a resource.

    Answers "may this role touch this kind of resource at all". Which
    rows it may touch is the row-level security builder's job.
    """

    def __init__(self, matrix: PermissionMatrix):
        self.matrix = matrix

    def can_perform(self, ctx: PermissionContext, evaluate_predicate: bool = True) -> Decision:
        """Evaluate *ctx* against the matrix.

        Args:
            ctx: Caller, resource and operation
            evaluate_predicate: When False, a predicate requirement only
                checks its minimum role. Used before the target row is
                known; the full check runs once it is.

        Returns:
            Allowed, or Denied with a reason and the minimum role name
        """
        requirement = self.matrix.requirement(ctx.resource, ctx.operation)
        if requirement is None:
            return Denied(f"No permission defined for {ctx.operation} on {ctx.resource}")

        if isinstance(requirement, Disabled):
            return Denied(f"{ctx.operation} on {ctx.resource} is disabled")

        priority = ctx.role_priority
        if priority is None:
            priority = self.matrix.role_priority(ctx.role)
        if priority is None:
            return Denied(
                f"Unknown role '{ctx.role}'",
                minimum_required=requirement.role,
            )

        if priority < requirement.priority:
            return Denied(
                f"{requirement.role.capitalize()} role or higher required to "
                f"{ctx.operation} {ctx.resource}",
                minimum_required=requirement.role,
            )

        if (
            isinstance(requirement, CustomPredicate)
            and evaluate_predicate
            and requirement.applies_to(priority)
        ):
            predicate = PredicateRegistry.get(requirement.predicate)
            if not predicate(ctx):
                return Denied(
                    f"Not permitted to {ctx.operation} this {ctx.resource} record",
                    minimum_required=requirement.role,
                )

        return Allowed()

    def has_permission(self, role: str, resource: str, operation: str) -> bool:
        # Predicates need a caller and a row; a role-only check looks at the minimum role
        ctx = PermissionContext(user_id=None, role=role, resource=resource, operation=operation)
        return isinstance(self.can_perform(ctx, evaluate_predicate=False), Allowed)

    def requires_record(self, resource: str, operation: str) -> bool:
        """True when the requirement is a predicate evaluated against a row."""
        return isinstance(self.matrix.requirement(resource, operation), CustomPredicate)

    def allowed_operations(self, role: str, resource: str) -> list[str]:
        return [op for op in OPERATIONS if self.has_permission(role, resource, op)]
