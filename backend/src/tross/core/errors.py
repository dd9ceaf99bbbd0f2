"""Error taxonomy for the entity layer.

Every error raised to callers of GenericEntityService derives from
EntityServiceError and carries the HTTP-equivalent status the routing
layer should use. Audit sink failures never appear here: they are
caught and logged inside the audit bridge.
"""

from __future__ import annotations

from typing import Any


class MetadataError(ValueError):
    """Entity metadata or permission configuration is invalid.

    Raised at start-up. The process is not expected to recover.
    """


class EntityServiceError(Exception):
    """Base class for errors surfaced to the caller of the entity layer."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
        }


class UnknownEntity(EntityServiceError):
    status_code = 400
    code = "UNKNOWN_ENTITY"

    def __init__(self, entity_key: str, valid: list[str] | None = None):
        message = f"Unknown entity: {entity_key}"
        if valid:
            message += f". Valid entities: {', '.join(sorted(valid))}"
        super().__init__(message)
        self.entity_key = entity_key


class ValidationError(EntityServiceError):
    """Request is malformed: bad field, operator, sort, id or payload."""

    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class PermissionDenied(EntityServiceError):
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str, minimum_role: str | None = None):
        super().__init__(message)
        self.minimum_role = minimum_role

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["minimumRole"] = self.minimum_role
        return data


class NotFound(EntityServiceError):
    """Row is absent or hidden by row-level security.

    The two cases share one message so callers cannot probe for rows
    outside their visibility.
    """

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, entity_key: str, record_id: Any):
        super().__init__(f"{entity_key} not found: {record_id}")
        self.entity_key = entity_key
        self.record_id = record_id


class ProtectedResourceError(EntityServiceError):
    status_code = 403
    code = "PROTECTED_RESOURCE"

    def __init__(self, message: str, value: Any = None):
        super().__init__(message)
        self.value = value


class ConstraintError(EntityServiceError):
    """A unique, foreign key, check or not-null constraint rejected the write."""

    status_code = 409
    code = "CONFLICT"

    def __init__(
        self,
        message: str,
        constraint: str | None = None,
        field: str | None = None,
    ):
        super().__init__(message)
        self.constraint = constraint
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.constraint:
            data["constraint"] = self.constraint
        if self.field:
            data["field"] = self.field
        return data
