"""Audit action, resource type and result constants."""

from enum import Enum
from types import MappingProxyType


class AuditAction(Enum):
    # Authentication
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    LOGOUT_ALL_DEVICES = "logout_all_devices"
    ADMIN_REVOKE_SESSIONS = "admin_revoke_sessions"
    TOKEN_REFRESH = "token_refresh"
    PASSWORD_RESET = "password_reset"
    UNAUTHORIZED_ACCESS = "unauthorized_access"

    USER_CREATE = "user_create"
    USER_UPDATE = "user_update"
    USER_DELETE = "user_delete"

    ROLE_CREATE = "role_create"
    ROLE_UPDATE = "role_update"
    ROLE_DELETE = "role_delete"
    ROLE_ASSIGN = "role_assign"
    ROLE_REMOVE = "role_remove"
    ROLE_CHANGE = "role_change"

    CUSTOMER_CREATE = "customer_create"
    CUSTOMER_UPDATE = "customer_update"
    CUSTOMER_DELETE = "customer_delete"

    TECHNICIAN_CREATE = "technician_create"
    TECHNICIAN_UPDATE = "technician_update"
    TECHNICIAN_DELETE = "technician_delete"

    WORK_ORDER_CREATE = "work_order_create"
    WORK_ORDER_UPDATE = "work_order_update"
    WORK_ORDER_DELETE = "work_order_delete"
    WORK_ORDER_ASSIGN = "work_order_assign"
    WORK_ORDER_STATUS_CHANGE = "work_order_status_change"

    INVOICE_CREATE = "invoice_create"
    INVOICE_UPDATE = "invoice_update"
    INVOICE_DELETE = "invoice_delete"
    INVOICE_PAID = "invoice_paid"
    INVOICE_VOIDED = "invoice_voided"

    CONTRACT_CREATE = "contract_create"
    CONTRACT_UPDATE = "contract_update"
    CONTRACT_DELETE = "contract_delete"
    CONTRACT_ACTIVATED = "contract_activated"
    CONTRACT_TERMINATED = "contract_terminated"

    INVENTORY_CREATE = "inventory_create"
    INVENTORY_UPDATE = "inventory_update"
    INVENTORY_DELETE = "inventory_delete"
    INVENTORY_ADJUSTMENT = "inventory_adjustment"
    INVENTORY_REORDER = "inventory_reorder"


class AuditResourceType(Enum):
    AUTH = "auth"
    USER = "user"
    ROLE = "role"
    CUSTOMER = "customer"
    TECHNICIAN = "technician"
    WORK_ORDER = "work_order"
    INVOICE = "invoice"
    CONTRACT = "contract"
    INVENTORY = "inventory"


class AuditResult(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


AUDITED_OPERATIONS = ("create", "update", "delete")


def _crud(resource: AuditResourceType) -> MappingProxyType:
    prefix = resource.name
    return MappingProxyType(
        {op: AuditAction[f"{prefix}_{op.upper()}"] for op in AUDITED_OPERATIONS}
    )


# entity key -> (resource type, operation -> action)
ENTITY_AUDIT_MAP = MappingProxyType(
    {
        resource.value: (resource, _crud(resource))
        for resource in AuditResourceType
        if resource is not AuditResourceType.AUTH
    }
)


def get_resource_type(entity_key: str) -> AuditResourceType | None:
    entry = ENTITY_AUDIT_MAP.get(entity_key)
    return entry[0] if entry else None


def get_audit_action(entity_key: str, operation: str) -> AuditAction | None:
    entry = ENTITY_AUDIT_MAP.get(entity_key)
    return entry[1].get(operation) if entry else None
