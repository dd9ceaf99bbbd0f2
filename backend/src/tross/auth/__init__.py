"""Authorization for the entity layer: permissions, row-level security, redaction."""

from tross.auth.field_access import FieldAccessPolicy
from tross.auth.output_filter import (
    ALWAYS_SENSITIVE_FIELDS,
    filter_output,
    filter_output_array,
    is_sensitive_field,
)
from tross.auth.permissions import (
    PermissionEvaluator,
    PermissionMatrix,
    load_permission_matrix,
    matrix_from_dict,
)
from tross.auth.predicates import PredicateRegistry, permission_predicate
from tross.auth.rls import RLSFilter, RLSFilterBuilder
from tross.auth.types import Allowed, Denied, Operation, PermissionContext

__all__ = [
    "ALWAYS_SENSITIVE_FIELDS",
    "Allowed",
    "Denied",
    "FieldAccessPolicy",
    "Operation",
    "PermissionContext",
    "PermissionEvaluator",
    "PermissionMatrix",
    "PredicateRegistry",
    "RLSFilter",
    "RLSFilterBuilder",
    "filter_output",
    "filter_output_array",
    "is_sensitive_field",
    "load_permission_matrix",
    "matrix_from_dict",
    "permission_predicate",
]
