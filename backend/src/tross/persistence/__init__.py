"""Persistence layer - database client, cascades, ordinals and error translation."""

from tross.persistence.cascade import CascadeDetail, CascadeResult, delete_dependents
from tross.persistence.client import DatabaseClient, QueryResult
from tross.persistence.config import DatabaseConfig, create_client
from tross.persistence.errors import translate_db_error
from tross.persistence.ordinals import get_next_ordinal_value

__all__ = [
    "CascadeDetail",
    "CascadeResult",
    "DatabaseClient",
    "DatabaseConfig",
    "QueryResult",
    "create_client",
    "delete_dependents",
    "get_next_ordinal_value",
    "translate_db_error",
]
