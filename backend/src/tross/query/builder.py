"""Parameterized query construction from metadata whitelists.

Every column name comes from entity metadata and every request value
is bound through ``params``; request input is never spliced into SQL.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from tross.core.errors import ValidationError
from tross.metadata.loader import EntityMetadata

logger = logging.getLogger(__name__)

FILTER_OPERATORS = ("eq", "gt", "gte", "lt", "lte", "in", "not")

_COMPARISONS = {
    "eq": "=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "not": "!=",
}


def _col(name: str) -> str:
    """Return a double-quoted column identifier."""
    return f'"{name}"'


@dataclass(frozen=True)
class FilterCondition:
    operator: str
    value: Any


@dataclass
class QuerySpec:
    """Search, filter, sort and pagination request for one entity.

    Attributes:
        search: Case-insensitive substring matched across searchable fields
        filters: Field name -> one condition or a list of conditions
        sort_by: Sortable field; None uses the entity's default sort
        sort_order: "ASC" or "DESC" (case-insensitive); None uses the default
        page: 1-based page number
        limit: Page size; None uses the builder default, clamped to its max
        include_inactive: Skip the implicit is_active filter
    """

    search: str | None = None
    filters: dict[str, FilterCondition | list[FilterCondition]] = field(default_factory=dict)
    sort_by: str | None = None
    sort_order: str | None = None
    page: int = 1
    limit: int | None = None
    include_inactive: bool = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> QuerySpec:
        """Parse the raw request form.

        Filters are given either as ``{field: value}`` (equality) or as
        ``{field: {operator: value, ...}}``.
        """
        filters: dict[str, FilterCondition | list[FilterCondition]] = {}
        for name, raw in (params.get("filters") or {}).items():
            if isinstance(raw, FilterCondition):
                filters[name] = raw
            elif isinstance(raw, Mapping):
                conditions = [FilterCondition(op, v) for op, v in raw.items()]
                filters[name] = conditions[0] if len(conditions) == 1 else conditions
            else:
                filters[name] = FilterCondition("eq", raw)

        return cls(
            search=params.get("search"),
            filters=filters,
            sort_by=params.get("sortBy", params.get("sort_by")),
            sort_order=params.get("sortOrder", params.get("sort_order")),
            page=_to_int(params.get("page", 1), "page"),
            limit=_to_int(params["limit"], "limit") if params.get("limit") is not None else None,
            include_inactive=bool(params.get("includeInactive", params.get("include_inactive", False))),
        )


def _to_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer", field=name)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", field=name) from None


@dataclass
class QueryDescriptor:
    where_clauses: list[str]
    params: list[Any]
    order_by: str
    limit: int
    offset: int
    page: int = 1

    def where_sql(self) -> str:
        """Return `` WHERE a AND b`` or an empty string."""
        if not self.where_clauses:
            return ""
        return " WHERE " + " AND ".join(self.where_clauses)


class QueryBuilder:
    """Turns a QuerySpec into a parameterized query descriptor."""

    def __init__(self, max_limit: int = 200, default_limit: int = 50):
        if max_limit < 1 or default_limit < 1:
            raise ValueError("max_limit and default_limit must be at least 1")
        self.max_limit = max_limit
        self.default_limit = min(default_limit, max_limit)

    def build(self, metadata: EntityMetadata, spec: QuerySpec) -> QueryDescriptor:
        """Build the WHERE, ORDER BY and pagination parts for *spec*.

        Raises:
            ValidationError: For a non-whitelisted filter or sort field, an
                unsupported operator, a bad sort order or bad pagination
        """
        where: list[str] = []
        params: list[Any] = []

        search_sql, search_params = self.build_search(metadata, spec.search)
        if search_sql:
            where.append(search_sql)
            params.extend(search_params)

        filter_sql, filter_params = self.build_filters(metadata, spec.filters)
        where.extend(filter_sql)
        params.extend(filter_params)

        if not spec.include_inactive and metadata.has_field("is_active") and "is_active" not in spec.filters:
            where.append(f"{_col('is_active')} = %s")
            params.append(True)

        page, limit, offset = self.paginate(spec.page, spec.limit)
        descriptor = QueryDescriptor(
            where_clauses=where,
            params=params,
            order_by=self.build_sort(metadata, spec.sort_by, spec.sort_order),
            limit=limit,
            offset=offset,
            page=page,
        )
        logger.debug(
            "Built query for %s: where=%s order=%s limit=%d offset=%d",
            metadata.table_name,
            descriptor.where_sql() or "(none)",
            descriptor.order_by,
            limit,
            offset,
        )
        return descriptor

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def build_search(self, metadata: EntityMetadata, search: str | None) -> tuple[str, list[Any]]:
        if not search or not metadata.searchable_fields:
            return "", []
        term = str(search).strip()
        if not term:
            return "", []
        conditions = [f"{_col(f)} ILIKE %s" for f in metadata.searchable_fields]
        return f"({' OR '.join(conditions)})", [f"%{term}%"] * len(conditions)

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def build_filters(
        self,
        metadata: EntityMetadata,
        filters: Mapping[str, FilterCondition | list[FilterCondition]] | None,
    ) -> tuple[list[str], list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for name, conditions in (filters or {}).items():
            if name not in metadata.filterable_fields:
                raise ValidationError(
                    f"Field '{name}' is not filterable for {metadata.entity_key}. "
                    f"Allowed: {', '.join(metadata.filterable_fields) or '(none)'}",
                    field=name,
                )
            if isinstance(conditions, FilterCondition):
                conditions = [conditions]
            for cond in conditions:
                sql, values = self.build_condition(name, cond)
                clauses.append(sql)
                params.extend(values)
        return clauses, params

    def build_condition(self, name: str, cond: FilterCondition) -> tuple[str, list[Any]]:
        """Build SQL for one whitelisted field and condition."""
        op = cond.operator
        if op not in FILTER_OPERATORS:
            raise ValidationError(
                f"Unsupported filter operator '{op}' on '{name}'. "
                f"Allowed: {', '.join(FILTER_OPERATORS)}",
                field=name,
            )
        column = _col(name)
        value = cond.value

        if op == "in" or (op == "not" and isinstance(value, (list, tuple))):
            values = self._list_value(name, op, value)
            placeholders = ", ".join(["%s"] * len(values))
            keyword = "IN" if op == "in" else "NOT IN"
            return f"{column} {keyword} ({placeholders})", values

        if value is None:
            if op == "eq":
                return f"{column} IS NULL", []
            if op == "not":
                return f"{column} IS NOT NULL", []
            raise ValidationError(f"Operator '{op}' on '{name}' requires a value", field=name)

        if isinstance(value, (list, tuple, dict)):
            raise ValidationError(f"Operator '{op}' on '{name}' requires a scalar value", field=name)

        return f"{column} {_COMPARISONS[op]} %s", [value]

    @staticmethod
    def _list_value(name: str, op: str, value: Any) -> list[Any]:
        if isinstance(value, str):
            values = [v.strip() for v in value.split(",") if v.strip()]
        elif isinstance(value, (list, tuple)):
            values = list(value)
        else:
            values = [value]
        if not values:
            raise ValidationError(f"Operator '{op}' on '{name}' requires at least one value", field=name)
        return values

    # ------------------------------------------------------------------
    # Sort
    # ------------------------------------------------------------------

    def build_sort(self, metadata: EntityMetadata, sort_by: str | None, sort_order: str | None) -> str:
        default = metadata.effective_sort

        if sort_by is None or sort_by == "":
            field_name = default.field
        elif sort_by in metadata.sortable_fields:
            field_name = sort_by
        else:
            raise ValidationError(
                f"Field '{sort_by}' is not sortable for {metadata.entity_key}. "
                f"Allowed: {', '.join(metadata.sortable_fields) or '(none)'}",
                field=sort_by,
            )

        if sort_order is None or sort_order == "":
            order = default.order if field_name == default.field else "ASC"
        else:
            order = str(sort_order).upper()
            if order not in ("ASC", "DESC"):
                raise ValidationError(
                    f"Invalid sort order '{sort_order}'. Allowed: ASC, DESC",
                    field="sortOrder",
                )

        order_by = f"{_col(field_name)} {order}"
        if field_name != metadata.primary_key:
            # Stable pagination across equal sort keys
            order_by += f", {_col(metadata.primary_key)} ASC"
        return order_by

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    def paginate(self, page: Any, limit: Any) -> tuple[int, int, int]:
        page = _to_int(page if page is not None else 1, "page")
        if page < 1:
            raise ValidationError("page must be at least 1", field="page")

        if limit is None:
            limit = self.default_limit
        else:
            limit = _to_int(limit, "limit")
            if limit < 1:
                raise ValidationError("limit must be at least 1", field="limit")
        limit = min(limit, self.max_limit)

        return page, limit, (page - 1) * limit
