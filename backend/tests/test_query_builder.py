"""Tests for parameterized query construction."""

import pytest

from tross.core.errors import ValidationError
from tross.metadata.loader import resolve_entity
from tross.query.builder import FilterCondition, QueryBuilder, QuerySpec


@pytest.fixture
def builder():
    return QueryBuilder(max_limit=200, default_limit=50)


@pytest.fixture
def entity():
    return resolve_entity(
        {
            "entity": "ticket",
            "tableName": "tickets",
            "rlsResource": "tickets",
            "fields": [
                {"name": "id", "type": "integer", "primaryKey": True},
                {"name": "title", "type": "string"},
                {"name": "body", "type": "text"},
                {"name": "status", "type": "enum", "values": ["open", "closed"]},
                {"name": "priority", "type": "integer"},
                {"name": "secret", "type": "string"},
                {"name": "is_active", "type": "boolean"},
            ],
            "searchableFields": ["title", "body"],
            "filterableFields": ["id", "status", "priority", "is_active"],
            "sortableFields": ["id", "title", "priority"],
            "defaultSort": {"field": "priority", "order": "DESC"},
        }
    )


class TestSearch:
    def test_search_ors_across_searchable_fields(self, builder, entity):
        sql, params = builder.build_search(entity, "  pump ")
        assert sql == '("title" ILIKE %s OR "body" ILIKE %s)'
        assert params == ["%pump%", "%pump%"]

    def test_blank_search_ignored(self, builder, entity):
        assert builder.build_search(entity, "   ") == ("", [])
        assert builder.build_search(entity, None) == ("", [])


class TestFilters:
    def test_equality(self, builder, entity):
        sql, params = builder.build_condition("status", FilterCondition("eq", "open"))
        assert sql == '"status" = %s'
        assert params == ["open"]

    @pytest.mark.parametrize(
        "op,expected",
        [("gt", ">"), ("gte", ">="), ("lt", "<"), ("lte", "<="), ("not", "!=")],
    )
    def test_comparisons(self, builder, op, expected):
        sql, params = builder.build_condition("priority", FilterCondition(op, 3))
        assert sql == f'"priority" {expected} %s'
        assert params == [3]

    def test_in_list(self, builder):
        sql, params = builder.build_condition("status", FilterCondition("in", ["open", "closed"]))
        assert sql == '"status" IN (%s, %s)'
        assert params == ["open", "closed"]

    def test_in_comma_string(self, builder):
        sql, params = builder.build_condition("status", FilterCondition("in", "open, closed"))
        assert params == ["open", "closed"]

    def test_not_with_list_is_not_in(self, builder):
        sql, _ = builder.build_condition("status", FilterCondition("not", ["open"]))
        assert sql == '"status" NOT IN (%s)'

    def test_empty_in_rejected(self, builder):
        with pytest.raises(ValidationError, match="at least one value"):
            builder.build_condition("status", FilterCondition("in", []))

    def test_null_checks(self, builder):
        assert builder.build_condition("status", FilterCondition("eq", None)) == ('"status" IS NULL', [])
        assert builder.build_condition("status", FilterCondition("not", None)) == (
            '"status" IS NOT NULL',
            [],
        )

    def test_unknown_operator_rejected(self, builder):
        with pytest.raises(ValidationError, match="Unsupported filter operator 'like'"):
            builder.build_condition("status", FilterCondition("like", "x"))

    def test_non_filterable_field_rejected(self, builder, entity):
        with pytest.raises(ValidationError) as exc_info:
            builder.build_filters(entity, {"secret": FilterCondition("eq", "x")})
        assert exc_info.value.field == "secret"

    def test_multiple_conditions_on_one_field(self, builder, entity):
        clauses, params = builder.build_filters(
            entity,
            {"priority": [FilterCondition("gte", 1), FilterCondition("lte", 5)]},
        )
        assert clauses == ['"priority" >= %s', '"priority" <= %s']
        assert params == [1, 5]

    def test_user_input_never_in_sql(self, builder, entity):
        hostile = "'; DROP TABLE tickets; --"
        descriptor = builder.build(
            entity, QuerySpec(search=hostile, filters={"status": FilterCondition("eq", hostile)})
        )
        assert hostile not in descriptor.where_sql()
        assert f"%{hostile}%" in descriptor.params
        assert hostile in descriptor.params


class TestSort:
    def test_default_sort_with_tie_breaker(self, builder, entity):
        assert builder.build_sort(entity, None, None) == '"priority" DESC, "id" ASC'

    def test_explicit_sort(self, builder, entity):
        assert builder.build_sort(entity, "title", "desc") == '"title" DESC, "id" ASC'

    def test_primary_key_sort_has_no_tie_breaker(self, builder, entity):
        assert builder.build_sort(entity, "id", "ASC") == '"id" ASC'

    def test_non_sortable_rejected(self, builder, entity):
        with pytest.raises(ValidationError, match="not sortable"):
            builder.build_sort(entity, "secret", None)

    def test_bad_order_rejected(self, builder, entity):
        with pytest.raises(ValidationError, match="Invalid sort order"):
            builder.build_sort(entity, "title", "sideways")


class TestPagination:
    def test_defaults(self, builder):
        assert builder.paginate(None, None) == (1, 50, 0)

    def test_offset(self, builder):
        assert builder.paginate(3, 20) == (3, 20, 40)

    def test_limit_clamped(self, builder):
        assert builder.paginate(1, 10_000) == (1, 200, 0)

    def test_string_values_coerced(self, builder):
        assert builder.paginate("2", "10") == (2, 10, 10)

    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), ("x", 10), (True, 10)])
    def test_invalid_values_rejected(self, builder, page, limit):
        with pytest.raises(ValidationError):
            builder.paginate(page, limit)

    def test_invalid_builder_bounds(self):
        with pytest.raises(ValueError):
            QueryBuilder(max_limit=0)


class TestBuild:
    def test_implicit_active_filter(self, builder, entity):
        descriptor = builder.build(entity, QuerySpec())
        assert descriptor.where_clauses == ['"is_active" = %s']
        assert descriptor.params == [True]

    def test_include_inactive(self, builder, entity):
        descriptor = builder.build(entity, QuerySpec(include_inactive=True))
        assert descriptor.where_sql() == ""

    def test_explicit_active_filter_wins(self, builder, entity):
        descriptor = builder.build(
            entity, QuerySpec(filters={"is_active": FilterCondition("eq", False)})
        )
        assert descriptor.params == [False]

    def test_full_descriptor(self, builder, entity):
        descriptor = builder.build(
            entity,
            QuerySpec(
                search="pump",
                filters={"status": FilterCondition("eq", "open")},
                sort_by="title",
                page=2,
                limit=10,
            ),
        )
        assert descriptor.where_sql() == (
            ' WHERE ("title" ILIKE %s OR "body" ILIKE %s) AND "status" = %s AND "is_active" = %s'
        )
        assert descriptor.params == ["%pump%", "%pump%", "open", True]
        assert descriptor.order_by == '"title" ASC, "id" ASC'
        assert (descriptor.limit, descriptor.offset, descriptor.page) == (10, 10, 2)


class TestQuerySpecFromParams:
    def test_parses_request_form(self):
        spec = QuerySpec.from_params(
            {
                "search": "pump",
                "filters": {"status": "open", "priority": {"gte": 2, "lte": 4}},
                "sortBy": "title",
                "sortOrder": "desc",
                "page": "2",
                "limit": "25",
                "includeInactive": True,
            }
        )
        assert spec.filters["status"] == FilterCondition("eq", "open")
        assert spec.filters["priority"] == [FilterCondition("gte", 2), FilterCondition("lte", 4)]
        assert (spec.sort_by, spec.sort_order) == ("title", "desc")
        assert (spec.page, spec.limit) == (2, 25)
        assert spec.include_inactive is True

    def test_snake_case_keys(self):
        spec = QuerySpec.from_params({"sort_by": "id", "include_inactive": True})
        assert spec.sort_by == "id"
        assert spec.include_inactive is True

    def test_single_operator_mapping(self):
        spec = QuerySpec.from_params({"filters": {"priority": {"gt": 1}}})
        assert spec.filters["priority"] == FilterCondition("gt", 1)
