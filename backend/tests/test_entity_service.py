"""
Tests for GenericEntityService against the repository metadata.

The database is the in-memory FakeDatabase from conftest; assertions
check the exact SQL and parameters the service issues, the transaction
outcome, and the audit records that reach the sink after commit.
"""
from __future__ import annotations

import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from tross.audit.bridge import AuditBridge
from tross.audit.context import AuditContext
from tross.auth.types import PermissionContext
from tross.core.errors import (
    ConstraintError,
    NotFound,
    PermissionDenied,
    ProtectedResourceError,
    UnknownEntity,
    ValidationError,
)
from tross.metadata.loader import EntityMetadataRegistry
from tross.query.builder import QuerySpec
from tross.services.entity_service import GenericEntityService

AUDIT_CTX = AuditContext(user_id=1, ip_address="10.0.0.1", user_agent="pytest")


class UniqueViolation(Exception):
    sqlstate = "23505"

    def __init__(self, column):
        super().__init__(f"duplicate key value violates unique constraint on {column}")
        self.diag = SimpleNamespace(
            column_name=None,
            message_detail=f"Key ({column})=(x) already exists.",
            constraint_name=f"t_{column}_key",
        )


@pytest.fixture
def sink():
    return SimpleNamespace(log=AsyncMock())


@pytest.fixture
def service(fake_db, registry, evaluator, sink):
    return GenericEntityService(fake_db, registry, evaluator, audit=AuditBridge(sink, registry))


def audit_records(sink):
    return [c.args[0] for c in sink.log.await_args_list]


# ---------------------------------------------------------------------------
# find_by_id
# ---------------------------------------------------------------------------


class TestFindById:
    @pytest.mark.asyncio
    async def test_returns_redacted_row(self, service, fake_db, admin_ctx):
        fake_db.on('FROM "technicians"', rows=[{"id": 3, "email": "t@x.io", "hourly_rate": 80}])

        result = await service.find_by_id("technician", admin_ctx, "3")

        assert result == {"id": 3, "email": "t@x.io"}
        assert fake_db.calls == [('SELECT * FROM "technicians" WHERE "id" = %s', [3])]

    @pytest.mark.asyncio
    async def test_rls_hidden_row_is_not_found(self, service, fake_db, customer_ctx):
        with pytest.raises(NotFound) as exc_info:
            await service.find_by_id("work_order", customer_ctx, 5)

        assert exc_info.value.message == "work_order not found: 5"
        assert fake_db.calls == [
            ('SELECT * FROM "work_orders" WHERE "id" = %s AND "customer_id" = %s', [5, 42])
        ]

    @pytest.mark.asyncio
    async def test_deny_all_policy(self, service, fake_db, technician_ctx):
        with pytest.raises(NotFound):
            await service.find_by_id("invoice", technician_ctx, 1)
        assert fake_db.calls[0][0].endswith("AND 1=0")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", ["abc", 0, -3, None, "", True])
    async def test_invalid_id(self, service, fake_db, admin_ctx, bad_id):
        with pytest.raises(ValidationError):
            await service.find_by_id("customer", admin_ctx, bad_id)
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_permission_denied(self, service, fake_db, customer_ctx, caplog):
        with caplog.at_level(logging.INFO), pytest.raises(PermissionDenied) as exc_info:
            await service.find_by_id("inventory", customer_ctx, 1)

        assert exc_info.value.minimum_role == "technician"
        assert exc_info.value.status_code == 403
        assert "Permission denied: role=customer operation=read resource=inventory" in caplog.text
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_entity(self, service, admin_ctx):
        with pytest.raises(UnknownEntity):
            await service.find_by_id("spaceship", admin_ctx, 1)


# ---------------------------------------------------------------------------
# find_all / find_by_field / count
# ---------------------------------------------------------------------------


class TestFindAll:
    @pytest.mark.asyncio
    async def test_pagination_envelope(self, service, fake_db, admin_ctx):
        fake_db.on("COUNT(*)", rows=[{"total": 25}])
        fake_db.on('SELECT * FROM "customers"', rows=[{"id": 11, "email": "a@x.io"}])

        result = await service.find_all(
            "customer", admin_ctx, {"search": "smith", "page": 2, "limit": 10}
        )

        assert result["data"] == [{"id": 11, "email": "a@x.io"}]
        assert result["pagination"] == {
            "page": 2,
            "limit": 10,
            "offset": 10,
            "total": 25,
            "totalPages": 3,
            "hasMore": True,
        }
        assert result["appliedFilters"] == {
            "search": "smith",
            "filters": {},
            "sortBy": "created_at",
            "sortOrder": "DESC",
        }
        assert result["rlsApplied"] is False

        count_sql, count_params = fake_db.calls[0]
        data_sql, data_params = fake_db.calls[1]
        assert count_sql.startswith('SELECT COUNT(*) AS total FROM "customers" WHERE (')
        assert data_sql.endswith('ORDER BY "created_at" DESC, "id" ASC LIMIT %s OFFSET %s')
        assert data_params == count_params + [10, 10]
        assert count_params[-1] is True

    @pytest.mark.asyncio
    async def test_rls_clause_appended(self, service, fake_db, customer_ctx):
        fake_db.on("COUNT(*)", rows=[{"total": 1}])

        result = await service.find_all(
            "work_order", customer_ctx, QuerySpec(filters={}, include_inactive=True)
        )

        assert result["rlsApplied"] is True
        assert result["pagination"]["hasMore"] is False
        assert fake_db.calls[0] == (
            'SELECT COUNT(*) AS total FROM "work_orders" WHERE "customer_id" = %s',
            [42],
        )

    @pytest.mark.asyncio
    async def test_filters_and_sort_reported(self, service, fake_db, admin_ctx):
        result = await service.find_all(
            "work_order",
            admin_ctx,
            {"filters": {"status": "pending", "priority": {"in": ["high", "urgent"]}}, "sortBy": "priority"},
        )

        assert result["appliedFilters"]["filters"] == {
            "status": {"eq": "pending"},
            "priority": {"in": ["high", "urgent"]},
        }
        assert result["appliedFilters"]["sortBy"] == "priority"
        assert result["appliedFilters"]["sortOrder"] == "ASC"
        assert result["pagination"]["total"] == 0
        assert result["pagination"]["totalPages"] == 0

    @pytest.mark.asyncio
    async def test_non_filterable_field_rejected(self, service, fake_db, admin_ctx):
        with pytest.raises(ValidationError):
            await service.find_all("technician", admin_ctx, {"filters": {"hourly_rate": 10}})
        fake_db.query.assert_not_awaited()


class TestFindByField:
    @pytest.mark.asyncio
    async def test_lookup(self, service, fake_db, admin_ctx):
        fake_db.on('FROM "customers"', rows=[{"id": 4, "email": "a@x.io"}])

        result = await service.find_by_field("customer", admin_ctx, "email", "a@x.io")

        assert result == {"id": 4, "email": "a@x.io"}
        assert fake_db.calls == [
            ('SELECT * FROM "customers" WHERE "email" = %s LIMIT 1', ["a@x.io"])
        ]

    @pytest.mark.asyncio
    async def test_missing_returns_none(self, service, customer_ctx):
        assert await service.find_by_field("customer", customer_ctx, "email", "b@x.io") is None

    @pytest.mark.asyncio
    async def test_non_filterable_field_rejected(self, service, admin_ctx):
        with pytest.raises(ValidationError, match="cannot be used for lookup"):
            await service.find_by_field("technician", admin_ctx, "hourly_rate", 10)


class TestCount:
    @pytest.mark.asyncio
    async def test_count_with_filters_and_rls(self, service, fake_db, customer_ctx):
        fake_db.on("COUNT(*)", rows=[{"total": 3}])

        assert await service.count("work_order", customer_ctx, {"status": "pending"}) == 3
        assert fake_db.calls == [
            (
                'SELECT COUNT(*) AS total FROM "work_orders" WHERE "status" = %s AND "customer_id" = %s',
                ["pending", 42],
            )
        ]

    @pytest.mark.asyncio
    async def test_count_all(self, service, fake_db, admin_ctx):
        fake_db.on("COUNT(*)", rows=[{"total": 8}])
        assert await service.count("inventory", admin_ctx) == 8
        assert fake_db.calls[0][0] == 'SELECT COUNT(*) AS total FROM "inventory"'


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_fills_ordinal_and_audits(self, service, fake_db, sink, admin_ctx):
        fake_db.on("MAX(", rows=[{"next_value": 51}])
        fake_db.on('INSERT INTO "roles"', rows=[{"id": 6, "name": "auditor", "priority": 51}])

        result = await service.create(
            "role", admin_ctx, {"name": "auditor", "description": "Read-only"}, AUDIT_CTX
        )
        await service.wait_for_audits()

        assert result == {"id": 6, "name": "auditor", "priority": 51}
        assert fake_db.calls[1] == (
            'INSERT INTO "roles" ("name", "description", "priority") VALUES (%s, %s, %s) RETURNING *',
            ["auditor", "Read-only", 51],
        )
        assert fake_db.committed == 1

        (record,) = audit_records(sink)
        assert record["action"] == "role_create"
        assert record["resource_type"] == "role"
        assert record["resource_id"] == 6
        assert record["new_values"] == {"id": 6, "name": "auditor", "priority": 51}
        assert record["old_values"] is None

    @pytest.mark.asyncio
    async def test_explicit_ordinal_kept(self, service, fake_db, admin_ctx):
        fake_db.on('INSERT INTO "roles"', rows=[{"id": 7}])
        await service.create("role", admin_ctx, {"name": "auditor", "priority": 10})
        assert fake_db.statements("SELECT") == []

    @pytest.mark.asyncio
    async def test_system_managed_fields_dropped(self, service, fake_db, admin_ctx):
        fake_db.on('INSERT INTO "inventory"', rows=[{"id": 1}])
        await service.create(
            "inventory",
            admin_ctx,
            {"id": 99, "name": "Valve", "sku": "V-1", "created_at": "2020-01-01"},
        )
        assert fake_db.calls[0] == (
            'INSERT INTO "inventory" ("name", "sku") VALUES (%s, %s) RETURNING *',
            ["Valve", "V-1"],
        )

    @pytest.mark.asyncio
    async def test_json_fields_serialized(self, service, fake_db, admin_ctx):
        fake_db.on('INSERT INTO "customers"', rows=[{"id": 1}])
        await service.create(
            "customer",
            admin_ctx,
            {
                "email": "a@x.io",
                "first_name": "Ann",
                "last_name": "Lee",
                "billing_address": {"city": "Oslo"},
            },
        )
        assert fake_db.calls[0][1][-1] == '{"city": "Oslo"}'

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, service, fake_db, admin_ctx):
        with pytest.raises(ValidationError, match="Unknown field") as exc_info:
            await service.create("inventory", admin_ctx, {"name": "Valve", "sku": "V", "colour": "red"})
        assert exc_info.value.field == "colour"
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_required_fields(self, service, fake_db, admin_ctx):
        with pytest.raises(ValidationError) as exc_info:
            await service.create("customer", admin_ctx, {"phone": "555"})
        assert exc_info.value.message == "Missing required fields: email, first_name, last_name"
        assert exc_info.value.field == "email"
        assert fake_db.rolled_back == 1
        assert fake_db.statements("INSERT") == []

    @pytest.mark.asyncio
    async def test_invalid_enum_value(self, service, admin_ctx):
        with pytest.raises(ValidationError, match="Invalid value for priority"):
            await service.create("work_order", admin_ctx, {"customer_id": 1, "priority": "asap"})

    @pytest.mark.asyncio
    async def test_payload_must_be_object(self, service, admin_ctx):
        with pytest.raises(ValidationError, match="must be an object"):
            await service.create("inventory", admin_ctx, ["name"])

    @pytest.mark.asyncio
    async def test_permission_denied(self, service, fake_db, customer_ctx):
        with pytest.raises(PermissionDenied) as exc_info:
            await service.create("technician", customer_ctx, {"email": "t@x.io"})
        assert exc_info.value.minimum_role == "manager"
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unique_violation_translated(self, service, fake_db, admin_ctx):
        fake_db.on('INSERT INTO "inventory"', error=UniqueViolation("sku"))
        with pytest.raises(ConstraintError) as exc_info:
            await service.create("inventory", admin_ctx, {"name": "Valve", "sku": "V-1"})
        assert exc_info.value.status_code == 409
        assert exc_info.value.field == "sku"
        assert fake_db.rolled_back == 1

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_create(self, service, fake_db, sink, admin_ctx, caplog):
        sink.log.side_effect = RuntimeError("audit store down")
        fake_db.on('INSERT INTO "inventory"', rows=[{"id": 3, "name": "Valve"}])

        with caplog.at_level(logging.ERROR):
            result = await service.create("inventory", admin_ctx, {"name": "Valve", "sku": "V"}, AUDIT_CTX)
            await service.wait_for_audits()

        assert result["id"] == 3
        assert fake_db.committed == 1
        assert "Failed to write audit log" in caplog.text


# ---------------------------------------------------------------------------
# update
# ---------------------------------------------------------------------------


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update(self, service, fake_db, sink, admin_ctx):
        fake_db.on('SELECT * FROM "customers"', rows=[{"id": 9, "first_name": "Anne"}])
        fake_db.on('UPDATE "customers"', rows=[{"id": 9, "first_name": "Ann"}])

        result = await service.update("customer", admin_ctx, 9, {"first_name": "Ann"}, AUDIT_CTX)
        await service.wait_for_audits()

        assert result == {"id": 9, "first_name": "Ann"}
        assert fake_db.calls == [
            ('SELECT * FROM "customers" WHERE "id" = %s FOR UPDATE', [9]),
            (
                'UPDATE "customers" SET "first_name" = %s, "updated_at" = NOW() '
                'WHERE "id" = %s RETURNING *',
                ["Ann", 9],
            ),
        ]
        (record,) = audit_records(sink)
        assert record["action"] == "customer_update"
        assert record["old_values"] == {"id": 9, "first_name": "Anne"}
        assert record["new_values"] == {"id": 9, "first_name": "Ann"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field_name", ["id", "created_at", "work_order_number"])
    async def test_immutable_fields_rejected(self, service, fake_db, admin_ctx, field_name):
        with pytest.raises(ValidationError, match="Cannot update immutable field"):
            await service.update("work_order", admin_ctx, 1, {field_name: "x"})
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{}, {"updated_at": "2020-01-01"}])
    async def test_empty_payload_rejected(self, service, admin_ctx, payload):
        with pytest.raises(ValidationError, match="No valid fields provided"):
            await service.update("inventory", admin_ctx, 1, payload)

    @pytest.mark.asyncio
    async def test_required_field_cannot_be_cleared(self, service, admin_ctx):
        with pytest.raises(ValidationError, match="cannot be empty"):
            await service.update("inventory", admin_ctx, 1, {"name": ""})

    @pytest.mark.asyncio
    async def test_missing_row(self, service, fake_db, admin_ctx):
        with pytest.raises(NotFound):
            await service.update("inventory", admin_ctx, 1, {"quantity": 4})
        assert fake_db.statements("UPDATE") == []
        assert fake_db.rolled_back == 1

    @pytest.mark.asyncio
    async def test_rls_scopes_the_locking_read(self, service, fake_db, technician_ctx):
        with pytest.raises(NotFound):
            await service.update("work_order", technician_ctx, 3, {"completed_at": "2026-03-01T10:00:00"})
        assert fake_db.calls[0] == (
            'SELECT * FROM "work_orders" WHERE "id" = %s AND "assigned_technician_id" = %s FOR UPDATE',
            [3, 7],
        )

    @pytest.mark.asyncio
    async def test_protected_role_rename_rejected(self, service, fake_db, sink, admin_ctx):
        fake_db.on('SELECT * FROM "roles"', rows=[{"id": 1, "name": "admin", "priority": 5}])

        with pytest.raises(ProtectedResourceError) as exc_info:
            await service.update("role", admin_ctx, 1, {"name": "root"}, AUDIT_CTX)
        await service.wait_for_audits()

        assert exc_info.value.message == "Cannot modify name of system role 'admin'"
        assert fake_db.statements("UPDATE") == []
        assert fake_db.rolled_back == 1
        sink.log.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_protected_role_unchanged_value_allowed(self, service, fake_db, admin_ctx):
        existing = {"id": 1, "name": "admin", "priority": 5}
        fake_db.on('SELECT * FROM "roles"', rows=[existing])
        fake_db.on('UPDATE "roles"', rows=[{**existing, "description": "Full access"}])

        result = await service.update(
            "role", admin_ctx, 1, {"name": "admin", "description": "Full access"}
        )
        assert result["description"] == "Full access"

    @pytest.mark.asyncio
    async def test_custom_role_can_be_renamed(self, service, fake_db, admin_ctx):
        fake_db.on('SELECT * FROM "roles"', rows=[{"id": 6, "name": "auditor"}])
        fake_db.on('UPDATE "roles"', rows=[{"id": 6, "name": "reviewer"}])
        assert (await service.update("role", admin_ctx, 6, {"name": "reviewer"}))["name"] == "reviewer"


# ---------------------------------------------------------------------------
# delete
# ---------------------------------------------------------------------------


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_cascades_then_audits(self, service, fake_db, sink, admin_ctx, caplog):
        row = {"id": 5, "name": "auditor", "priority": 51}
        fake_db.on('SELECT * FROM "roles"', rows=[row])
        fake_db.on('DELETE FROM "audit_logs"', rowcount=7)
        fake_db.on('DELETE FROM "roles"', rows=[row])

        with caplog.at_level(logging.INFO):
            result = await service.delete("role", admin_ctx, 5, AUDIT_CTX)
        await service.wait_for_audits()

        assert result == row
        assert fake_db.calls == [
            ('SELECT * FROM "roles" WHERE "id" = %s FOR UPDATE', [5]),
            (
                'DELETE FROM "audit_logs" WHERE "resource_id" = %s AND "resource_type" = %s',
                [5, "role"],
            ),
            ('DELETE FROM "roles" WHERE "id" = %s RETURNING *', [5]),
        ]
        assert fake_db.committed == 1
        assert "Deleted role 5 (7 dependent rows)" in caplog.text

        (record,) = audit_records(sink)
        assert record["action"] == "role_delete"
        assert record["resource_id"] == 5
        assert record["old_values"] == row
        assert record["new_values"] is None

    @pytest.mark.asyncio
    async def test_polymorphic_and_foreign_key_dependents(self, fake_db, evaluator, sink, admin_ctx, caplog):
        registry = EntityMetadataRegistry.from_dicts(
            [
                {
                    "entity": "role",
                    "tableName": "roles",
                    "rlsResource": "roles",
                    "identityField": "name",
                    "fields": [
                        {"name": "id", "type": "integer", "primaryKey": True},
                        {"name": "name", "type": "string"},
                    ],
                    "dependents": [
                        {
                            "table": "audit_logs",
                            "foreignKey": "resource_id",
                            "polymorphicType": {"column": "resource_type", "value": "role"},
                        },
                        {"table": "user_sessions", "foreignKey": "role_id"},
                    ],
                }
            ]
        )
        service = GenericEntityService(fake_db, registry, evaluator, audit=AuditBridge(sink, registry))
        row = {"id": 5, "name": "auditor"}
        fake_db.on('SELECT * FROM "roles"', rows=[row])
        fake_db.on('DELETE FROM "audit_logs"', rowcount=5)
        fake_db.on('DELETE FROM "user_sessions"', rowcount=2)
        fake_db.on('DELETE FROM "roles"', rows=[row])

        with caplog.at_level(logging.INFO):
            result = await service.delete("role", admin_ctx, 5, AUDIT_CTX)
        await service.wait_for_audits()

        assert result == row
        assert fake_db.calls == [
            ('SELECT * FROM "roles" WHERE "id" = %s FOR UPDATE', [5]),
            (
                'DELETE FROM "audit_logs" WHERE "resource_id" = %s AND "resource_type" = %s',
                [5, "role"],
            ),
            ('DELETE FROM "user_sessions" WHERE "role_id" = %s', [5]),
            ('DELETE FROM "roles" WHERE "id" = %s RETURNING *', [5]),
        ]
        assert fake_db.committed == 1
        assert "Deleted role 5 (7 dependent rows)" in caplog.text

        (record,) = audit_records(sink)
        assert record["action"] == "role_delete"
        assert record["resource_id"] == 5

    @pytest.mark.asyncio
    async def test_protected_role_cannot_be_deleted(self, service, fake_db, sink, admin_ctx):
        fake_db.on('SELECT * FROM "roles"', rows=[{"id": 1, "name": "admin"}])

        with pytest.raises(ProtectedResourceError, match="Cannot delete system role 'admin'"):
            await service.delete("role", admin_ctx, 1, AUDIT_CTX)
        await service.wait_for_audits()

        assert fake_db.statements("DELETE") == []
        assert fake_db.rolled_back == 1
        sink.log.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_row(self, service, fake_db, admin_ctx):
        with pytest.raises(NotFound):
            await service.delete("customer", admin_ctx, 404)
        assert fake_db.statements("DELETE") == []

    @pytest.mark.asyncio
    async def test_cascade_failure_rolls_back(self, service, fake_db, sink, admin_ctx):
        fake_db.on('SELECT * FROM "customers"', rows=[{"id": 9}])
        fake_db.on('DELETE FROM "audit_logs"', error=RuntimeError("lock timeout"))

        with pytest.raises(RuntimeError, match="lock timeout"):
            await service.delete("customer", admin_ctx, 9, AUDIT_CTX)
        await service.wait_for_audits()

        assert fake_db.statements('DELETE FROM "customers"') == []
        assert fake_db.rolled_back == 1
        sink.log.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_permission_denied(self, service, fake_db):
        with pytest.raises(PermissionDenied) as exc_info:
            await service.delete("role", PermissionContext(user_id=2, role="manager"), 6)
        assert exc_info.value.minimum_role == "admin"
        fake_db.query.assert_not_awaited()


# ---------------------------------------------------------------------------
# batch
# ---------------------------------------------------------------------------


class TestBatch:
    @pytest.mark.asyncio
    async def test_mixed_batch(self, service, fake_db, sink, admin_ctx):
        fake_db.on('INSERT INTO "inventory"', rows=[{"id": 10, "name": "Valve"}])
        fake_db.on('SELECT * FROM "inventory"', rows=[{"id": 2, "quantity": 1}])
        fake_db.on('UPDATE "inventory"', rows=[{"id": 2, "quantity": 5}])
        fake_db.on('DELETE FROM "inventory"', rows=[{"id": 2, "quantity": 5}])

        result = await service.batch(
            "inventory",
            admin_ctx,
            [
                {"operation": "create", "data": {"name": "Valve", "sku": "V-1"}},
                {"operation": "update", "id": 2, "data": {"quantity": 5}},
                {"operation": "delete", "id": 2},
            ],
            AUDIT_CTX,
        )
        await service.wait_for_audits()

        assert result["stats"] == {"created": 1, "updated": 1, "deleted": 1}
        assert [r["operation"] for r in result["results"]] == ["create", "update", "delete"]
        assert all(r["success"] for r in result["results"])
        assert result["results"][0]["result"] == {"id": 10, "name": "Valve"}
        assert fake_db.committed == 1
        assert [r["action"] for r in audit_records(sink)] == [
            "inventory_create",
            "inventory_update",
            "inventory_delete",
        ]

    @pytest.mark.asyncio
    async def test_failure_rolls_back_everything(self, service, fake_db, sink, admin_ctx, caplog):
        fake_db.on('INSERT INTO "inventory"', rows=[{"id": 10}])

        with caplog.at_level(logging.WARNING), pytest.raises(NotFound):
            await service.batch(
                "inventory",
                admin_ctx,
                [
                    {"operation": "create", "data": {"name": "Valve", "sku": "V-1"}},
                    {"operation": "update", "id": 404, "data": {"quantity": 5}},
                ],
                AUDIT_CTX,
            )
        await service.wait_for_audits()

        assert fake_db.rolled_back == 1
        assert fake_db.committed == 0
        sink.log.assert_not_awaited()
        assert "Batch inventory failed at operation 1 (update)" in caplog.text

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operations,message",
        [
            ([], "non-empty list"),
            ("create", "non-empty list"),
            (["create"], "index 0 must be an object"),
            ([{"operation": "upsert"}], "Invalid operation 'upsert' at index 0"),
            ([{"operation": "delete"}], "requires an id"),
            ([{"operation": "create"}], "requires data"),
        ],
    )
    async def test_malformed_batch(self, service, fake_db, admin_ctx, operations, message):
        with pytest.raises(ValidationError, match=message):
            await service.batch("inventory", admin_ctx, operations)
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_payload_errors_report_index(self, service, fake_db, admin_ctx):
        with pytest.raises(ValidationError, match="Operation at index 1: Unknown field"):
            await service.batch(
                "inventory",
                admin_ctx,
                [
                    {"operation": "create", "data": {"name": "Valve", "sku": "V-1"}},
                    {"operation": "create", "data": {"colour": "red"}},
                ],
            )
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_each_kind_is_authorized(self, service, fake_db):
        dispatcher = PermissionContext(user_id=3, role="dispatcher")
        with pytest.raises(PermissionDenied):
            await service.batch(
                "inventory",
                dispatcher,
                [
                    {"operation": "create", "data": {"name": "Valve", "sku": "V-1"}},
                    {"operation": "delete", "id": 1},
                ],
            )
        fake_db.query.assert_not_awaited()


class TestWithoutAudit:
    @pytest.mark.asyncio
    async def test_no_bridge_no_tasks(self, fake_db, registry, evaluator, admin_ctx):
        service = GenericEntityService(fake_db, registry, evaluator)
        fake_db.on('INSERT INTO "inventory"', rows=[{"id": 1}])

        await service.create("inventory", admin_ctx, {"name": "Valve", "sku": "V"}, AUDIT_CTX)

        assert service._audit_tasks == set()


# ---------------------------------------------------------------------------
# ownership, readonly fields and field-level access
# ---------------------------------------------------------------------------


class TestOwnership:
    @pytest.mark.asyncio
    async def test_customer_updates_own_user_row(self, service, fake_db, customer_ctx):
        fake_db.on('SELECT * FROM "users"', rows=[{"id": 42, "first_name": "Cat", "role_id": 1}])
        fake_db.on('UPDATE "users"', rows=[{"id": 42, "first_name": "Kat", "role_id": 1}])

        result = await service.update("user", customer_ctx, 42, {"first_name": "Kat"})

        assert result == {"id": 42, "first_name": "Kat", "role_id": 1}
        assert fake_db.calls[0] == (
            'SELECT * FROM "users" WHERE "id" = %s AND "id" = %s FOR UPDATE',
            [42, 42],
        )

    @pytest.mark.asyncio
    async def test_customer_cannot_change_own_role(self, service, fake_db, customer_ctx):
        with pytest.raises(PermissionDenied) as exc_info:
            await service.update("user", customer_ctx, 42, {"role_id": 1, "status": "active"})

        assert exc_info.value.message == "Role 'customer' cannot update field(s): role_id, status"
        assert exc_info.value.minimum_role == "admin"
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_users_row_is_refused_below_manager(self, service, fake_db, sink):
        dispatcher = PermissionContext(user_id=3, role="dispatcher")
        fake_db.on('SELECT * FROM "users"', rows=[{"id": 9, "first_name": "Bo"}])

        with pytest.raises(PermissionDenied, match="Not permitted to update this users record"):
            await service.update("user", dispatcher, 9, {"first_name": "Bob"}, AUDIT_CTX)
        await service.wait_for_audits()

        assert fake_db.statements("UPDATE") == []
        assert fake_db.rolled_back == 1
        sink.log.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_manager_updates_any_user(self, service, fake_db):
        manager = PermissionContext(user_id=2, role="manager")
        fake_db.on('SELECT * FROM "users"', rows=[{"id": 9, "first_name": "Bo"}])
        fake_db.on('UPDATE "users"', rows=[{"id": 9, "first_name": "Bob"}])

        result = await service.update("user", manager, 9, {"first_name": "Bob"})

        assert result["first_name"] == "Bob"
        assert len(fake_db.statements("UPDATE")) == 1

    @pytest.mark.asyncio
    async def test_entity_without_owner_field_is_refused(self, fake_db, evaluator):
        registry = EntityMetadataRegistry.from_dicts(
            [
                {
                    "entity": "profile",
                    "tableName": "profiles",
                    "rlsResource": "users",
                    "fields": [
                        {"name": "id", "type": "integer", "primaryKey": True},
                        {"name": "bio", "type": "text"},
                    ],
                }
            ]
        )
        service = GenericEntityService(fake_db, registry, evaluator)
        fake_db.on('SELECT * FROM "profiles"', rows=[{"id": 42, "bio": "hi"}])

        with pytest.raises(PermissionDenied):
            await service.update("profile", PermissionContext(42, "customer"), 42, {"bio": "hello"})
        assert fake_db.statements("UPDATE") == []


class TestReadonlyFields:
    @pytest.mark.asyncio
    async def test_update_rejects_readonly_field(self, service, fake_db, admin_ctx):
        with pytest.raises(ValidationError) as exc_info:
            await service.update("role", admin_ctx, 9, {"is_system_role": True})

        assert exc_info.value.message == "Cannot set readonly field(s): is_system_role"
        assert exc_info.value.field == "is_system_role"
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_rejects_readonly_field(self, service, fake_db, admin_ctx):
        with pytest.raises(ValidationError, match="readonly"):
            await service.create("role", admin_ctx, {"name": "auditor", "is_system_role": True})
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_batch_reports_readonly_index(self, service, fake_db, admin_ctx):
        with pytest.raises(ValidationError, match="Operation at index 0: Cannot set readonly"):
            await service.batch(
                "role", admin_ctx, [{"operation": "update", "id": 9, "data": {"is_system_role": False}}]
            )
        fake_db.query.assert_not_awaited()


class TestFieldAccess:
    @pytest.mark.asyncio
    async def test_create_with_disallowed_field(self, service, fake_db, customer_ctx):
        with pytest.raises(PermissionDenied) as exc_info:
            await service.create(
                "work_order", customer_ctx, {"customer_id": 42, "assigned_technician_id": 7}
            )

        assert exc_info.value.status_code == 403
        assert exc_info.value.minimum_role == "dispatcher"
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_closed_field_denied_to_admin(self, service, fake_db, admin_ctx):
        with pytest.raises(PermissionDenied) as exc_info:
            await service.update("customer", admin_ctx, 9, {"email": "new@x.io"})

        assert exc_info.value.message == "Role 'admin' cannot update field(s): email"
        assert exc_info.value.minimum_role is None
        fake_db.query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_projects_response_but_audits_full_row(self, service, fake_db, sink, customer_ctx):
        row = {"id": 1, "customer_id": 42, "summary": "Leak"}
        fake_db.on('INSERT INTO "work_orders"', rows=[row])

        result = await service.create(
            "work_order", customer_ctx, {"customer_id": 42, "summary": "Leak"}, AUDIT_CTX
        )
        await service.wait_for_audits()

        assert result == {"id": 1, "summary": "Leak"}
        (record,) = audit_records(sink)
        assert record["new_values"] == row

    @pytest.mark.asyncio
    async def test_read_projection_by_role(self, service, fake_db, customer_ctx, technician_ctx):
        fake_db.on('SELECT * FROM "work_orders"', rows=[{"id": 1, "customer_id": 42, "status": "pending"}])

        as_customer = await service.find_all("work_order", customer_ctx)
        as_technician = await service.find_all("work_order", technician_ctx)

        assert as_customer["data"] == [{"id": 1, "status": "pending"}]
        assert as_technician["data"] == [{"id": 1, "customer_id": 42, "status": "pending"}]

    @pytest.mark.asyncio
    async def test_batch_checks_each_payload(self, service, fake_db, customer_ctx):
        with pytest.raises(PermissionDenied, match="status"):
            await service.batch(
                "work_order",
                customer_ctx,
                [
                    {"operation": "create", "data": {"customer_id": 42}},
                    {"operation": "create", "data": {"customer_id": 42, "status": "assigned"}},
                ],
            )
        fake_db.query.assert_not_awaited()
