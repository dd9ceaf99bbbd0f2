"""Generic CRUD service driven by entity metadata.

Every public method takes an entity key and a PermissionContext, and
runs the same pipeline:

    registry lookup -> permission check -> row-level security
    -> parameterized SQL -> output redaction -> audit after commit

Writes that read before they write (update, delete, batch) run inside a
single ``with_transaction`` call. Audit records are dispatched as
detached tasks once the transaction has committed, so a failing audit
store never fails or rolls back the mutation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from tross.audit.bridge import AuditBridge
from tross.audit.context import AuditContext
from tross.auth.field_access import FieldAccessPolicy
from tross.auth.output_filter import filter_output, filter_output_array
from tross.auth.permissions import PermissionEvaluator
from tross.auth.rls import RLSFilterBuilder
from tross.auth.types import Decision, Denied, Operation, PermissionContext
from tross.core.errors import (
    EntityServiceError,
    NotFound,
    PermissionDenied,
    ProtectedResourceError,
    ValidationError,
)
from tross.metadata.loader import EntityMetadata, EntityMetadataRegistry
from tross.persistence.cascade import CascadeResult, delete_dependents
from tross.persistence.client import DatabaseClient, QueryResult
from tross.persistence.errors import translate_db_error
from tross.persistence.ordinals import get_next_ordinal_value
from tross.query.builder import FilterCondition, QueryBuilder, QuerySpec

logger = logging.getLogger(__name__)

# Never accepted from a create payload
SYSTEM_MANAGED_FIELDS = ("id", "created_at", "updated_at")

# Never changed by an update, on any entity
UNIVERSAL_IMMUTABLE_FIELDS = ("id", "created_at")

BATCH_OPERATIONS = ("create", "update", "delete")


def _col(name: str) -> str:
    return f'"{name}"'


def _where(clauses: list[str]) -> str:
    return " WHERE " + " AND ".join(clauses) if clauses else ""


class GenericEntityService:
    """Metadata-driven CRUD for every registered entity.

    Args:
        db: Database client used for reads and to open transactions
        registry: Loaded entity metadata
        evaluator: Role/resource permission evaluator
        rls: Row-level security filter builder
        query_builder: Builds search/filter/sort/pagination clauses
        audit: Audit bridge; None disables auditing
        field_access: Field-level role rules; built from the evaluator's
            matrix when None
    """

    def __init__(
        self,
        db: DatabaseClient,
        registry: EntityMetadataRegistry,
        evaluator: PermissionEvaluator,
        rls: RLSFilterBuilder | None = None,
        query_builder: QueryBuilder | None = None,
        audit: AuditBridge | None = None,
        field_access: FieldAccessPolicy | None = None,
    ):
        self.db = db
        self.registry = registry
        self.evaluator = evaluator
        self.rls = rls or RLSFilterBuilder()
        self.query_builder = query_builder or QueryBuilder()
        self.audit = audit
        self.field_access = field_access or FieldAccessPolicy(evaluator.matrix)
        self._audit_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_by_id(self, entity_key: str, ctx: PermissionContext, record_id: Any) -> dict[str, Any]:
        """Return one record by primary key.

        Raises:
            NotFound: If the row does not exist or RLS hides it
        """
        metadata = self.registry.get(entity_key)
        self._authorize(metadata, ctx, Operation.READ)
        pk = self._coerce_id(metadata, record_id)

        row = await self._select_by_id(self.db, metadata, ctx, pk)
        if row is None:
            raise NotFound(metadata.entity_key, record_id)
        self._authorize_record(metadata, ctx, Operation.READ, row)
        return self._present(row, metadata, ctx)

    async def find_all(
        self,
        entity_key: str,
        ctx: PermissionContext,
        spec: QuerySpec | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Search, filter, sort and paginate an entity's records.

        Returns:
            ``{"data", "pagination", "appliedFilters", "rlsApplied"}``
        """
        metadata = self.registry.get(entity_key)
        self._authorize(metadata, ctx, Operation.READ)

        if spec is None:
            spec = QuerySpec()
        elif not isinstance(spec, QuerySpec):
            spec = QuerySpec.from_params(spec)

        descriptor = self.query_builder.build(metadata, spec)
        rls = self.rls.build(ctx, metadata)

        clauses = list(descriptor.where_clauses)
        params = list(descriptor.params)
        if rls.clause:
            clauses.append(rls.clause)
            params.extend(rls.params)
        where = _where(clauses)
        table = _col(metadata.table_name)

        count_result = await self._execute(
            self.db, metadata, f"SELECT COUNT(*) AS total FROM {table}{where}", params
        )
        total = int(count_result.first["total"]) if count_result.first else 0

        data_result = await self._execute(
            self.db,
            metadata,
            f"SELECT * FROM {table}{where} ORDER BY {descriptor.order_by} LIMIT %s OFFSET %s",
            params + [descriptor.limit, descriptor.offset],
        )

        total_pages = math.ceil(total / descriptor.limit) if total else 0
        default_sort = metadata.effective_sort
        sort_field = spec.sort_by or default_sort.field
        if spec.sort_order:
            sort_order = spec.sort_order.upper()
        else:
            sort_order = default_sort.order if sort_field == default_sort.field else "ASC"
        return {
            "data": self.field_access.filter_readable_array(
                filter_output_array(data_result.rows, metadata), metadata, ctx
            ),
            "pagination": {
                "page": descriptor.page,
                "limit": descriptor.limit,
                "offset": descriptor.offset,
                "total": total,
                "totalPages": total_pages,
                "hasMore": descriptor.page < total_pages,
            },
            "appliedFilters": {
                "search": spec.search,
                "filters": self._describe_filters(spec.filters),
                "sortBy": sort_field,
                "sortOrder": sort_order,
            },
            "rlsApplied": rls.applied,
        }

    async def find_by_field(
        self,
        entity_key: str,
        ctx: PermissionContext,
        field_name: str,
        value: Any,
    ) -> dict[str, Any] | None:
        """Return the first record whose *field_name* equals *value*, or None.

        Raises:
            ValidationError: If the field is neither the primary key nor filterable
        """
        metadata = self.registry.get(entity_key)
        self._authorize(metadata, ctx, Operation.READ)

        if field_name != metadata.primary_key and field_name not in metadata.filterable_fields:
            raise ValidationError(
                f"Field '{field_name}' cannot be used for lookup on {metadata.entity_key}",
                field=field_name,
            )
        if field_name == metadata.primary_key:
            value = self._coerce_id(metadata, value)

        sql, params = self.query_builder.build_condition(field_name, FilterCondition("eq", value))
        clauses = [sql]
        rls = self.rls.build(ctx, metadata)
        if rls.clause:
            clauses.append(rls.clause)
            params = params + rls.params

        result = await self._execute(
            self.db,
            metadata,
            f"SELECT * FROM {_col(metadata.table_name)}{_where(clauses)} LIMIT 1",
            params,
        )
        if result.first is None:
            return None
        self._authorize_record(metadata, ctx, Operation.READ, result.first)
        return self._present(result.first, metadata, ctx)

    async def count(
        self,
        entity_key: str,
        ctx: PermissionContext,
        filters: Mapping[str, Any] | None = None,
    ) -> int:
        """Count the rows the caller can see, optionally filtered."""
        metadata = self.registry.get(entity_key)
        self._authorize(metadata, ctx, Operation.READ)

        parsed = QuerySpec.from_params({"filters": filters or {}}).filters
        clauses, params = self.query_builder.build_filters(metadata, parsed)
        rls = self.rls.build(ctx, metadata)
        if rls.clause:
            clauses.append(rls.clause)
            params.extend(rls.params)

        result = await self._execute(
            self.db,
            metadata,
            f"SELECT COUNT(*) AS total FROM {_col(metadata.table_name)}{_where(clauses)}",
            params,
        )
        return int(result.first["total"]) if result.first else 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        entity_key: str,
        ctx: PermissionContext,
        data: Mapping[str, Any],
        audit_context: AuditContext | None = None,
    ) -> dict[str, Any]:
        """Insert a record and return it, redacted.

        Raises:
            ValidationError: Unknown, readonly or missing required fields, bad enum values
            PermissionDenied: The role may not create the entity or set a field
            ConstraintError: Unique or foreign key violation
        """
        metadata = self.registry.get(entity_key)
        self._authorize(metadata, ctx, Operation.CREATE)
        payload = self._prepare_create(metadata, data)
        self.field_access.check_write(metadata, ctx, payload, "create")
        self._authorize_record(metadata, ctx, Operation.CREATE, payload)

        row = await self.db.with_transaction(lambda tx: self._insert(tx, metadata, payload))

        logger.info("Created %s %s", metadata.entity_key, row.get(metadata.primary_key))
        self._dispatch_audit(
            "create", metadata, row, audit_context, new_values=filter_output(row, metadata)
        )
        return self._present(row, metadata, ctx)

    async def update(
        self,
        entity_key: str,
        ctx: PermissionContext,
        record_id: Any,
        data: Mapping[str, Any],
        audit_context: AuditContext | None = None,
    ) -> dict[str, Any]:
        """Update a record and return the new version, redacted.

        Raises:
            ValidationError: Unknown, readonly or immutable fields in the payload
            PermissionDenied: The role may not update the record or a field
            NotFound: If the row does not exist or RLS hides it
            ProtectedResourceError: If a protected field of a system row changes
        """
        metadata = self.registry.get(entity_key)
        self._authorize(metadata, ctx, Operation.UPDATE)
        pk = self._coerce_id(metadata, record_id)
        payload = self._prepare_update(metadata, data)
        self.field_access.check_write(metadata, ctx, payload, "update")

        existing, updated = await self.db.with_transaction(
            lambda tx: self._update_row(tx, metadata, ctx, pk, payload)
        )

        logger.info("Updated %s %s (%s)", metadata.entity_key, pk, ", ".join(payload))
        self._dispatch_audit(
            "update",
            metadata,
            updated,
            audit_context,
            old_values=filter_output(existing, metadata),
            new_values=filter_output(updated, metadata),
        )
        return self._present(updated, metadata, ctx)

    async def delete(
        self,
        entity_key: str,
        ctx: PermissionContext,
        record_id: Any,
        audit_context: AuditContext | None = None,
    ) -> dict[str, Any]:
        """Delete a record and its dependents, returning the deleted row.

        Dependents are removed first, in declared order, in the same
        transaction as the parent row.

        Raises:
            NotFound: If the row does not exist or RLS hides it
            ProtectedResourceError: If the row is a protected system row
        """
        metadata = self.registry.get(entity_key)
        self._authorize(metadata, ctx, Operation.DELETE)
        pk = self._coerce_id(metadata, record_id)

        deleted, cascade = await self.db.with_transaction(
            lambda tx: self._delete_row(tx, metadata, ctx, pk)
        )

        logger.info(
            "Deleted %s %s (%d dependent rows)", metadata.entity_key, pk, cascade.total_deleted
        )
        self._dispatch_audit(
            "delete", metadata, deleted, audit_context, old_values=filter_output(deleted, metadata)
        )
        return self._present(deleted, metadata, ctx)

    async def batch(
        self,
        entity_key: str,
        ctx: PermissionContext,
        operations: list[Mapping[str, Any]],
        audit_context: AuditContext | None = None,
    ) -> dict[str, Any]:
        """Run several create/update/delete operations in one transaction.

        Each operation is ``{"operation": ..., "id": ..., "data": ...}``.
        The batch is all-or-nothing: the first failure rolls everything
        back and is re-raised. Audit records are only written once the
        whole batch has committed.

        Returns:
            ``{"results": [...], "stats": {"created", "updated", "deleted"}}``
        """
        metadata = self.registry.get(entity_key)
        self._validate_batch(operations)
        for kind in BATCH_OPERATIONS:
            if any(op["operation"] == kind for op in operations):
                self._authorize(metadata, ctx, kind)

        # Validate payloads before touching the database
        prepared = []
        for index, op in enumerate(operations):
            kind = op["operation"]
            try:
                pk = self._coerce_id(metadata, op["id"]) if kind != "create" else None
                if kind == "create":
                    payload = self._prepare_create(metadata, op["data"])
                elif kind == "update":
                    payload = self._prepare_update(metadata, op["data"])
                else:
                    payload = None
            except ValidationError as e:
                raise ValidationError(f"Operation at index {index}: {e.message}", e.field) from e
            if payload is not None:
                self.field_access.check_write(metadata, ctx, payload, kind)
            if kind == "create":
                self._authorize_record(metadata, ctx, Operation.CREATE, payload)
            prepared.append((kind, pk, payload))

        async def run(tx: DatabaseClient) -> tuple[list[dict[str, Any]], list[tuple]]:
            results: list[dict[str, Any]] = []
            audits: list[tuple] = []
            for index, (kind, pk, payload) in enumerate(prepared):
                try:
                    if kind == "create":
                        row = await self._insert(tx, metadata, payload)
                        audits.append(("create", row, None, filter_output(row, metadata)))
                    elif kind == "update":
                        existing, row = await self._update_row(tx, metadata, ctx, pk, payload)
                        audits.append(
                            (
                                "update",
                                row,
                                filter_output(existing, metadata),
                                filter_output(row, metadata),
                            )
                        )
                    else:
                        row, _ = await self._delete_row(tx, metadata, ctx, pk)
                        audits.append(("delete", row, filter_output(row, metadata), None))
                except Exception as e:
                    logger.warning(
                        "Batch %s failed at operation %d (%s): %s",
                        metadata.entity_key,
                        index,
                        kind,
                        e,
                    )
                    raise
                results.append(
                    {
                        "index": index,
                        "operation": kind,
                        "success": True,
                        "result": self._present(row, metadata, ctx),
                    }
                )
            return results, audits

        results, audits = await self.db.with_transaction(run)

        stats = {"created": 0, "updated": 0, "deleted": 0}
        for kind, row, old_values, new_values in audits:
            stats[f"{kind}d"] += 1
            self._dispatch_audit(
                kind, metadata, row, audit_context, old_values=old_values, new_values=new_values
            )

        logger.info(
            "Batch %s completed: %d created, %d updated, %d deleted",
            metadata.entity_key,
            stats["created"],
            stats["updated"],
            stats["deleted"],
        )
        return {"results": results, "stats": stats}

    async def wait_for_audits(self) -> None:
        """Wait for every dispatched audit task to finish."""
        while self._audit_tasks:
            await asyncio.gather(*list(self._audit_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Write steps (run on a transaction client)
    # ------------------------------------------------------------------

    async def _insert(
        self, tx: DatabaseClient, metadata: EntityMetadata, payload: dict[str, Any]
    ) -> dict[str, Any]:
        payload = dict(payload)
        for f in metadata.fields.values():
            if f.ordinal_default is not None and payload.get(f.name) is None:
                payload[f.name] = await get_next_ordinal_value(
                    tx, metadata.table_name, f.name, f.ordinal_default
                )

        missing = [f for f in metadata.required_fields if payload.get(f) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing[0])

        table = _col(metadata.table_name)
        if payload:
            columns = ", ".join(_col(name) for name in payload)
            placeholders = ", ".join(["%s"] * len(payload))
            sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *"
        else:
            sql = f"INSERT INTO {table} DEFAULT VALUES RETURNING *"

        result = await self._execute(tx, metadata, sql, self._serialize(metadata, payload))
        return result.first

    async def _update_row(
        self,
        tx: DatabaseClient,
        metadata: EntityMetadata,
        ctx: PermissionContext,
        pk: Any,
        payload: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        existing = await self._select_by_id(tx, metadata, ctx, pk, for_update=True)
        if existing is None:
            raise NotFound(metadata.entity_key, pk)
        self._authorize_record(metadata, ctx, Operation.UPDATE, existing)

        protection = metadata.system_protected
        if protection is not None and protection.protects(existing):
            changed = [
                name
                for name in protection.immutable_fields
                if name in payload and payload[name] != existing.get(name)
            ]
            if changed:
                value = existing.get(protection.field)
                raise ProtectedResourceError(
                    f"Cannot modify {', '.join(changed)} of system {metadata.entity_key} '{value}'",
                    value,
                )

        assignments = [f"{_col(name)} = %s" for name in payload]
        if metadata.has_field("updated_at"):
            assignments.append(f"{_col('updated_at')} = NOW()")
        sql = (
            f"UPDATE {_col(metadata.table_name)} SET {', '.join(assignments)} "
            f"WHERE {_col(metadata.primary_key)} = %s RETURNING *"
        )
        params = self._serialize(metadata, payload) + [pk]
        result = await self._execute(tx, metadata, sql, params)
        return existing, result.first or existing

    async def _delete_row(
        self,
        tx: DatabaseClient,
        metadata: EntityMetadata,
        ctx: PermissionContext,
        pk: Any,
    ) -> tuple[dict[str, Any], CascadeResult]:
        existing = await self._select_by_id(tx, metadata, ctx, pk, for_update=True)
        if existing is None:
            raise NotFound(metadata.entity_key, pk)
        self._authorize_record(metadata, ctx, Operation.DELETE, existing)

        protection = metadata.system_protected
        if protection is not None and protection.prevent_delete and protection.protects(existing):
            value = existing.get(protection.field)
            raise ProtectedResourceError(
                f"Cannot delete system {metadata.entity_key} '{value}'", value
            )

        cascade = await delete_dependents(tx, metadata, pk)

        result = await self._execute(
            tx,
            metadata,
            f"DELETE FROM {_col(metadata.table_name)} "
            f"WHERE {_col(metadata.primary_key)} = %s RETURNING *",
            [pk],
        )
        return result.first or existing, cascade

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _authorize(
        self, metadata: EntityMetadata, ctx: PermissionContext, operation: Operation | str
    ) -> PermissionContext:
        op_ctx = ctx.for_operation(metadata.rls_resource, operation)
        # Predicates wait for the target record, see _authorize_record
        decision = self.evaluator.can_perform(op_ctx, evaluate_predicate=False)
        self._raise_if_denied(metadata, ctx, op_ctx, decision)
        return op_ctx

    def _authorize_record(
        self,
        metadata: EntityMetadata,
        ctx: PermissionContext,
        operation: Operation | str,
        record: Mapping[str, Any],
    ) -> None:
        """Run the full check, predicate included, against *record*.

        The owner is read from ``metadata.owner_field``; an entity without
        one never satisfies an ownership predicate.
        """
        op_ctx = ctx.for_operation(metadata.rls_resource, operation)
        if not self.evaluator.requires_record(op_ctx.resource, op_ctx.operation):
            return
        owner_id = record.get(metadata.owner_field) if metadata.owner_field else None
        decision = self.evaluator.can_perform(replace(op_ctx, owner_id=owner_id))
        self._raise_if_denied(metadata, ctx, op_ctx, decision)

    @staticmethod
    def _raise_if_denied(
        metadata: EntityMetadata, ctx: PermissionContext, op_ctx: PermissionContext, decision: Decision
    ) -> None:
        if isinstance(decision, Denied):
            logger.info(
                "Permission denied: role=%s operation=%s resource=%s",
                ctx.role,
                op_ctx.operation,
                metadata.rls_resource,
            )
            raise PermissionDenied(decision.reason, decision.minimum_required)

    @staticmethod
    def _validate_batch(operations: Any) -> None:
        if not isinstance(operations, list) or not operations:
            raise ValidationError("Operations must be a non-empty list")
        for index, op in enumerate(operations):
            if not isinstance(op, Mapping):
                raise ValidationError(f"Operation at index {index} must be an object")
            kind = op.get("operation")
            if kind not in BATCH_OPERATIONS:
                raise ValidationError(
                    f"Invalid operation '{kind}' at index {index}. "
                    f"Valid: {', '.join(BATCH_OPERATIONS)}"
                )
            if kind in ("update", "delete") and op.get("id") in (None, ""):
                raise ValidationError(f"Operation '{kind}' at index {index} requires an id")
            if kind in ("create", "update") and not op.get("data"):
                raise ValidationError(f"Operation '{kind}' at index {index} requires data")

    @staticmethod
    def _coerce_id(metadata: EntityMetadata, record_id: Any) -> Any:
        pk_field = metadata.get_field(metadata.primary_key)
        if record_id is None or record_id == "":
            raise ValidationError(f"{metadata.primary_key} is required", metadata.primary_key)
        if pk_field is not None and pk_field.is_integer:
            if isinstance(record_id, bool):
                raise ValidationError(
                    f"{metadata.primary_key} must be a positive integer", metadata.primary_key
                )
            try:
                value = int(record_id)
            except (TypeError, ValueError):
                raise ValidationError(
                    f"{metadata.primary_key} must be a positive integer", metadata.primary_key
                ) from None
            if value < 1:
                raise ValidationError(
                    f"{metadata.primary_key} must be a positive integer", metadata.primary_key
                )
            return value
        return record_id

    @staticmethod
    def _payload(data: Any) -> dict[str, Any]:
        if not isinstance(data, Mapping):
            raise ValidationError("Request body must be an object")
        return dict(data)

    def _prepare_create(self, metadata: EntityMetadata, data: Any) -> dict[str, Any]:
        payload = self._payload(data)
        self._reject_unknown(metadata, payload)
        for name in SYSTEM_MANAGED_FIELDS:
            payload.pop(name, None)
        self._reject_readonly(metadata, payload)
        self._check_enum_values(metadata, payload)
        return payload

    def _prepare_update(self, metadata: EntityMetadata, data: Any) -> dict[str, Any]:
        payload = self._payload(data)
        self._reject_unknown(metadata, payload)

        immutable = set(UNIVERSAL_IMMUTABLE_FIELDS) | set(metadata.immutable_fields)
        immutable.add(metadata.primary_key)
        blocked = [name for name in payload if name in immutable]
        if blocked:
            raise ValidationError(
                f"Cannot update immutable field(s): {', '.join(blocked)}", blocked[0]
            )

        payload.pop("updated_at", None)
        self._reject_readonly(metadata, payload)
        if not payload:
            raise ValidationError("No valid fields provided")

        cleared = [
            name for name in metadata.required_fields if name in payload and payload[name] in (None, "")
        ]
        if cleared:
            raise ValidationError(f"Required field(s) cannot be empty: {', '.join(cleared)}", cleared[0])

        self._check_enum_values(metadata, payload)
        return payload

    @staticmethod
    def _reject_unknown(metadata: EntityMetadata, payload: Mapping[str, Any]) -> None:
        unknown = [name for name in payload if not metadata.has_field(name)]
        if unknown:
            raise ValidationError(
                f"Unknown field(s) for {metadata.entity_key}: {', '.join(unknown)}", unknown[0]
            )

    @staticmethod
    def _reject_readonly(metadata: EntityMetadata, payload: Mapping[str, Any]) -> None:
        blocked = [name for name in payload if metadata.fields[name].readonly]
        if blocked:
            raise ValidationError(
                f"Cannot set readonly field(s): {', '.join(blocked)}", blocked[0]
            )

    def _present(
        self, row: Mapping[str, Any], metadata: EntityMetadata, ctx: PermissionContext
    ) -> dict[str, Any]:
        return self.field_access.filter_readable(filter_output(row, metadata), metadata, ctx)

    @staticmethod
    def _check_enum_values(metadata: EntityMetadata, payload: Mapping[str, Any]) -> None:
        for name, value in payload.items():
            f = metadata.fields[name]
            if f.type == "enum" and value is not None and value not in f.values:
                raise ValidationError(
                    f"Invalid value for {name}: {value!r}. Allowed: {', '.join(f.values)}", name
                )

    @staticmethod
    def _serialize(metadata: EntityMetadata, payload: Mapping[str, Any]) -> list[Any]:
        values = []
        for name, value in payload.items():
            if metadata.fields[name].is_json and isinstance(value, (dict, list)):
                value = json.dumps(value)
            values.append(value)
        return values

    @staticmethod
    def _describe_filters(filters: Mapping[str, Any]) -> dict[str, Any]:
        described: dict[str, Any] = {}
        for name, conditions in filters.items():
            if isinstance(conditions, FilterCondition):
                conditions = [conditions]
            described[name] = {c.operator: c.value for c in conditions}
        return described

    async def _select_by_id(
        self,
        client: DatabaseClient,
        metadata: EntityMetadata,
        ctx: PermissionContext,
        pk: Any,
        for_update: bool = False,
    ) -> dict[str, Any] | None:
        clauses = [f"{_col(metadata.primary_key)} = %s"]
        params: list[Any] = [pk]
        rls = self.rls.build(ctx, metadata)
        if rls.clause:
            clauses.append(rls.clause)
            params.extend(rls.params)

        sql = f"SELECT * FROM {_col(metadata.table_name)}{_where(clauses)}"
        if for_update:
            sql += " FOR UPDATE"
        result = await self._execute(client, metadata, sql, params)
        return result.first

    @staticmethod
    async def _execute(
        client: DatabaseClient, metadata: EntityMetadata, sql: str, params: list[Any]
    ) -> QueryResult:
        try:
            return await client.query(sql, params)
        except EntityServiceError:
            raise
        except Exception as e:
            translated = translate_db_error(e, metadata)
            if translated is e:
                raise
            raise translated from e

    def _dispatch_audit(
        self,
        operation: str,
        metadata: EntityMetadata,
        row: Mapping[str, Any] | None,
        audit_context: AuditContext | None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
    ) -> None:
        if self.audit is None or not self.audit.is_audit_enabled(metadata.entity_key):
            return
        if audit_context is not None:
            audit_context = replace(audit_context, old_values=old_values, new_values=new_values)
        task = asyncio.create_task(
            self.audit.log_entity_audit(operation, metadata.entity_key, row, audit_context)
        )
        self._audit_tasks.add(task)
        task.add_done_callback(self._audit_tasks.discard)
