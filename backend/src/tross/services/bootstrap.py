"""Wire the entity layer together from settings.

Loads entity metadata and the permission matrix once, checks that
every entity's resource has a matrix entry, and returns a ready
GenericEntityService.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tross.audit.bridge import AuditBridge, AuditSink
from tross.auth.permissions import PermissionEvaluator, PermissionMatrix, load_permission_matrix
from tross.auth.rls import RLSFilterBuilder
from tross.core.config import Settings
from tross.metadata.loader import EntityMetadataRegistry
from tross.persistence.client import DatabaseClient
from tross.query.builder import QueryBuilder
from tross.services.entity_service import GenericEntityService

logger = logging.getLogger(__name__)


@dataclass
class EntityLayer:
    """Read-only configuration shared by every request."""

    registry: EntityMetadataRegistry
    matrix: PermissionMatrix
    evaluator: PermissionEvaluator


def load_entity_layer(settings: Settings | None = None) -> EntityLayer:
    """Load metadata and permissions from ``settings.metadata_path``.

    Raises:
        MetadataError: If any file is invalid or a resource is missing
            from the permission matrix
    """
    settings = settings or Settings.from_env()
    registry = EntityMetadataRegistry.load(settings.metadata_path)
    matrix = load_permission_matrix(settings.permissions_path)
    matrix.ensure_resources(registry)
    return EntityLayer(registry=registry, matrix=matrix, evaluator=PermissionEvaluator(matrix))


def build_entity_service(
    db: DatabaseClient,
    settings: Settings | None = None,
    audit_sink: AuditSink | None = None,
    layer: EntityLayer | None = None,
) -> GenericEntityService:
    """Create a GenericEntityService backed by *db*.

    Args:
        db: Database client for entity queries
        settings: Runtime settings; read from the environment when None
        audit_sink: Audit store; None disables auditing
        layer: Already-loaded metadata and permissions
    """
    settings = settings or Settings.from_env()
    layer = layer or load_entity_layer(settings)

    audit = AuditBridge(audit_sink, layer.registry) if audit_sink is not None else None
    service = GenericEntityService(
        db,
        layer.registry,
        layer.evaluator,
        rls=RLSFilterBuilder(),
        query_builder=QueryBuilder(
            max_limit=settings.max_page_size,
            default_limit=settings.default_page_size,
        ),
        audit=audit,
    )
    logger.info(
        "Entity service ready: %d entities, audit %s",
        len(layer.registry),
        "enabled" if audit else "disabled",
    )
    return service
