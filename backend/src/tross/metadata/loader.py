"""Load, resolve and validate entity metadata from YAML files."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Union

from tross.core.errors import MetadataError, UnknownEntity
from tross.core.types import get_field_type, is_supported_type
from tross.metadata.validator import ENTITY_SCHEMA, load_yaml, validate_document

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


@dataclass(frozen=True)
class RelationConfig:
    """Configuration for a foreignKey field."""

    table: str  # The referenced table
    display_field: str = "name"


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    type: str
    primary_key: bool = False
    required: bool = False
    readonly: bool = False
    immutable: bool = False
    values: tuple[str, ...] | None = None  # enum values
    relation: RelationConfig | None = None
    ordinal_default: int | None = None  # next MAX()+1, starting here

    @property
    def is_json(self) -> bool:
        return get_field_type(self.type).json

    @property
    def is_integer(self) -> bool:
        return get_field_type(self.type).integer


FIELD_ACCESS_OPERATIONS = ("create", "read", "update")

# Access levels no role can reach through the entity service
CLOSED_ACCESS_LEVELS = ("none", "system")


@dataclass(frozen=True)
class FieldAccess:
    """Minimum role per operation for a single field.

    A level is a role name, ``none`` (never allowed) or ``system`` (only
    the backend writes it). An operation without a level is not
    restricted at the field level.
    """

    create: str | None = None
    read: str | None = None
    update: str | None = None

    def level(self, operation: str) -> str | None:
        if operation not in FIELD_ACCESS_OPERATIONS:
            return None
        return getattr(self, operation)

    def levels(self) -> list[tuple[str, str]]:
        result = []
        for operation in FIELD_ACCESS_OPERATIONS:
            value = self.level(operation)
            if value is not None:
                result.append((operation, value))
        return result

    @staticmethod
    def is_closed(level: str | None) -> bool:
        return level in CLOSED_ACCESS_LEVELS


@dataclass(frozen=True)
class SortSpec:
    field: str
    order: str = "ASC"


@dataclass(frozen=True)
class ForeignKeyDependent:
    """Child rows referencing the parent through a dedicated FK column."""

    table: str
    foreign_key: str

    @property
    def polymorphic(self) -> bool:
        return False


@dataclass(frozen=True)
class PolymorphicDependent:
    """Child rows in a shared table, discriminated by a type column."""

    table: str
    foreign_key: str
    type_column: str
    type_value: str

    @property
    def polymorphic(self) -> bool:
        return True


Dependent = Union[ForeignKeyDependent, PolymorphicDependent]


@dataclass(frozen=True)
class SystemProtection:
    """Built-in rows that reject deletion or identity changes.

    Attributes:
        values: Protected values of ``field`` (e.g. built-in role names)
        field: Column holding the protected value
        immutable_fields: Fields that may not change on a protected row
        prevent_delete: Whether protected rows reject deletion
    """

    values: tuple[Any, ...]
    field: str
    immutable_fields: tuple[str, ...] = ()
    prevent_delete: bool = True

    def protects(self, record: Mapping[str, Any] | None) -> bool:
        return record is not None and record.get(self.field) in self.values


@dataclass(frozen=True)
class EntityMetadata:
    entity_key: str
    table_name: str
    primary_key: str
    rls_resource: str
    fields: Mapping[str, FieldDefinition]
    identity_field: str | None = None
    display_field: str | None = None
    description: str = ""
    rls_policy: Mapping[str, str] | None = None
    rls_filter_config: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    searchable_fields: tuple[str, ...] = ()
    filterable_fields: tuple[str, ...] = ()
    sortable_fields: tuple[str, ...] = ()
    required_fields: tuple[str, ...] = ()
    immutable_fields: tuple[str, ...] = ()
    sensitive_fields: tuple[str, ...] = ()
    output_fields: tuple[str, ...] = ()
    default_sort: SortSpec | None = None
    dependents: tuple[Dependent, ...] = ()
    audit_enabled: bool = True
    system_protected: SystemProtection | None = None
    owner_field: str | None = None  # column holding the owning user's id
    field_access: Mapping[str, FieldAccess] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(self.fields)

    @property
    def readonly_fields(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields.values() if f.readonly)

    @property
    def system_protected_values(self) -> tuple[Any, ...]:
        return self.system_protected.values if self.system_protected else ()

    def has_field(self, name: str) -> bool:
        return name in self.fields

    def get_field(self, name: str) -> FieldDefinition | None:
        return self.fields.get(name)

    @property
    def effective_sort(self) -> SortSpec:
        return self.default_sort or SortSpec(self.primary_key, "ASC")


# ------------------------------------------------------------------
# Resolution
# ------------------------------------------------------------------


def _tuple(data: dict, key: str) -> tuple[str, ...]:
    return tuple(data.get(key) or ())


def _resolve_field(data: dict) -> FieldDefinition:
    """Convert field dict to FieldDefinition."""
    relation_data = data.get("relation")
    relation = None
    if relation_data:
        relation = RelationConfig(
            table=relation_data["table"],
            display_field=relation_data.get("displayField", "name"),
        )

    values = data.get("values")
    return FieldDefinition(
        name=data["name"],
        type=data.get("type", "string"),
        primary_key=data.get("primaryKey", False),
        required=data.get("required", False),
        readonly=data.get("readonly", False),
        immutable=data.get("immutable", False),
        values=tuple(values) if values is not None else None,
        relation=relation,
        ordinal_default=data.get("ordinalDefault"),
    )


def _resolve_dependent(data: dict) -> Dependent:
    poly = data.get("polymorphicType")
    if poly:
        return PolymorphicDependent(
            table=data["table"],
            foreign_key=data["foreignKey"],
            type_column=poly["column"],
            type_value=poly["value"],
        )
    return ForeignKeyDependent(table=data["table"], foreign_key=data["foreignKey"])


def _resolve_field_access(entity: str, data: dict | None) -> Mapping[str, FieldAccess]:
    rules: dict[str, FieldAccess] = {}
    for field_name, levels in (data or {}).items():
        if not isinstance(levels, dict):
            raise MetadataError(
                f"Entity '{entity}' fieldAccess.{field_name} must map operations to roles"
            )
        unknown = sorted(set(levels) - set(FIELD_ACCESS_OPERATIONS))
        if unknown:
            raise MetadataError(
                f"Entity '{entity}' fieldAccess.{field_name} has unknown operation(s): "
                f"{', '.join(unknown)}"
            )
        rules[field_name] = FieldAccess(
            **{op: str(level).lower() for op, level in levels.items() if level is not None}
        )
    return MappingProxyType(rules)


def resolve_entity(data: dict) -> EntityMetadata:
    """Resolve one entity document into EntityMetadata.

    Raises:
        MetadataError: If a mandatory property is missing or the document
            references fields it does not declare
    """
    name = data.get("entity")
    if not name:
        raise MetadataError("Entity metadata is missing 'entity'")
    for required in ("tableName", "rlsResource"):
        if not data.get(required):
            raise MetadataError(f"Entity '{name}' is missing '{required}'")

    field_list = [_resolve_field(f) for f in data.get("fields") or []]
    fields: dict[str, FieldDefinition] = {}
    for f in field_list:
        if f.name in fields:
            raise MetadataError(f"Entity '{name}' declares field '{f.name}' twice")
        fields[f.name] = f

    primary_key = data.get("primaryKey")
    if not primary_key:
        primary_key = next((f.name for f in field_list if f.primary_key), None)
    if not primary_key:
        raise MetadataError(f"Entity '{name}' has no primary key")

    sort_data = data.get("defaultSort")
    default_sort = None
    if sort_data:
        default_sort = SortSpec(
            field=sort_data["field"],
            order=str(sort_data.get("order", "ASC")).upper(),
        )

    protection = None
    protected_data = data.get("systemProtected")
    if protected_data:
        protection = SystemProtection(
            values=tuple(protected_data["values"]),
            field=protected_data.get("protectedByField") or data.get("identityField") or primary_key,
            immutable_fields=_tuple(protected_data, "immutableFields"),
            prevent_delete=protected_data.get("preventDelete", True),
        )

    # Field-level flags feed the entity-level whitelists
    required_fields = list(_tuple(data, "requiredFields"))
    required_fields += [f.name for f in field_list if f.required and f.name not in required_fields]
    immutable_fields = list(_tuple(data, "immutableFields"))
    immutable_fields += [f.name for f in field_list if f.immutable and f.name not in immutable_fields]

    rls_policy = data.get("rlsPolicy")
    rls_filter_config = dict(data.get("rlsFilterConfig") or {})
    owner_field = data.get("ownerField") or rls_filter_config.get("ownRecordField")

    metadata = EntityMetadata(
        entity_key=name,
        table_name=data["tableName"],
        primary_key=primary_key,
        rls_resource=data["rlsResource"],
        fields=MappingProxyType(fields),
        identity_field=data.get("identityField"),
        display_field=data.get("displayField") or data.get("identityField"),
        description=data.get("description", ""),
        rls_policy=MappingProxyType(dict(rls_policy)) if rls_policy is not None else None,
        rls_filter_config=MappingProxyType(rls_filter_config),
        searchable_fields=_tuple(data, "searchableFields"),
        filterable_fields=_tuple(data, "filterableFields"),
        sortable_fields=_tuple(data, "sortableFields"),
        required_fields=tuple(required_fields),
        immutable_fields=tuple(immutable_fields),
        sensitive_fields=_tuple(data, "sensitiveFields"),
        output_fields=_tuple(data, "outputFields"),
        default_sort=default_sort,
        dependents=tuple(_resolve_dependent(d) for d in data.get("dependents") or []),
        audit_enabled=data.get("auditEnabled", True),
        system_protected=protection,
        owner_field=owner_field,
        field_access=_resolve_field_access(name, data.get("fieldAccess")),
    )
    _check_references(metadata)
    return metadata


def _check_references(metadata: EntityMetadata) -> None:
    """Reject identifiers that are malformed or name undeclared fields."""
    name = metadata.entity_key

    identifiers = [metadata.entity_key, metadata.table_name, metadata.rls_resource]
    identifiers += list(metadata.fields)
    identifiers += [d.table for d in metadata.dependents]
    identifiers += [d.foreign_key for d in metadata.dependents]
    identifiers += [
        d.type_column for d in metadata.dependents if isinstance(d, PolymorphicDependent)
    ]
    identifiers += list(metadata.rls_filter_config.values())
    for identifier in identifiers:
        if not isinstance(identifier, str) or not _IDENTIFIER.match(identifier):
            raise MetadataError(
                f"Entity '{name}': '{identifier}' is not a valid lowercase identifier"
            )

    if metadata.primary_key not in metadata.fields:
        raise MetadataError(
            f"Entity '{name}' primary key '{metadata.primary_key}' is not a declared field"
        )

    for f in metadata.fields.values():
        if not is_supported_type(f.type):
            raise MetadataError(f"Entity '{name}' field '{f.name}' has unsupported type '{f.type}'")
        if f.type == "enum" and not f.values:
            raise MetadataError(f"Entity '{name}' enum field '{f.name}' must declare values")

    whitelists = {
        "searchableFields": metadata.searchable_fields,
        "filterableFields": metadata.filterable_fields,
        "sortableFields": metadata.sortable_fields,
        "requiredFields": metadata.required_fields,
        "immutableFields": metadata.immutable_fields,
        "outputFields": metadata.output_fields,
        "fieldAccess": tuple(metadata.field_access),
    }
    if metadata.system_protected:
        whitelists["systemProtected.immutableFields"] = metadata.system_protected.immutable_fields
        whitelists["systemProtected.protectedByField"] = (metadata.system_protected.field,)
    for single in ("identity_field", "display_field", "owner_field"):
        value = getattr(metadata, single)
        if value:
            whitelists[single] = (value,)
    if metadata.default_sort:
        whitelists["defaultSort"] = (metadata.default_sort.field,)

    for list_name, names in whitelists.items():
        undeclared = [n for n in names if n not in metadata.fields]
        if undeclared:
            raise MetadataError(
                f"Entity '{name}' {list_name} references undeclared field(s): "
                f"{', '.join(undeclared)}"
            )

    pk_access = metadata.field_access.get(metadata.primary_key)
    if pk_access is not None and FieldAccess.is_closed(pk_access.read):
        raise MetadataError(
            f"Entity '{name}' primary key '{metadata.primary_key}' must stay readable"
        )

    for f_name in metadata.searchable_fields:
        if not get_field_type(metadata.fields[f_name].type).text_like:
            raise MetadataError(
                f"Entity '{name}' searchable field '{f_name}' must be a text type"
            )

    if metadata.default_sort:
        sort = metadata.default_sort
        if sort.order not in ("ASC", "DESC"):
            raise MetadataError(f"Entity '{name}' defaultSort order must be ASC or DESC")
        if sort.field != metadata.primary_key and sort.field not in metadata.sortable_fields:
            raise MetadataError(
                f"Entity '{name}' defaultSort field '{sort.field}' is not sortable"
            )


# ------------------------------------------------------------------
# Registry
# ------------------------------------------------------------------


class EntityMetadataRegistry:
    """Read-only lookup of every entity's metadata.

    Built once at start-up. Loading fails fast on the first invalid
    entity; a configuration change requires a restart.
    """

    def __init__(self, entities: Iterable[EntityMetadata]):
        by_key: dict[str, EntityMetadata] = {}
        by_table: dict[str, EntityMetadata] = {}
        for entity in entities:
            if entity.entity_key in by_key:
                raise MetadataError(f"Duplicate entity '{entity.entity_key}'")
            if entity.table_name in by_table:
                raise MetadataError(
                    f"Table '{entity.table_name}' is used by both "
                    f"'{by_table[entity.table_name].entity_key}' and '{entity.entity_key}'"
                )
            by_key[entity.entity_key] = entity
            by_table[entity.table_name] = entity
        self._entities = MappingProxyType(by_key)
        self._by_table = MappingProxyType(by_table)

    @classmethod
    def from_dicts(cls, documents: Iterable[dict]) -> EntityMetadataRegistry:
        """Build a registry from already-parsed entity documents."""
        return cls(resolve_entity(doc) for doc in documents)

    @classmethod
    def load(cls, metadata_path: Path, validate_schema: bool = True) -> EntityMetadataRegistry:
        """Load every ``entities/*.yaml`` file under *metadata_path*.

        Raises:
            MetadataError: On the first schema or semantic failure
        """
        entities_path = metadata_path / "entities"
        if not entities_path.is_dir():
            raise MetadataError(f"Entities directory not found at {entities_path}")

        entities: list[EntityMetadata] = []
        for yaml_file in sorted(entities_path.glob("*.yaml")):
            data, issues = load_yaml(yaml_file)
            if not issues and validate_schema:
                issues = validate_document(data, ENTITY_SCHEMA, yaml_file)
            if issues:
                raise MetadataError("; ".join(str(i) for i in issues))
            try:
                entities.append(resolve_entity(data))
            except MetadataError as e:
                raise MetadataError(f"{yaml_file.name}: {e}") from e

        registry = cls(entities)
        logger.info("Loaded metadata for %d entities from %s", len(registry), entities_path)
        return registry

    def get(self, entity_key: str) -> EntityMetadata:
        """Return metadata for *entity_key*.

        Raises:
            UnknownEntity: If no entity is registered under that key
        """
        if not isinstance(entity_key, str) or entity_key.strip() not in self._entities:
            logger.warning("Unknown entity requested: %r", entity_key)
            raise UnknownEntity(str(entity_key), list(self._entities))
        return self._entities[entity_key.strip()]

    def has(self, entity_key: str) -> bool:
        return isinstance(entity_key, str) and entity_key.strip() in self._entities

    def by_table(self, table_name: str) -> EntityMetadata | None:
        return self._by_table.get(table_name)

    def keys(self) -> list[str]:
        return sorted(self._entities)

    def __iter__(self) -> Iterator[EntityMetadata]:
        return iter(self._entities[k] for k in self.keys())

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_key: object) -> bool:
        return isinstance(entity_key, str) and self.has(entity_key)
