"""Metadata CLI commands: validate and show."""

from pathlib import Path

import click

from tross.core.config import Settings
from tross.core.errors import MetadataError, UnknownEntity
from tross.core.types import get_field_type
from tross.metadata.loader import EntityMetadataRegistry, PolymorphicDependent
from tross.metadata.validator import schema_for, validate_metadata_dir, validate_yaml_file


def _metadata_path() -> Path:
    return Settings.from_env().metadata_path


@click.group()
def metadata():
    """Metadata commands."""
    pass


@metadata.command()
@click.option(
    "--path",
    "target_path",
    default=None,
    type=click.Path(exists=True, path_type=Path),
    help="Validate a single YAML file instead of the whole metadata directory.",
)
def validate(target_path: Path | None):
    """Validate entity metadata and permissions against JSON Schemas."""
    metadata_path = _metadata_path()

    # ── Schema (JSON Schema) validation ─────────────────────────────────────
    if target_path is not None:
        schema_name = schema_for(target_path)
        if schema_name is None:
            click.echo(
                f"Warning: cannot determine schema for '{target_path}'. "
                "Expected an entities/*.yaml file or permissions.yaml.",
                err=True,
            )
            schema_issues = []
        else:
            schema_issues = validate_yaml_file(target_path, schema_name)
    else:
        if not metadata_path.exists():
            click.echo(f"Error: Metadata directory not found at {metadata_path}", err=True)
            raise SystemExit(1)
        schema_issues = validate_metadata_dir(metadata_path)

    errors = [i for i in schema_issues if i.severity == "error"]
    warnings = [i for i in schema_issues if i.severity == "warning"]

    for issue in schema_issues:
        colour = "red" if issue.severity == "error" else "yellow"
        click.echo(click.style(str(issue), fg=colour))

    if errors:
        click.echo(
            click.style(
                f"\n{len(errors)} schema error(s) found"
                + (f", {len(warnings)} warning(s)" if warnings else ""),
                fg="red",
                bold=True,
            )
        )
        raise SystemExit(1)

    if warnings:
        click.echo(click.style(f"{len(warnings)} warning(s) found.", fg="yellow"))

    # ── Semantic (registry) validation ──────────────────────────────────────
    if target_path is None:
        try:
            registry = EntityMetadataRegistry.load(metadata_path)
        except MetadataError as e:
            click.echo(click.style(f"\nSemantic validation failed: {e}", fg="red"), err=True)
            raise SystemExit(1)

        click.echo(f"\nLoaded {len(registry)} entities:")
        for entity in registry:
            click.echo(
                f"  ✓ {entity.entity_key} ({len(entity.fields)} fields, "
                f"table: {entity.table_name})"
            )

    click.echo(click.style("\nAll metadata is valid.", fg="green", bold=True))


@metadata.command()
@click.argument("entity")
def show(entity: str):
    """Show whitelists, dependents and RLS policy for ENTITY."""
    try:
        registry = EntityMetadataRegistry.load(_metadata_path())
        meta = registry.get(entity)
    except (MetadataError, UnknownEntity) as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        raise SystemExit(1)

    click.echo(click.style(meta.entity_key, bold=True) + f" ({meta.table_name})")
    if meta.description:
        click.echo(f"  {meta.description}")
    click.echo(f"  primary key:  {meta.primary_key}")
    click.echo(f"  identity:     {meta.identity_field or '-'}")
    click.echo(f"  resource:     {meta.rls_resource}")
    click.echo(f"  default sort: {meta.effective_sort.field} {meta.effective_sort.order}")

    for label, names in (
        ("searchable", meta.searchable_fields),
        ("filterable", meta.filterable_fields),
        ("sortable", meta.sortable_fields),
        ("required", meta.required_fields),
        ("immutable", meta.immutable_fields),
        ("sensitive", meta.sensitive_fields),
    ):
        click.echo(f"  {label + ':':<13} {', '.join(names) or '-'}")

    click.echo("\n  Fields:")
    for f in meta.fields.values():
        flags = [
            flag
            for flag, on in (
                ("pk", f.primary_key),
                ("required", f.name in meta.required_fields),
                ("immutable", f.name in meta.immutable_fields),
                ("readonly", f.readonly),
            )
            if on
        ]
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        click.echo(f"    {f.name:<24} {f.type:<11} {get_field_type(f.type).storage_type}{suffix}")

    if meta.dependents:
        click.echo("\n  Dependents (deleted first, in order):")
        for dep in meta.dependents:
            if isinstance(dep, PolymorphicDependent):
                click.echo(
                    f"    - {dep.table}.{dep.foreign_key} "
                    f"where {dep.type_column} = '{dep.type_value}'"
                )
            else:
                click.echo(f"    - {dep.table}.{dep.foreign_key}")

    if meta.rls_policy is None:
        click.echo("\n  RLS: none (all rows visible)")
    else:
        click.echo("\n  RLS policy:")
        for role, policy in meta.rls_policy.items():
            click.echo(f"    {role:<12} {policy}")

    if meta.owner_field:
        click.echo(f"  Owner field: {meta.owner_field}")

    if meta.field_access:
        click.echo("\n  Field access (minimum role):")
        for field_name, rule in meta.field_access.items():
            levels = ", ".join(f"{op}={level}" for op, level in rule.levels())
            click.echo(f"    {field_name:<24} {levels}")

    if meta.system_protected:
        protection = meta.system_protected
        click.echo(
            f"\n  Protected {protection.field} values: "
            f"{', '.join(str(v) for v in protection.values)}"
        )
