"""Permission matrix CLI commands: show and check."""

import click

from tross.auth.permissions import (
    CustomPredicate,
    Disabled,
    PermissionEvaluator,
    PermissionMatrix,
    load_permission_matrix,
)
from tross.auth.types import OPERATIONS
from tross.core.config import Settings
from tross.core.errors import MetadataError


def _load_matrix() -> PermissionMatrix:
    try:
        return load_permission_matrix(Settings.from_env().permissions_path)
    except MetadataError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        raise SystemExit(1)


def _describe(requirement) -> str:
    if requirement is None:
        return "-"
    if isinstance(requirement, Disabled):
        return "disabled"
    if isinstance(requirement, CustomPredicate):
        return f"{requirement.role}+{requirement.predicate}"
    return requirement.role


@click.group()
def permissions():
    """Permission matrix commands."""
    pass


@permissions.command()
@click.option("--resource", default=None, help="Only show this resource.")
def show(resource: str | None):
    """Print the role hierarchy and permission matrix."""
    matrix = _load_matrix()

    click.echo(click.style("Roles (lowest to highest):", bold=True))
    for role in matrix.roles.values():
        click.echo(f"  {role.priority}  {role.name}")

    resources = sorted(matrix.resources)
    if resource is not None:
        if resource not in matrix.resources:
            click.echo(click.style(f"Error: Unknown resource '{resource}'", fg="red"), err=True)
            raise SystemExit(1)
        resources = [resource]

    header = ["resource", *OPERATIONS]
    rows = [[name] + [_describe(matrix.requirement(name, op)) for op in OPERATIONS] for name in resources]
    # Two spaces between columns, sized to the widest cell
    widths = [max(len(row[i]) for row in [header, *rows]) + 2 for i in range(len(header))]

    click.echo()
    click.echo(click.style("".join(f"{cell:<{w}}" for cell, w in zip(header, widths)).rstrip(), bold=True))
    for row in rows:
        click.echo("".join(f"{cell:<{w}}" for cell, w in zip(row, widths)).rstrip())


@permissions.command()
@click.argument("role")
@click.argument("resource")
@click.argument("operation", type=click.Choice(list(OPERATIONS)))
def check(role: str, resource: str, operation: str):
    """Check whether ROLE may perform OPERATION on RESOURCE."""
    matrix = _load_matrix()
    evaluator = PermissionEvaluator(matrix)

    if evaluator.has_permission(role, resource, operation):
        click.echo(click.style(f"ALLOWED: {role} may {operation} {resource}", fg="green"))
        return

    minimum = matrix.minimum_role(resource, operation)
    hint = f" (minimum role: {minimum})" if minimum else ""
    click.echo(click.style(f"DENIED: {role} may not {operation} {resource}{hint}", fg="red"))
    raise SystemExit(1)
