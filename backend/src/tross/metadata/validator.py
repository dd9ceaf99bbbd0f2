"""
metadata/validator.py: JSON Schema validation for Tross YAML metadata.

Validates entity definitions and the permission matrix against the
schemas shipped in ``metadata/schemas``.

Usage:
    from tross.metadata.validator import validate_metadata_dir

    issues = validate_metadata_dir(Path("metadata"))
    for issue in issues:
        print(issue)
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError as SchemaError

logger = logging.getLogger(__name__)

_SCHEMAS_DIR = Path(__file__).parent / "schemas"

ENTITY_SCHEMA = "entity.schema.json"
PERMISSIONS_SCHEMA = "permissions.schema.json"

# ---------------------------------------------------------------------------
# Public data types
# ---------------------------------------------------------------------------


@dataclass
class ValidationIssue:
    """A single validation finding for a metadata document."""

    file: Path | str
    message: str
    path: str = ""          # location within the document, e.g. "fields[0]/type"
    severity: str = "error" # "error" | "warning"

    def __str__(self) -> str:
        loc = f" at {self.path}" if self.path else ""
        return f"[{self.severity.upper()}] {self.file}{loc}: {self.message}"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


@lru_cache(maxsize=None)
def _validator(name: str) -> Draft202012Validator:
    with (_SCHEMAS_DIR / name).open() as fh:
        schema = json.load(fh)
    return Draft202012Validator(schema)


def _json_path(error: SchemaError) -> str:
    """Convert a jsonschema error path to a readable string."""
    parts = []
    for p in error.absolute_path:
        if isinstance(p, int):
            parts.append(f"[{p}]")
        else:
            parts.append(str(p))
    return "/".join(parts).replace("/[", "[")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_document(
    doc: Any,
    schema_name: str,
    source: Path | str = "<memory>",
) -> list[ValidationIssue]:
    """Validate an already-parsed document against the named schema."""
    if doc is None:
        return [ValidationIssue(file=source, message="Document is empty")]

    validator = _validator(schema_name)
    return [
        ValidationIssue(file=source, message=error.message, path=_json_path(error))
        for error in sorted(validator.iter_errors(doc), key=_json_path)
    ]


def load_yaml(yaml_path: Path) -> tuple[Any, list[ValidationIssue]]:
    """Parse a YAML file, returning the document and any parse issue."""
    try:
        with yaml_path.open() as fh:
            return yaml.safe_load(fh), []
    except yaml.YAMLError as exc:
        return None, [ValidationIssue(file=yaml_path, message=f"YAML parse error: {exc}")]


def validate_yaml_file(yaml_path: Path, schema_name: str) -> list[ValidationIssue]:
    """
    Validate a single YAML file against the named schema.

    Returns:
        A list of :class:`ValidationIssue` objects (empty on success).
    """
    doc, issues = load_yaml(yaml_path)
    if issues:
        return issues
    return validate_document(doc, schema_name, yaml_path)


def schema_for(yaml_path: Path) -> str | None:
    """Infer the schema for a metadata file from its location."""
    if yaml_path.name == "permissions.yaml":
        return PERMISSIONS_SCHEMA
    if yaml_path.parent.name == "entities":
        return ENTITY_SCHEMA
    return None


def validate_metadata_dir(metadata_dir: Path) -> list[ValidationIssue]:
    """
    Validate every entity file and the permission matrix under *metadata_dir*.

    Returns:
        A flat list of issues across all files. Empty means all files are valid.
    """
    if not metadata_dir.is_dir():
        return [
            ValidationIssue(
                file=metadata_dir,
                message=f"Metadata directory does not exist: {metadata_dir}",
            )
        ]

    all_issues: list[ValidationIssue] = []

    entities_dir = metadata_dir / "entities"
    if not entities_dir.is_dir():
        all_issues.append(
            ValidationIssue(file=entities_dir, message="No entities directory found")
        )
    else:
        for yaml_file in sorted(entities_dir.glob("*.yaml")):
            all_issues.extend(validate_yaml_file(yaml_file, ENTITY_SCHEMA))

    permissions_file = metadata_dir / "permissions.yaml"
    if permissions_file.exists():
        all_issues.extend(validate_yaml_file(permissions_file, PERMISSIONS_SCHEMA))
    else:
        all_issues.append(
            ValidationIssue(
                file=permissions_file,
                message="permissions.yaml not found",
                severity="warning",
            )
        )

    logger.debug("Validated metadata in %s: %d issue(s)", metadata_dir, len(all_issues))
    return all_issues
