"""Tross CLI entry point."""

import logging
import os

import click


@click.group()
@click.option(
    "--log-level",
    default=lambda: os.environ.get("TROSS_LOG_LEVEL", "WARNING"),
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (defaults to TROSS_LOG_LEVEL or WARNING).",
)
def cli(log_level: str):
    """Tross: metadata-driven entity layer CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Register subcommand groups
from tross.cli.metadata_cmd import metadata  # noqa: E402
from tross.cli.permissions_cmd import permissions  # noqa: E402

cli.add_command(metadata)
cli.add_command(permissions)
