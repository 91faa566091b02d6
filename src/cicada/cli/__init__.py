"""Command-line interface for cicada.

This module provides the main CLI entry point and assembles all commands.

Commands:
- sync: One-shot synchronization between two locations
- watch: Manage and run continuous sync watches
"""

from __future__ import annotations

import click

from cicada import __version__
from cicada.cli.config import (
    configure_logging,
    get_config_dir,
    get_config_file,
    get_section,
    get_watch_db,
    load_config,
    save_config,
)
from cicada.cli.sync import sync
from cicada.cli.watch import watch
from cicada.core.errors import ConfigError


@click.group()
@click.version_option(version=__version__, prog_name="cicada")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """cicada - Mirror and archive directories to local or S3 storage."""
    try:
        settings = get_section(load_config(), "settings")
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    configure_logging(
        verbose=verbose or bool(settings.get("verbose", False)),
        log_file=settings.get("log_file"),
    )


cli.add_command(sync)
cli.add_command(watch)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "get_watch_db",
    "load_config",
    "save_config",
]
