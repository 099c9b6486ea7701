"""Command-line interface for buildsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- package: Chunk a build directory and write its manifest
- delta: Compare two manifest files
- publish: Upload a packaged build and publish its manifest
- promote: Make a published version the latest
- versions: List published versions
- check: Report whether an install is up to date
- sync: Download the latest build into an install
- configure: Store object store, base URL and game defaults
"""

from __future__ import annotations

import click

from buildsync.client.cli.config import (
    configure_logging,
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from buildsync.client.cli.configure import configure
from buildsync.client.cli.package import delta, package
from buildsync.client.cli.publish import promote, publish, versions
from buildsync.client.cli.sync import check, sync


@click.group()
@click.version_option(package_name="buildsync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """buildsync - Chunked, deduplicated distribution of game builds."""
    configure_logging(verbose)


# Publisher commands
cli.add_command(package)
cli.add_command(delta)
cli.add_command(publish)
cli.add_command(promote)
cli.add_command(versions)

# Client commands
cli.add_command(check)
cli.add_command(sync)

# Settings
cli.add_command(configure)


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
    "load_config",
    "save_config",
]
