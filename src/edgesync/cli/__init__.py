"""Command-line interface for edgesync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- register: Register this edge node with the central node
- sync: Run one sync cycle
- run: Run heartbeats and automatic sync until interrupted
- status: Show local sync health
- dead-letters: List items that exhausted their retry budget
- requeue: Put a dead letter back on the queue
- central: Central node administration commands
"""

from __future__ import annotations

import click

from edgesync.cli.central import central
from edgesync.cli.config import (
    edge_config_from_file,
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from edgesync.cli.edge import dead_letters, register, requeue, run, status, sync


@click.group()
@click.version_option(package_name="edgesync")
def cli() -> None:
    """EdgeSync - Record synchronization between edge nodes and a central node."""


# Edge commands
cli.add_command(register)
cli.add_command(sync)
cli.add_command(run)
cli.add_command(status)
cli.add_command(dead_letters)
cli.add_command(requeue)

# Central admin commands
cli.add_command(central)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
    "edge_config_from_file",
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
]
