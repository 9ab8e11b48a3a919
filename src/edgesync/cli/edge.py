"""Edge node commands for the edgesync CLI.

Commands:
- register: Register this edge node with the central node
- sync: Run one sync cycle
- run: Run the heartbeat and auto-sync loops until interrupted
- status: Show local sync health
- dead-letters: List items that exhausted their retry budget
- requeue: Put a dead letter back on the queue
"""

from __future__ import annotations

import json
import logging
import sys
import threading

import click

from edgesync.cli.config import edge_config_from_file, load_config, save_config
from edgesync.core.config import EdgeConfig


def _require_config() -> EdgeConfig:
    config = edge_config_from_file()
    if config is None or not config.shared_secret:
        click.echo("Error: This node is not registered. Run 'edgesync register' first.", err=True)
        sys.exit(1)
    return config


def _setup_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    logger = logging.getLogger("edgesync")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.addHandler(handler)


@click.command()
@click.option("--central", required=True, help="Central node URL (e.g., http://localhost:8000).")
@click.option("--token", required=True, help="Registration token from the central operator.")
@click.option("--server-id", required=True, help="Unique identifier of this edge node.")
@click.option("--geo-id", required=True, help="Scope tag of this edge node.")
@click.option("--name", default=None, help="Display name (default: server id).")
@click.option("--db-path", type=click.Path(), default=None, help="Local database path.")
def register(
    central: str,
    token: str,
    server_id: str,
    geo_id: str,
    name: str | None,
    db_path: str | None,
) -> None:
    """Register this edge node with the central node.

    The shared secret returned by the central node is stored in the local
    configuration; it is never shown again.
    """
    from edgesync.core.errors import APIError, AuthenticationError, TransientNetworkError
    from edgesync.edge.node import EdgeNode

    config = load_config()
    if config.get("shared_secret"):
        click.echo("Warning: This node is already registered.", err=True)
        if not click.confirm("Do you want to re-register?"):
            sys.exit(0)

    edge_config = EdgeConfig(
        central_url=central,
        server_id=server_id,
        geo_id=geo_id,
        server_name=name or "",
        **({"db_path": db_path} if db_path else {}),
    )

    click.echo(f"Registering {server_id} (geo {geo_id}) with {edge_config.central_url}...")
    try:
        with EdgeNode(edge_config) as node:
            response = node.register(token)
    except AuthenticationError:
        click.echo("Error: Invalid or expired registration token.", err=True)
        sys.exit(1)
    except APIError as e:
        if e.status_code == 409:
            click.echo(f"Error: Server id '{server_id}' is already registered.", err=True)
        else:
            click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except TransientNetworkError as e:
        click.echo(f"Error: Could not reach central node: {e}", err=True)
        sys.exit(1)

    config.update(
        {
            "central_url": edge_config.central_url,
            "server_id": server_id,
            "geo_id": geo_id,
            "server_name": edge_config.server_name,
            "db_path": str(edge_config.db_path),
            "shared_secret": response["sharedSecret"],
        }
    )
    save_config(config)

    click.echo("Edge node registered successfully!")
    sync_config = response.get("syncConfig") or {}
    if sync_config:
        click.echo(
            f"Central suggests: heartbeat every {sync_config.get('heartbeatInterval')}s, "
            f"sync every {sync_config.get('syncInterval')}s"
        )


@click.command()
@click.option("--full", is_flag=True, help="Pull a full snapshot instead of a delta.")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs.")
def sync(full: bool, verbose: bool) -> None:
    """Run one sync cycle against the central node."""
    from edgesync.edge.node import EdgeNode

    _setup_logging(verbose)
    with EdgeNode(_require_config()) as node:
        node.monitor.probe()
        ok = node.sync_now(full=True if full else None)
        stats = node.orchestrator.stats

    if not ok:
        click.echo(f"Sync failed: {stats.last_error or 'node offline or in maintenance'}", err=True)
        sys.exit(1)
    click.echo(
        f"Sync complete: pulled {stats.pulled}, applied {stats.applied}, "
        f"pushed {stats.pushed + stats.drained}, rejected {stats.rejected}"
    )


@click.command()
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs.")
def run(verbose: bool) -> None:
    """Run heartbeats and automatic sync until interrupted."""
    from edgesync.edge.node import EdgeNode

    _setup_logging(verbose)
    stop = threading.Event()
    with EdgeNode(_require_config()) as node:
        node.start()
        click.echo("Edge node running. Press Ctrl+C to stop.")
        try:
            stop.wait()
        except KeyboardInterrupt:
            click.echo("\nStopping...")


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
def status(as_json: bool) -> None:
    """Show local sync health (no network access)."""
    from edgesync.edge.node import EdgeNode

    config = edge_config_from_file()
    if config is None:
        click.echo("Error: This node is not configured. Run 'edgesync register' first.", err=True)
        sys.exit(1)

    with EdgeNode(config) as node:
        info = node.status()

    if as_json:
        click.echo(json.dumps(info, indent=2, default=str))
        return

    checkpoints = info["checkpoints"]
    queue = info["queue"]
    click.echo(f"Server:          {info['serverId']} (geo {info['geoId']})")
    click.echo(f"Registered:      {'yes' if info['registered'] else 'no'}")
    click.echo(f"Online:          {'yes' if info['online'] else 'no'}")
    click.echo(f"Last full sync:  {checkpoints.get('lastFullSync') or 'never'}")
    click.echo(f"Last delta sync: {checkpoints.get('lastDeltaSync') or 'never'}")
    click.echo(
        f"Queue:           {queue['pending']} pending, {queue['failed']} retrying, "
        f"{queue['in_flight']} in flight"
    )
    click.echo(f"Unsynced:        {info['unsyncedChanges']}")
    click.echo(f"Dead letters:    {info['deadLetters']}")


@click.command("dead-letters")
@click.option("--limit", type=int, default=50, show_default=True, help="Maximum entries shown.")
def dead_letters(limit: int) -> None:
    """List queue items that exhausted their retry budget."""
    from edgesync.edge.node import EdgeNode

    with EdgeNode(_require_config()) as node:
        letters = node.dead_letters.list(limit=limit)

    if not letters:
        click.echo("No dead letters.")
        return
    for letter in letters:
        click.echo(
            f"#{letter.id:<5} {letter.operation.value:<6} {letter.entity}/{letter.record_id} "
            f"after {letter.attempts} attempts: {letter.error}"
        )


@click.command()
@click.argument("letter_id", type=int)
def requeue(letter_id: int) -> None:
    """Put a dead letter back on the queue with a fresh retry budget."""
    from edgesync.edge.node import EdgeNode

    with EdgeNode(_require_config()) as node:
        item = node.dead_letters.requeue(letter_id, node.queue)

    if item is None:
        click.echo(f"Error: No dead letter #{letter_id}.", err=True)
        sys.exit(1)
    click.echo(f"Requeued dead letter #{letter_id} as queue item #{item.id}.")
