"""Central node administration commands for the edgesync CLI.

Commands:
- central serve: Run the central API server
- central create-token: Issue a one-time registration token
- central list-instances: List registered edge instances
- central revoke / deactivate / activate: Change an instance's status
- central rotate-secret: Replace an instance's shared secret
- central send-command: Queue a remote command for an instance
- central maintenance: Run the stale-instance and purge jobs once
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from edgesync.server.registry import InstanceRegistry

db_path_option = click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: EDGESYNC_DB_PATH or ./edgesync-central.db).",
)


@contextmanager
def open_registry(db_path: str | None) -> Iterator[InstanceRegistry]:
    """Open the central database and yield a registry over it."""
    from edgesync.core.config import CentralSettings
    from edgesync.server.database import Database
    from edgesync.server.registry import InstanceRegistry

    resolved = Path(db_path) if db_path else CentralSettings.from_env().db_path
    db = Database(resolved)
    try:
        yield InstanceRegistry(db)
    finally:
        db.close()


@click.group()
def central() -> None:
    """Central node management commands.

    These commands operate directly on the central database.
    """


@central.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port.")
@click.option("--reload", is_flag=True, help="Reload on code changes (development).")
def serve(host: str, port: int, reload: bool) -> None:
    """Run the central API server.

    Settings are read from EDGESYNC_* environment variables.
    """
    import uvicorn

    uvicorn.run(
        "edgesync.server.app:app_factory",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


@central.command("create-token")
@click.option(
    "--ttl-hours",
    type=int,
    default=24,
    show_default=True,
    help="Hours before the token expires.",
)
@db_path_option
def create_token(ttl_hours: int, db_path: str | None) -> None:
    """Issue a one-time registration token for a new edge node."""
    with open_registry(db_path) as registry:
        token = registry.create_registration_token(ttl_hours=ttl_hours)
    click.echo(token)
    click.echo(f"Valid for {ttl_hours} hours, usable once.", err=True)


@central.command("list-instances")
@click.option(
    "--status",
    type=click.Choice(["active", "inactive", "revoked"]),
    default=None,
    help="Only show instances with this status.",
)
@db_path_option
def list_instances(status: str | None, db_path: str | None) -> None:
    """List registered edge instances."""
    from edgesync.core.types import InstanceStatus

    with open_registry(db_path) as registry:
        instances = registry.list(InstanceStatus(status) if status else None)

    if not instances:
        click.echo("No instances registered.")
        return

    for instance in instances:
        heartbeat = instance.last_heartbeat.isoformat() if instance.last_heartbeat else "never"
        flags = " [needs full sync]" if instance.needs_full_sync else ""
        click.echo(
            f"{instance.server_id:<24} geo={instance.geo_id:<12} "
            f"{instance.status:<9} last heartbeat: {heartbeat}{flags}"
        )


def _change_status(db_path: str | None, server_id: str, action: str) -> None:
    from edgesync.server.registry import UnknownInstanceError

    with open_registry(db_path) as registry:
        try:
            getattr(registry, action)(server_id)
        except UnknownInstanceError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)


@central.command()
@click.argument("server_id")
@db_path_option
def revoke(server_id: str, db_path: str | None) -> None:
    """Revoke an edge instance; its requests are rejected from now on."""
    _change_status(db_path, server_id, "revoke")
    click.echo(f"Instance {server_id} revoked.")


@central.command()
@click.argument("server_id")
@db_path_option
def deactivate(server_id: str, db_path: str | None) -> None:
    """Temporarily disable an edge instance."""
    _change_status(db_path, server_id, "deactivate")
    click.echo(f"Instance {server_id} deactivated.")


@central.command()
@click.argument("server_id")
@db_path_option
def activate(server_id: str, db_path: str | None) -> None:
    """Re-enable an inactive or revoked edge instance."""
    _change_status(db_path, server_id, "activate")
    click.echo(f"Instance {server_id} activated.")


@central.command("rotate-secret")
@click.argument("server_id")
@db_path_option
def rotate_secret(server_id: str, db_path: str | None) -> None:
    """Replace an instance's shared secret and print the new one."""
    from edgesync.server.registry import UnknownInstanceError

    with open_registry(db_path) as registry:
        try:
            secret = registry.rotate_secret(server_id)
        except UnknownInstanceError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(secret)
    click.echo("Store this secret on the edge node; it is not shown again.", err=True)


@central.command("send-command")
@click.argument("server_id")
@click.argument(
    "command",
    type=click.Choice(["full_sync", "sync_now", "maintenance_on", "maintenance_off"]),
)
@db_path_option
def send_command(server_id: str, command: str, db_path: str | None) -> None:
    """Queue a command delivered with the instance's next heartbeat."""
    from edgesync.server.registry import UnknownInstanceError

    with open_registry(db_path) as registry:
        try:
            registry.send_command(server_id, command)
        except UnknownInstanceError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Queued {command} for {server_id}.")


@central.command()
@db_path_option
def maintenance(db_path: str | None) -> None:
    """Run the stale-instance check and command purge once.

    Can be run via cron instead of the in-process scheduler.
    """
    from edgesync.core.config import CentralSettings
    from edgesync.server.database import Database
    from edgesync.server.scheduler import MaintenanceScheduler

    settings = CentralSettings.from_env()
    db = Database(Path(db_path) if db_path else settings.db_path)
    try:
        flagged, purged = MaintenanceScheduler(
            db,
            offline_limit_days=settings.offline_limit_days,
            command_retention_days=settings.command_retention_days,
        ).run_now()
    finally:
        db.close()

    click.echo(f"Flagged {len(flagged)} stale instance(s) for full sync.")
    click.echo(f"Purged {purged} delivered command(s).")
