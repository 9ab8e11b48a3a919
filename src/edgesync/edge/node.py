"""Edge node facade.

Builds every edge component from an EdgeConfig and exposes the small
surface domain code and the CLI need: ``register``, ``enqueue``,
``sync_now``, ``start``/``stop`` and ``status``.
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import TYPE_CHECKING, Any

from edgesync.core.errors import ValidationError
from edgesync.core.types import Operation
from edgesync.edge.api import CentralClient
from edgesync.edge.applier import ChangeApplier
from edgesync.edge.changelog import OutboundChangeLog
from edgesync.edge.connectivity import ConnectivityMonitor
from edgesync.edge.database import EdgeDatabase
from edgesync.edge.deadletter import DeadLetterStore
from edgesync.edge.heartbeat import HeartbeatLog
from edgesync.edge.orchestrator import SyncOrchestrator
from edgesync.edge.queue import QueueItem, SyncQueue
from edgesync.edge.records import LocalRecordStore, RecordStore
from edgesync.edge.state import LocalSyncState

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from edgesync.core.config import EdgeConfig

logger = logging.getLogger(__name__)


class EdgeNode:
    """All edge components wired together."""

    def __init__(
        self,
        config: EdgeConfig,
        record_store: RecordStore | None = None,
        transport: httpx.BaseTransport | None = None,
        metrics_collector: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        """Open local storage and build the components.

        Args:
            config: Edge configuration.
            record_store: Domain record storage (defaults to the local mirror).
            transport: Optional httpx transport, for tests.
            metrics_collector: Returns the metrics sent with heartbeats.
        """
        self.config = config
        self.db = EdgeDatabase(config.db_path)
        self.state = LocalSyncState(self.db)
        self.records: RecordStore = record_store or LocalRecordStore(self.db)
        self.changelog = OutboundChangeLog(self.db)
        self.dead_letters = DeadLetterStore(self.db)
        self.queue = SyncQueue(self.db, self.dead_letters, config.policy)
        self.heartbeats = HeartbeatLog(self.db)
        self.client = CentralClient(config, transport=transport)
        self.applier = ChangeApplier(self.records, config.entities)

        self.orchestrator = SyncOrchestrator(
            client=self.client,
            state=self.state,
            changelog=self.changelog,
            queue=self.queue,
            applier=self.applier,
            entities=config.entities,
            batch_size=config.batch_size,
            concurrency=config.queue_concurrency,
            interval=config.sync_interval,
        )
        self.monitor = ConnectivityMonitor(
            client=self.client,
            state=self.state,
            heartbeat_log=self.heartbeats,
            queue_size=self.queue.size,
            interval=config.heartbeat_interval,
            metrics_collector=metrics_collector,
            on_online=self._trigger_sync,
            on_response=self._on_heartbeat,
        )

        # Crash recovery
        self.queue.recover_in_flight()
        self.queue.rebuild_from_change_log(self.changelog)

    def __enter__(self) -> EdgeNode:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # === Registration ===

    @property
    def is_registered(self) -> bool:
        return bool(self.config.shared_secret)

    def register(self, registration_token: str, public_key: str | None = None) -> dict[str, Any]:
        """Register with the central node and adopt the returned secret.

        The caller is responsible for persisting ``sharedSecret``; it is
        never returned again.

        Returns:
            The registration response.
        """
        response = self.client.register(registration_token, public_key=public_key)
        self.client.set_shared_secret(response["sharedSecret"])
        self.state.set_identity(response.get("instanceId") or self.config.server_id, self.config.geo_id)
        logger.info("Registered as %s (geo %s)", self.config.server_id, self.config.geo_id)
        return response

    # === Local mutations ===

    def enqueue(
        self,
        operation: Operation | str,
        entity: str,
        payload: dict[str, Any] | None,
        record_id: str | None = None,
        actor: str | None = None,
        before: dict[str, Any] | None = None,
    ) -> QueueItem:
        """Apply a local mutation and schedule it for push.

        The record store write, the change-log entry and the queue item land
        in one transaction.

        Args:
            operation: create, update or delete.
            entity: Entity type.
            payload: Record fields (ignored for delete).
            record_id: Record identifier; defaults to payload["id"], or a new
                UUID for creates.
            actor: Who made the change.
            before: Prior state; read from the record store when omitted.

        Returns:
            The queued item.

        Raises:
            ValidationError: If no record id can be determined or the payload
                is missing for a create/update.
        """
        operation = Operation(operation)
        payload = dict(payload) if payload else None

        if record_id is None and payload:
            record_id = payload.get("id")
        if record_id is None and operation == Operation.CREATE:
            record_id = uuid.uuid4().hex
        if not record_id:
            raise ValidationError(f"{operation.value} of {entity} needs a record id")
        record_id = str(record_id)

        if operation != Operation.DELETE:
            if payload is None:
                raise ValidationError(f"{operation.value} of {entity}/{record_id} needs a payload")
            payload.setdefault("id", record_id)

        with self.db.transaction():
            if before is None:
                current = self.records.get(entity, record_id)
                before = current.data if current else None

            if operation == Operation.DELETE:
                self.records.mark_deleted(entity, record_id)
                after = None
            else:
                self.records.upsert(entity, record_id, payload)
                after = payload

            entry = self.changelog.append(
                operation, entity, record_id, after=after, before=before, actor=actor
            )
            return self.queue.enqueue(operation, entity, record_id, after, change_id=entry.id)

    # === Sync ===

    def sync_now(self, full: bool | None = None) -> bool:
        """Run a sync cycle in the calling thread."""
        return self.orchestrator.run_cycle(full)

    def _trigger_sync(self) -> None:
        threading.Thread(target=self.orchestrator.run_cycle, name="TriggeredSync", daemon=True).start()

    def _on_heartbeat(self, response: dict[str, Any]) -> None:
        if response.get("needsFullSync"):
            self.orchestrator.request_full_sync()
        for command in response.get("commands") or []:
            self.handle_command(command)

    def handle_command(self, command: dict[str, Any]) -> None:
        """Act on a remote command delivered with a heartbeat."""
        name = command.get("command")
        logger.info("Received remote command %s", name)
        if name == "full_sync":
            self.orchestrator.request_full_sync()
            self._trigger_sync()
        elif name == "sync_now":
            self._trigger_sync()
        elif name == "maintenance_on":
            self.state.set_maintenance_mode(True)
        elif name == "maintenance_off":
            self.state.set_maintenance_mode(False)
        else:
            logger.warning("Ignoring unknown remote command: %s", name)

    # === Lifecycle ===

    def start(self) -> None:
        """Start the connectivity monitor and the auto-sync loop."""
        self.monitor.start()
        self.orchestrator.start()

    def stop(self) -> None:
        """Stop background threads."""
        self.orchestrator.stop()
        self.monitor.stop()

    def close(self) -> None:
        """Stop threads and release the client and database."""
        self.stop()
        self.client.close()
        self.db.close()

    def status(self) -> dict[str, Any]:
        """Local view of the node's sync health."""
        last = self.heartbeats.last()
        return {
            "serverId": self.config.server_id,
            "geoId": self.config.geo_id,
            "registered": self.is_registered,
            "online": self.monitor.is_online,
            "checkpoints": self.state.snapshot(),
            "queue": self.queue.stats(),
            "unsyncedChanges": self.changelog.count_unsynced(),
            "deadLetters": self.dead_letters.count(),
            "lastHeartbeat": (
                {"outcome": last.outcome.value, "at": last.created_at, "error": last.error}
                if last
                else None
            ),
            "sync": self.orchestrator.stats.to_dict(),
        }
