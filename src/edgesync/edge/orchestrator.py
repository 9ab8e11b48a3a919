"""Sync cycle orchestration for an edge node.

A cycle runs ``pulling -> applying-pulled -> pushing -> draining-queue`` and
then returns to ``idle``. Only one cycle runs at a time per orchestrator;
a request made while a cycle is running is refused, not queued. Checkpoints
advance only after every stage succeeded, so a failed cycle is simply
retried from the last known-good point.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from edgesync.core.config import DEFAULT_ENTITIES
from edgesync.core.errors import AuthenticationError, ExhaustedRetryError, SyncStageError
from edgesync.core.signing import format_timestamp
from edgesync.core.types import SyncSignal, SyncStage
from edgesync.edge.workers import PoolState, WorkerPool

if TYPE_CHECKING:
    from edgesync.edge.api import CentralClient
    from edgesync.edge.applier import ChangeApplier
    from edgesync.edge.changelog import ChangeEntry, OutboundChangeLog
    from edgesync.edge.queue import QueueItem, SyncQueue
    from edgesync.edge.state import LocalSyncState

logger = logging.getLogger(__name__)

T = TypeVar("T")

SyncListener = Callable[[SyncSignal, "SyncStats"], None]


@dataclass
class SyncStats:
    """Running counters of the orchestrator."""

    stage: SyncStage = SyncStage.IDLE
    cycles_completed: int = 0
    cycles_failed: int = 0
    cycles_refused: int = 0
    pulled: int = 0
    applied: int = 0
    pushed: int = 0
    rejected: int = 0
    drained: int = 0
    dead_lettered: int = 0
    last_error: str | None = None
    last_success_at: float | None = None
    last_cycle_full: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


class SyncOrchestrator:
    """Runs sync cycles between the local stores and the central node."""

    def __init__(
        self,
        client: CentralClient,
        state: LocalSyncState,
        changelog: OutboundChangeLog,
        queue: SyncQueue,
        applier: ChangeApplier,
        entities: list[str] | None = None,
        batch_size: int = 50,
        concurrency: int = 2,
        interval: float = 300.0,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            client: Signed client for the central node.
            state: Sync checkpoints.
            changelog: Outbound change log.
            queue: Outbound queue.
            applier: Writes pulled records locally.
            entities: Entity types to pull.
            batch_size: Maximum entries pushed and items drained per cycle.
            concurrency: Worker threads draining the queue.
            interval: Seconds between automatic cycles.
        """
        self._client = client
        self._state = state
        self._changelog = changelog
        self._queue = queue
        self._applier = applier
        self._entities = list(entities or DEFAULT_ENTITIES)
        self._batch_size = batch_size
        self._interval = interval

        self._pool = WorkerPool(self._push_item, max_workers=concurrency)
        self._cycle_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stats = SyncStats()
        self._listeners: list[SyncListener] = []
        self._full_requested = False

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # === Observation ===

    @property
    def stats(self) -> SyncStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if a cycle is in progress."""
        return self._cycle_lock.locked()

    def add_listener(self, listener: SyncListener) -> None:
        """Register a callback for started/completed/failed signals."""
        self._listeners.append(listener)

    def _emit(self, signal: SyncSignal) -> None:
        for listener in list(self._listeners):
            try:
                listener(signal, self._stats)
            except Exception:
                logger.exception("Sync listener failed on %s", signal.value)

    def request_full_sync(self) -> None:
        """Make the next cycle a full sync."""
        self._full_requested = True

    def needs_full_sync(self, full: bool | None = None) -> bool:
        """Decide whether the next cycle pulls a full snapshot."""
        if full is not None:
            return full
        return self._full_requested or self._state.last_full_sync is None

    # === Cycle ===

    def run_cycle(self, full: bool | None = None) -> bool:
        """Run one sync cycle.

        Args:
            full: Force (True) or forbid (False) a full sync; None decides
                from the checkpoints and pending requests.

        Returns:
            True if the cycle completed. False if it was refused (another
            cycle running, node offline or in maintenance) or failed.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Sync cycle already running, request ignored")
            with self._stats_lock:
                self._stats.cycles_refused += 1
            return False

        try:
            if self._state.maintenance_mode:
                logger.info("Maintenance mode on, sync cycle skipped")
                return False
            if self._state.is_offline:
                logger.info("Offline since %s, sync cycle skipped", self._state.offline_since)
                return False
            return self._run_locked(self.needs_full_sync(full))
        finally:
            self._stats.stage = SyncStage.IDLE
            self._cycle_lock.release()

    def _run_locked(self, full: bool) -> bool:
        started = time.monotonic()
        logger.info("Starting %s sync cycle", "full" if full else "delta")
        self._emit(SyncSignal.STARTED)

        try:
            payload, sync_timestamp = self._stage(SyncStage.PULLING, "Pull", self._pull, full)
            self._stage(SyncStage.APPLYING, "Apply", self._apply, payload, full)
            self._stage(SyncStage.PUSHING, "Push", self._push)
            self._stage(SyncStage.DRAINING, "Queue drain", self._drain)
        except SyncStageError as e:
            with self._stats_lock:
                self._stats.cycles_failed += 1
                self._stats.last_error = str(e)
            logger.error("Sync cycle failed: %s", e)
            self._emit(SyncSignal.FAILED)
            return False

        version = self._state.record_cycle_success(sync_timestamp, full)
        if full:
            self._full_requested = False
        with self._stats_lock:
            self._stats.cycles_completed += 1
            self._stats.last_error = None
            self._stats.last_success_at = time.time()
            self._stats.last_cycle_full = full
        logger.info(
            "Sync cycle %d completed in %.2fs", version, time.monotonic() - started
        )
        self._emit(SyncSignal.COMPLETED)
        return True

    def _stage(self, stage: SyncStage, label: str, func: Callable[..., T], *args: Any) -> T:
        """Run a stage, wrapping any failure as a stage-qualified error."""
        self._stats.stage = stage
        try:
            return func(*args)
        except SyncStageError:
            raise
        except Exception as e:
            raise SyncStageError(label, e) from e

    # === Stages ===

    def _pull(self, full: bool) -> tuple[dict[str, list[dict[str, Any]]], str]:
        """Fetch a snapshot or the changes since the last delta sync."""
        if full:
            snapshot, sync_timestamp = self._client.full_sync(self._entities)
            count = sum(len(records) for records in snapshot.values())
            payload = snapshot
        else:
            payload, sync_timestamp = self._pull_changes()
            count = sum(len(c) for c in payload.values())

        with self._stats_lock:
            self._stats.pulled += count
        return payload, sync_timestamp or format_timestamp()

    def _pull_changes(self) -> tuple[dict[str, list[dict[str, Any]]], str | None]:
        """Page through /sync/changes until the central node reports no more."""
        since = self._state.last_delta_sync
        payload: dict[str, list[dict[str, Any]]] = {}
        while True:
            response = self._client.get_changes(since, self._entities)
            for entity, changes in (response.get("changes") or {}).items():
                payload.setdefault(entity, []).extend(changes)
            sync_timestamp = response.get("syncTimestamp")
            if not response.get("hasMore") or not sync_timestamp or sync_timestamp == since:
                return payload, sync_timestamp
            logger.debug("Delta page ended at %s, fetching more", sync_timestamp)
            since = sync_timestamp

    def _apply(self, payload: dict[str, list[dict[str, Any]]], full: bool) -> None:
        if full:
            result = self._applier.apply_snapshot(payload)
        else:
            result = self._applier.apply_changes(payload)
        with self._stats_lock:
            self._stats.applied += result.applied

    def _push(self) -> None:
        """Batch-push due change-log entries, grouped by entity type."""
        entries = self._changelog.pushable(self._batch_size)
        if not entries:
            return

        groups: dict[str, list[ChangeEntry]] = {}
        for entry in entries:
            groups.setdefault(entry.entity, []).append(entry)

        for entity, group in groups.items():
            result = self._client.push(entity, [e.to_push_item() for e in group])
            results = result.get("results") or {}
            errors = {err.get("index"): err for err in results.get("errors", [])}

            accepted = [e.id for i, e in enumerate(group) if i not in errors]
            self._changelog.mark_synced(accepted)
            self._queue.complete_for_changes(accepted)

            for index, err in errors.items():
                if not isinstance(index, int) or not 0 <= index < len(group):
                    continue
                entry = group[index]
                logger.warning(
                    "Central rejected %s %s/%s: %s",
                    entry.operation.value,
                    entity,
                    entry.record_id,
                    err.get("error"),
                )
                item = self._queue.item_for_change(entry.id)
                if item is not None:
                    self._record_failure(item, str(err.get("error")))

            with self._stats_lock:
                self._stats.pushed += len(accepted)
                self._stats.rejected += len(errors)

    def _drain(self) -> None:
        """Push due queue items one by one through the worker pool."""
        items = self._queue.claim_ready(limit=self._batch_size)
        if not items:
            return

        if self._pool.state == PoolState.STOPPED:
            self._pool.start()

        for item in items:
            if not self._pool.submit(item, on_complete=self._item_done, on_error=self._item_failed):
                self._queue.release(item.id)
        self._pool.wait()

    # === Queue item callbacks (worker threads) ===

    def _push_item(self, item: QueueItem) -> None:
        self._client.push_item(item.operation, item.entity, item.record_id, item.payload)

    def _item_done(self, item: QueueItem) -> None:
        self._queue.complete(item.id)
        if item.change_id is not None:
            self._changelog.mark_synced([item.change_id])
        with self._stats_lock:
            self._stats.drained += 1

    def _item_failed(self, item: QueueItem, error: Exception) -> None:
        if isinstance(error, AuthenticationError):
            # Not the item's fault; keep its retry budget
            logger.error("Push of item %d rejected by authentication: %s", item.id, error)
            self._queue.release(item.id)
            return
        self._record_failure(item, str(error))

    def _record_failure(self, item: QueueItem, error: str) -> None:
        letter = self._queue.fail(item.id, error)
        if letter is not None:
            exhausted = ExhaustedRetryError(item.id, letter.attempts, letter.error)
            logger.error("%s", exhausted)
            with self._stats_lock:
                self._stats.dead_lettered += 1

    # === Background loop ===

    def start(self) -> None:
        """Run cycles every interval on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._pool.start()
        self._thread = threading.Thread(target=self._run, name="SyncOrchestrator", daemon=True)
        self._thread.start()
        logger.info("Auto-sync started (every %.0fs)", self._interval)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the background loop and the worker pool."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("Auto-sync stopped")
        self._pool.stop()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Unexpected error in sync loop")
            self._stop_event.wait(self._interval)
