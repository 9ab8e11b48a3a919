"""Connectivity monitor for an edge node.

Sends a signed heartbeat on its own timer, records every probe in the
heartbeat log and tracks the online/offline transition in the sync
checkpoints. Authentication failures are recorded but do not count as
connectivity loss.
"""

from __future__ import annotations

import logging
import platform
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from edgesync.core.errors import APIError, AuthenticationError, TransientNetworkError
from edgesync.core.types import HeartbeatOutcome

if TYPE_CHECKING:
    from edgesync.edge.api import CentralClient
    from edgesync.edge.heartbeat import HeartbeatLog, HeartbeatRecord
    from edgesync.edge.state import LocalSyncState

logger = logging.getLogger(__name__)

_STARTED_AT = time.monotonic()


def default_metrics() -> dict[str, Any]:
    """Basic process metrics sent with each heartbeat."""
    return {
        "uptimeSeconds": round(time.monotonic() - _STARTED_AT),
        "platform": platform.system(),
        "python": platform.python_version(),
    }


class ConnectivityMonitor:
    """Periodic heartbeat and online/offline tracking."""

    def __init__(
        self,
        client: CentralClient,
        state: LocalSyncState,
        heartbeat_log: HeartbeatLog,
        queue_size: Callable[[], int],
        interval: float = 300.0,
        metrics_collector: Callable[[], dict[str, Any]] | None = None,
        on_online: Callable[[], None] | None = None,
        on_offline: Callable[[str], None] | None = None,
        on_response: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            client: Signed client for the central node.
            state: Checkpoints holding the offline marker.
            heartbeat_log: Where probe results are appended.
            queue_size: Returns the current outbound queue depth.
            interval: Seconds between probes when running.
            metrics_collector: Returns the metrics sent with a heartbeat.
            on_online: Called when the node comes back online.
            on_offline: Called with the error when the node goes offline.
            on_response: Called with each successful heartbeat response.
        """
        self._client = client
        self._state = state
        self._log = heartbeat_log
        self._queue_size = queue_size
        self._interval = interval
        self._metrics_collector = metrics_collector or default_metrics
        self._on_online = on_online
        self._on_offline = on_offline
        self._on_response = on_response

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_online(self) -> bool:
        return not self._state.is_offline

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _collect_metrics(self) -> dict[str, Any] | None:
        try:
            return self._metrics_collector()
        except Exception:
            logger.exception("Metrics collector failed")
            return None

    def probe(self) -> HeartbeatRecord:
        """Send one heartbeat and record the outcome."""
        metrics = self._collect_metrics()
        started = time.monotonic()

        def elapsed_ms() -> float:
            return round((time.monotonic() - started) * 1000, 1)

        try:
            response = self._client.heartbeat(metrics, self._queue_size())
        except AuthenticationError as e:
            logger.error("Heartbeat rejected by central: %s", e)
            return self._log.append(
                HeartbeatOutcome.FAILED, elapsed_ms(), error=str(e), metrics=metrics
            )
        except TransientNetworkError as e:
            outcome = HeartbeatOutcome.TIMEOUT if e.timed_out else HeartbeatOutcome.FAILED
            record = self._log.append(outcome, elapsed_ms(), error=str(e), metrics=metrics)
            self._go_offline(str(e))
            return record
        except APIError as e:
            record = self._log.append(
                HeartbeatOutcome.FAILED, elapsed_ms(), error=str(e), metrics=metrics
            )
            self._go_offline(str(e))
            return record

        record = self._log.append(
            HeartbeatOutcome.SUCCESS, elapsed_ms(), response=response, metrics=metrics
        )
        self._go_online()
        if self._on_response:
            self._on_response(response)
        return record

    def _go_offline(self, error: str) -> None:
        if self._state.mark_offline():
            logger.warning("Central node unreachable, going offline: %s", error)
            if self._on_offline:
                self._on_offline(error)

    def _go_online(self) -> None:
        if self._state.mark_online():
            logger.info("Central node reachable again, back online")
            if self._on_online:
                self._on_online()

    def start(self) -> None:
        """Start probing on a background thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="ConnectivityMonitor",
            daemon=True,
        )
        self._thread.start()
        logger.info("Connectivity monitor started (every %.0fs)", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background thread."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("Connectivity monitor stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.probe()
            except Exception:
                logger.exception("Unexpected error during heartbeat")
            self._stop_event.wait(self._interval)
