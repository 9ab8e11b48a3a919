"""Threads that push claimed queue items to the central node.

The orchestrator claims a batch of due items, hands each one to the pool
and waits for the batch to drain. Every item is taken by exactly one
thread; results come back through per-item callbacks.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from edgesync.edge.queue import QueueItem

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 2


class PoolState(Enum):
    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


@dataclass
class WorkerTask:
    """A claimed item plus the callbacks reporting its outcome."""

    item: QueueItem
    on_complete: Callable[[QueueItem], None] | None = None
    on_error: Callable[[QueueItem, Exception], None] | None = None

    def report(self, error: Exception | None) -> None:
        if error is None:
            if self.on_complete:
                self.on_complete(self.item)
        elif self.on_error:
            self.on_error(self.item, error)


class WorkerPool:
    """Fixed-size set of threads running one handler over queue items.

    Usage:
        pool = WorkerPool(push_one, max_workers=2)
        pool.start()
        pool.submit(item, on_complete=done, on_error=failed)
        pool.wait()
        pool.stop()
    """

    def __init__(
        self,
        handler: Callable[[QueueItem], None],
        max_workers: int = DEFAULT_WORKERS,
    ) -> None:
        """Create a stopped pool.

        Args:
            handler: Pushes one item; an exception marks the item failed.
            max_workers: Thread count (at least 1).
        """
        self._handler = handler
        self._max_workers = max(1, max_workers)

        self._state = PoolState.STOPPED
        self._state_lock = threading.Lock()
        self._inbox: queue.Queue[WorkerTask | None] = queue.Queue()
        self._threads: list[threading.Thread] = []

        self._counts_lock = threading.Lock()
        self._completed = 0
        self._errors = 0

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def completed_count(self) -> int:
        return self._completed

    @property
    def error_count(self) -> int:
        return self._errors

    def start(self) -> None:
        """Spawn the threads. No-op unless stopped."""
        with self._state_lock:
            if self._state is not PoolState.STOPPED:
                return
            self._threads = [
                threading.Thread(target=self._run, name=f"QueueWorker-{n}", daemon=True)
                for n in range(self._max_workers)
            ]
            for thread in self._threads:
                thread.start()
            self._state = PoolState.RUNNING
        logger.info("Queue worker pool running %d threads", self._max_workers)

    def stop(self, timeout: float = 10.0) -> None:
        """Let queued items finish, then end every thread.

        Args:
            timeout: Total seconds to wait for the threads to exit.
        """
        with self._state_lock:
            if self._state is PoolState.STOPPED:
                return
            self._state = PoolState.STOPPING
            threads = list(self._threads)
            for _ in threads:
                self._inbox.put(None)

        per_thread = timeout / len(threads)
        for thread in threads:
            thread.join(timeout=per_thread)

        with self._state_lock:
            self._threads = []
            self._state = PoolState.STOPPED
        logger.info("Queue worker pool stopped")

    def submit(
        self,
        item: QueueItem,
        on_complete: Callable[[QueueItem], None] | None = None,
        on_error: Callable[[QueueItem, Exception], None] | None = None,
    ) -> bool:
        """Hand an item to the next free thread.

        Returns:
            False, without queuing, when the pool is not running.
        """
        if self._state is not PoolState.RUNNING:
            logger.warning("Queue item %d not submitted: pool is %s", item.id, self._state.name)
            return False
        self._inbox.put(WorkerTask(item, on_complete, on_error))
        return True

    def wait(self) -> None:
        """Block until every submitted item has been reported."""
        self._inbox.join()

    def _run(self) -> None:
        while True:
            task = self._inbox.get()
            try:
                if task is None:
                    return
                self._handle(task)
            except Exception:
                logger.exception("Queue worker callback failed")
            finally:
                self._inbox.task_done()

    def _handle(self, task: WorkerTask) -> None:
        error: Exception | None = None
        try:
            self._handler(task.item)
        except Exception as e:
            error = e

        with self._counts_lock:
            if error is None:
                self._completed += 1
            else:
                self._errors += 1
        task.report(error)
