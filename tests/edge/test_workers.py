"""Tests for the queue worker pool."""

from __future__ import annotations

import threading

from edgesync.edge.queue import QueueItem, SyncQueue
from edgesync.edge.workers import PoolState, WorkerPool


def make_items(queue: SyncQueue, count: int) -> list[QueueItem]:
    for i in range(count):
        queue.enqueue("create", "users", f"u{i}")
    return queue.claim_ready(limit=count)


class TestWorkerPool:
    """Tests for WorkerPool."""

    def test_start_and_stop(self) -> None:
        """Pool state follows start/stop."""
        pool = WorkerPool(lambda item: None, max_workers=3)
        assert pool.state == PoolState.STOPPED

        pool.start()
        assert pool.state == PoolState.RUNNING

        pool.stop()
        assert pool.state == PoolState.STOPPED

    def test_submit_requires_running(self, queue: SyncQueue) -> None:
        """Items are refused while the pool is stopped."""
        pool = WorkerPool(lambda item: None)
        [item] = make_items(queue, 1)
        assert pool.submit(item) is False

    def test_each_item_processed_once(self, queue: SyncQueue) -> None:
        """Every submitted item reaches exactly one worker."""
        seen: list[int] = []
        lock = threading.Lock()

        def handler(item: QueueItem) -> None:
            with lock:
                seen.append(item.id)

        pool = WorkerPool(handler, max_workers=4)
        pool.start()
        try:
            items = make_items(queue, 20)
            for item in items:
                assert pool.submit(item)
            pool.wait()
        finally:
            pool.stop()

        assert sorted(seen) == sorted(i.id for i in items)
        assert pool.completed_count == 20

    def test_callbacks(self, queue: SyncQueue) -> None:
        """Success and failure are reported through the callbacks."""
        done: list[int] = []
        failed: list[tuple[int, str]] = []

        def handler(item: QueueItem) -> None:
            if item.record_id == "u1":
                raise RuntimeError("rejected")

        pool = WorkerPool(handler, max_workers=2)
        pool.start()
        try:
            for item in make_items(queue, 2):
                pool.submit(
                    item,
                    on_complete=lambda i: done.append(i.id),
                    on_error=lambda i, e: failed.append((i.id, str(e))),
                )
            pool.wait()
        finally:
            pool.stop()

        assert len(done) == 1
        assert len(failed) == 1
        assert failed[0][1] == "rejected"
        assert pool.error_count == 1
