"""In-memory sliding-window rate limiter.

Used to throttle unauthenticated endpoints (registration). State is bounded:
idle keys are dropped when their window empties and the least recently seen
keys are evicted once ``max_keys`` is reached.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from collections.abc import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allow at most ``limit`` hits per ``window`` seconds per key."""

    def __init__(
        self,
        limit: int = 10,
        window: float = 60.0,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self._window = window
        self._max_keys = max_keys
        self._clock = clock
        self._hits: OrderedDict[str, deque[float]] = OrderedDict()
        self._lock = threading.Lock()

    def hit(self, key: str) -> bool:
        """Record a hit for a key.

        Returns:
            True if the hit is allowed, False if the key is over its limit.
        """
        now = self._clock()
        with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                hits = deque()
                self._hits[key] = hits
            else:
                self._hits.move_to_end(key)

            cutoff = now - self._window
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= self._limit:
                logger.warning("Rate limit exceeded for %s", key)
                return False

            hits.append(now)
            self._evict(cutoff)
            return True

    def _evict(self, cutoff: float) -> None:
        """Drop expired keys, then the oldest keys beyond capacity.

        Keys are kept in last-hit order, so only the stale prefix is visited.
        """
        while self._hits:
            oldest = next(iter(self._hits.values()))
            if oldest and oldest[-1] > cutoff:
                break
            self._hits.popitem(last=False)
        while len(self._hits) > self._max_keys:
            self._hits.popitem(last=False)

    def reset(self) -> None:
        """Forget all recorded hits."""
        with self._lock:
            self._hits.clear()

    def __len__(self) -> int:
        return len(self._hits)
