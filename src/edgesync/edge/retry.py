"""Retry policy for outbound queue items.

This module provides:
- compute_backoff: Capped exponential delay after a failed attempt
- NETWORK_EXCEPTIONS: Errors that mean the central node is unreachable
"""

from __future__ import annotations

import httpx

from edgesync.core.errors import TransientNetworkError

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_BACKOFF = 60.0  # seconds
DEFAULT_MAX_BACKOFF = 3600.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Network-related exceptions that indicate connectivity issues
NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    TransientNetworkError,
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
)


def compute_backoff(
    attempts: int,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
) -> float:
    """Delay before the next attempt of an item that has failed ``attempts`` times.

    Args:
        attempts: Number of failed attempts so far (>= 1).
        initial_backoff: Delay after the first failure.
        multiplier: Growth factor per further failure.
        max_backoff: Upper bound on the delay.

    Returns:
        Delay in seconds.
    """
    if attempts < 1:
        return 0.0
    return min(initial_backoff * multiplier ** (attempts - 1), max_backoff)
