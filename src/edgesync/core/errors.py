"""Error taxonomy shared by the central and edge roles."""

from __future__ import annotations


class EdgeSyncError(Exception):
    """Base exception for edgesync errors."""


class AuthenticationError(EdgeSyncError):
    """Bad or missing signature, stale timestamp, or unknown instance.

    Always terminal for the request that raised it.
    """


class TransientNetworkError(EdgeSyncError):
    """Timeout or connection failure while talking to the central node."""

    def __init__(self, message: str, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class ValidationError(EdgeSyncError):
    """Malformed input, e.g. a push item missing its identifier."""


class APIError(EdgeSyncError):
    """The central node answered with an unexpected error status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApplyError(EdgeSyncError):
    """A pulled change could not be applied locally."""

    def __init__(self, entity: str, record_id: str, reason: str) -> None:
        self.entity = entity
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Cannot apply {entity}/{record_id}: {reason}")


class ExhaustedRetryError(EdgeSyncError):
    """A queue item ran out of attempts and was dead-lettered."""

    def __init__(self, item_id: int, attempts: int, last_error: str | None) -> None:
        self.item_id = item_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Queue item {item_id} exhausted after {attempts} attempts: {last_error}"
        )


class SyncStageError(EdgeSyncError):
    """A sync cycle stage failed; the message is stage-qualified."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {cause}")
