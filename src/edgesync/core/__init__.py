"""Core module - Shared configuration, signing, errors and types."""

from edgesync.core.config import (
    DEFAULT_ENTITIES,
    ENTITY_SCOPES,
    CentralSettings,
    EdgeConfig,
    SyncPolicy,
)
from edgesync.core.errors import (
    APIError,
    ApplyError,
    AuthenticationError,
    EdgeSyncError,
    ExhaustedRetryError,
    SyncStageError,
    TransientNetworkError,
    ValidationError,
)
from edgesync.core.signing import (
    canonical_request,
    check_freshness,
    format_timestamp,
    parse_timestamp,
    sign_request,
    verify_signature,
)
from edgesync.core.types import (
    HeartbeatOutcome,
    InstanceStatus,
    Operation,
    QueueStatus,
    SyncSignal,
    SyncStage,
)

__all__ = [
    # Config
    "CentralSettings",
    "DEFAULT_ENTITIES",
    "ENTITY_SCOPES",
    "EdgeConfig",
    "SyncPolicy",
    # Errors
    "APIError",
    "ApplyError",
    "AuthenticationError",
    "EdgeSyncError",
    "ExhaustedRetryError",
    "SyncStageError",
    "TransientNetworkError",
    "ValidationError",
    # Signing
    "canonical_request",
    "check_freshness",
    "format_timestamp",
    "parse_timestamp",
    "sign_request",
    "verify_signature",
    # Types
    "HeartbeatOutcome",
    "InstanceStatus",
    "Operation",
    "QueueStatus",
    "SyncSignal",
    "SyncStage",
]
