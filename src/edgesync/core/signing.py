"""Request signing for the sync protocol.

This module provides:
- Canonical serialization of a request (method, url, timestamp, body)
- HMAC-SHA256 signing with the edge's shared secret
- Constant-time verification
- Timestamp formatting and freshness checks

Both sides sign the *parsed* JSON body re-serialized with sorted keys, so
whitespace or key order on the wire never affects the signature.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import UTC, datetime, timedelta
from typing import Any

from edgesync.core.errors import AuthenticationError

HEADER_SERVER_ID = "X-Server-ID"
HEADER_GEO_ID = "X-Geo-ID"
HEADER_TIMESTAMP = "X-Timestamp"
HEADER_SIGNATURE = "X-Signature"
HEADER_REGISTRATION_TOKEN = "X-Registration-Token"

DEFAULT_TIMESTAMP_WINDOW = 300.0  # seconds


def canonical_request(method: str, url: str, timestamp: str, body: Any) -> bytes:
    """Serialize a request tuple into its canonical byte form.

    Args:
        method: HTTP method (case-insensitive).
        url: Request path, including "?query" when present.
        timestamp: Value of the X-Timestamp header.
        body: Parsed JSON body, or None when the request has no body.

    Returns:
        UTF-8 encoded compact JSON with sorted keys.
    """
    payload = {
        "method": method.upper(),
        "url": url,
        "timestamp": timestamp,
        "body": body,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode(
        "utf-8"
    )


def sign_request(secret: str, method: str, url: str, timestamp: str, body: Any) -> str:
    """Compute the hex signature of a request.

    Args:
        secret: Shared secret of the edge instance.
        method: HTTP method.
        url: Request path and query.
        timestamp: ISO-8601 timestamp sent in X-Timestamp.
        body: Parsed JSON body or None.

    Returns:
        Hex-encoded HMAC-SHA256 digest.
    """
    message = canonical_request(method, url, timestamp, body)
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str | None,
    signature: str,
    method: str,
    url: str,
    timestamp: str,
    body: Any,
) -> None:
    """Verify a request signature.

    Args:
        secret: Shared secret looked up for the claimed server, or None.
        signature: Value of the X-Signature header.
        method: HTTP method.
        url: Request path and query.
        timestamp: Value of the X-Timestamp header.
        body: Parsed JSON body or None.

    Raises:
        AuthenticationError: If the secret is missing or the signature differs.
    """
    if not secret:
        raise AuthenticationError("invalid signature")
    expected = sign_request(secret, method, url, timestamp, body)
    supplied = signature.lower().encode("utf-8", "replace")
    if not hmac.compare_digest(expected.encode(), supplied):
        raise AuthenticationError("invalid signature")


def format_timestamp(moment: datetime | None = None) -> str:
    """Format a moment as an ISO-8601 UTC timestamp."""
    moment = moment or datetime.now(UTC)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given.

    Raises:
        ValueError: If the value is not a valid ISO-8601 timestamp.
    """
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def check_freshness(
    timestamp: str,
    now: datetime | None = None,
    window: float = DEFAULT_TIMESTAMP_WINDOW,
) -> datetime:
    """Check that a request timestamp is within the allowed clock skew.

    Args:
        timestamp: Value of the X-Timestamp header.
        now: Server time (defaults to current UTC time).
        window: Maximum allowed skew in seconds, in either direction.

    Returns:
        The parsed timestamp.

    Raises:
        AuthenticationError: If the timestamp is malformed or outside the window.
    """
    try:
        moment = parse_timestamp(timestamp)
    except ValueError as e:
        raise AuthenticationError("invalid timestamp") from e

    now = now or datetime.now(UTC)
    skew = now - moment
    limit = timedelta(seconds=window)
    if skew > limit:
        raise AuthenticationError("timestamp too old")
    if -skew > limit:
        raise AuthenticationError("timestamp too far in future")
    return moment
