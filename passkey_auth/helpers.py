"""
Encoding and clock helpers shared by the stores and the orchestrator.
"""

import base64
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """
    Timezone-aware current UTC time. The default Clock.
    """
    return datetime.now(timezone.utc)


def bytes_to_base64url(data: bytes) -> str:
    """
    Convert bytes to base64 urlsafe string without padding.
    """
    pad = "="
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip(pad)


def base64url_to_bytes(data: str) -> bytes:
    """
    Convert base64 urlsafe string to bytes with padding.
    """
    pad = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + pad)


def normalize_base64url(data: str) -> str:
    """
    Re-encode a base64 or base64url string into unpadded base64url.

    Browsers and client libraries disagree on padding and alphabet for
    rawId, so both forms must collapse to the stored identifier.
    """
    cleaned = data.strip().rstrip("=").replace("+", "-").replace("/", "_")
    return bytes_to_base64url(base64url_to_bytes(cleaned))


def to_timestamp(value: datetime) -> str:
    """
    ISO-8601 rendering used in every response body.
    """
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
