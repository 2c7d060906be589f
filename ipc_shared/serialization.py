"""Serialization utilities for datetime handling.

Every timestamp the kernel records is timezone-aware UTC and leaves the
process as an ISO 8601 string.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to ISO format string (None passes through)."""
    if dt is None:
        return None
    return dt.isoformat()
