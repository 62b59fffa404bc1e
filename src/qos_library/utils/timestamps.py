"""
Timestamp helpers.

State files store instants as ISO-8601 UTC strings with millisecond
precision and a trailing "Z"; cache files store epoch milliseconds.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> float:
    return time.time() * 1000


def to_iso(moment: datetime) -> str:
    """Format as e.g. 2026-10-19T10:55:00.123Z."""
    return (
        moment.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def iso_after(moment: datetime, seconds: float) -> str:
    return to_iso(moment + timedelta(seconds=seconds))


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO string; None for anything unparseable."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
