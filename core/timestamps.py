"""Timezone-aware UTC timestamp utilities.

All identity code uses these helpers instead of datetime.utcnow() so that
every persisted timestamp carries a +00:00 offset and compares correctly,
both as datetime and as the ISO string stored in SQLite.
"""

from datetime import datetime, timezone
from typing import Optional


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isonow() -> str:
    """Return the current UTC time as an ISO 8601 string with +00:00 offset."""
    return now().isoformat()


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as UTC ISO 8601, passing None through.

    Fixed width (always with microseconds) so stored values sort and
    compare lexicographically in SQL.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(iso_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp, assuming UTC if no timezone info."""
    if not iso_str:
        return None
    dt = datetime.fromisoformat(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
