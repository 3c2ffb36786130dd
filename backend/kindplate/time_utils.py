from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Optional

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_clock_time(value: Optional[str]) -> Optional[time]:
    """Parse "HH:MM" or "HH:MM:SS" into a time of day. Empty -> None."""
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    return time.fromisoformat(s)


def format_clock_time(value: Optional[time]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime("%H:%M")


def epoch_seconds(dt: datetime) -> int:
    """Whole seconds since the epoch for a UTC-naive datetime."""
    return int((dt - EPOCH).total_seconds())


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
