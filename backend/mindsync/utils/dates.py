"""UTC date helpers shared by services and routes"""
from datetime import datetime, timezone
from typing import Optional


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def from_epoch(seconds) -> Optional[datetime]:
    """Stripe epoch seconds to an aware UTC datetime"""
    if seconds is None:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def parse_iso_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a query-string date (YYYY-MM-DD or full ISO 8601) into UTC, assumed UTC when naive.

    Raises:
        ValueError: If the value is not a valid ISO date
    """
    if not value:
        return None
    # fromisoformat does not accept a trailing Z before Python 3.11
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value)).astimezone(timezone.utc)
