"""Timestamp helpers.

All timestamps persisted by the sync store are naive UTC datetimes; SQLite does
not keep timezone information, so values are normalised before comparison.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as dateutil_parser

# Epoch values above this are treated as milliseconds (browser clients send ms).
_EPOCH_MS_THRESHOLD = 100_000_000_000


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a modification timestamp carried in record metadata.

    Accepts datetimes, ISO-8601 strings and epoch numbers (seconds or
    milliseconds). Returns ``None`` for missing or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(
                tzinfo=None
            )
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            return to_naive_utc(dateutil_parser.isoparse(value))
        except (ValueError, OverflowError):
            try:
                return to_naive_utc(dateutil_parser.parse(value))
            except (ValueError, OverflowError):
                return None
    return None


def isoformat(value: Optional[datetime]) -> str:
    """Format a timestamp for export; empty string when missing."""
    return value.isoformat() if value else ""
