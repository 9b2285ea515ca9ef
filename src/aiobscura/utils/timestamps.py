"""
Timestamp helpers.

All timestamps are stored as UTC ISO-8601 text with microsecond precision
(``2025-01-01T12:00:00.000000+00:00``). The fixed format keeps lexical order
equal to chronological order and stays readable by SQLite's date functions.
"""

from datetime import UTC, datetime
from typing import Optional

from dateutil import parser as date_parser


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_db_timestamp(value: datetime) -> str:
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_db_timestamp(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO 8601 / RFC 3339 timestamp (e.g. "2025-10-16T19:12:28.024Z").

    Returns:
        Timezone-aware UTC datetime, or None if the value is missing or invalid
    """
    if not timestamp_str or not isinstance(timestamp_str, str):
        return None
    try:
        return ensure_utc(date_parser.isoparse(timestamp_str))
    except (ValueError, TypeError, OverflowError):
        return None
