"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC string.

    Returns:
        ISO timestamp, e.g. `2024-05-01T12:00:00+00:00`
    """
    return datetime.now(timezone.utc).isoformat()


def parse_iso_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 date or datetime into an aware UTC datetime.

    Naive values are taken as UTC and a trailing `Z` is accepted.

    Args:
        value: ISO date (`2024-05-01`) or datetime string

    Returns:
        datetime object, or None when value is empty or unparseable
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def within_range(timestamp: Optional[str], start: Optional[datetime], end: Optional[datetime]) -> bool:
    """Whether timestamp falls inside the inclusive [start, end] range.

    Unparseable timestamps never match a bounded range.
    """
    if start is None and end is None:
        return True
    parsed = parse_iso_timestamp(timestamp)
    if parsed is None:
        return False
    if start is not None and parsed < start:
        return False
    if end is not None and parsed > end:
        return False
    return True
