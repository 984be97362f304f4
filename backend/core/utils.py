"""
Utility functions for the workflow orchestration engine.

Includes:
- UTC datetime helpers
- Pagination helpers
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime.

    SQLite hands back naive datetimes even for timezone-aware columns,
    so values read from the store are normalised before comparison.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) from step configuration."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def calculate_offset(page: int = 1, per_page: int = 20) -> int:
    """
    Calculate database offset from page and per_page values.

    Args:
        page: Page number (1-indexed)
        per_page: Items per page

    Returns:
        Offset for database queries
    """
    return (page - 1) * per_page


def has_more(offset: int, limit: int, total: int) -> bool:
    """Whether another page exists after ``offset + limit``."""
    return offset + limit < total
