"""
Time helpers.

All timestamps are stored and compared as naive UTC datetimes so that the
same code path works on PostgreSQL and SQLite.
"""
from datetime import datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: Optional[Union[datetime, str]]) -> Optional[datetime]:
    """Normalize an aware/naive datetime or ISO string to naive UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
