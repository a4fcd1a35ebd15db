"""
Type and time helpers for SQLAlchemy/SQLModel code.

SQLModel fields are declared with Python types (e.g., `keyword: str`) but at the
class level they're actually InstrumentedAttribute descriptors with SQLAlchemy
column methods like .desc(), .in_(), .is_(), etc. `col()` bridges that gap for
type checkers.

SQLite drops tzinfo on DateTime columns, so anything read back from the store
goes through `ensure_utc()` before it is compared with an aware timestamp.
"""

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional, TypeVar

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    At runtime this is a no-op - it just returns the input unchanged.

    Usage:
        select(KeywordQueueEntry).order_by(col(KeywordQueueEntry.priority).desc())
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Use as default_factory in SQLModel fields.
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (as stored by SQLite); convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_utc_day(value: datetime) -> datetime:
    """Midnight UTC of the day containing `value`."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def next_utc_midnight(value: datetime) -> datetime:
    return start_of_utc_day(value) + timedelta(days=1)


__all__ = [
    "col",
    "utc_now",
    "ensure_utc",
    "start_of_utc_day",
    "next_utc_midnight",
]
