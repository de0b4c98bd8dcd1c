"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional, Union

DateLike = Union[date, datetime, str]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(value: Optional[DateLike]) -> Optional[date]:
    """Coerce ISO strings and datetimes to :class:`date`.

    Raises ``ValueError`` for strings that are not ISO formatted.
    """

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if "T" in text:
        text = text.split("T", 1)[0]
    return date.fromisoformat(text)


def parse_datetime(value: Optional[Union[datetime, str]]) -> Optional[datetime]:
    """Parse ISO 8601 strings (including a trailing ``Z``) into UTC datetimes."""

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def calculate_age(dob: Optional[date], today: Optional[date] = None) -> Optional[int]:
    """Return the age in whole years for ``dob``."""

    if dob is None:
        return None
    today = today or utc_now().date()
    years = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        years -= 1
    return max(years, 0)


def isoformat(value: Optional[Union[date, datetime]]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    return value.isoformat()


__all__ = [
    "calculate_age",
    "ensure_utc",
    "isoformat",
    "parse_date",
    "parse_datetime",
    "utc_now",
]
