"""Utilities for working with timestamps and calendar dates in letters."""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Optional, Union

DateLike = Union[str, date, datetime, None]

_ISO_DATE_PREFIX = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_TEXT_FORMATS = (
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%Y/%m/%d",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
)


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_utc(dt: Optional[datetime] = None) -> str:
    """Render ``dt`` (default: now) as ``YYYY-MM-DDTHH:MM:SS.mmmZ``.

    Millisecond precision keeps the fractional part short enough that it can
    never be mistaken for a long numeric identifier downstream.
    """

    value = ensure_utc(dt or utc_now())
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_date(value: DateLike) -> Optional[date]:
    """Parse ``value`` into a calendar ``date``; ``None`` when unrecognised.

    Accepts ISO dates and timestamps (only the calendar part is used, so
    ``1980-01-01T00:00:00Z`` is January 1 regardless of local time zone),
    US ``MM/DD/YYYY`` and a handful of spelled-out month formats.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    match = _ISO_DATE_PREFIX.match(text)
    if match:
        year, month, day = (int(part) for part in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return None
    for fmt in _TEXT_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def format_date_long(value: DateLike) -> str:
    """Return ``value`` as ``April 12, 1968``; unparseable input passes through."""

    if value is None:
        return ""
    parsed = parse_date(value)
    if parsed is None:
        return str(value).strip()
    return f"{parsed.strftime('%B')} {parsed.day}, {parsed.year}"


def format_date_short(value: DateLike) -> str:
    """Return ``value`` as ``04/12/1968``; unparseable input passes through."""

    if value is None:
        return ""
    parsed = parse_date(value)
    if parsed is None:
        return str(value).strip()
    return f"{parsed.month:02d}/{parsed.day:02d}/{parsed.year:04d}"


def format_phone(value: Optional[str]) -> str:
    """Format US phone numbers; anything else is returned unchanged."""

    if not value:
        return ""
    raw = str(value)
    digits = re.sub(r"\D", "", raw)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    if len(digits) == 11 and digits[0] == "1":
        return f"+1 ({digits[1:4]}) {digits[4:7]}-{digits[7:]}"
    return raw


def calc_age(dob: DateLike, today: Optional[date] = None) -> Optional[int]:
    """Return the age in whole years on ``today`` for a date of birth."""

    born = parse_date(dob)
    if born is None:
        return None
    ref = today or utc_now().date()
    years = ref.year - born.year - ((ref.month, ref.day) < (born.month, born.day))
    if years < 0:
        return None
    return years


__all__ = [
    "utc_now",
    "ensure_utc",
    "isoformat_utc",
    "parse_date",
    "format_date_long",
    "format_date_short",
    "format_phone",
    "calc_age",
]
