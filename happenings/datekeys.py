"""Date keys: the ``YYYY-MM-DD`` strings that identify an occurrence.

Every occurrence, override and RSVP is keyed by the calendar day it happens
on in the community timezone (``settings.timezone``). Keys are compared as
strings, so they must always be zero-padded ISO dates; build them with these
helpers rather than from UTC timestamps, which drift a day in the evening.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

from .config import settings

DATE_KEY_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")

DAY_NAMES = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)
DAY_ABBREVS = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")
MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


class DateKeyError(Exception):
    """Raised when a write targets a missing, malformed or cancelled occurrence."""

    INVALID_DATE_KEY = "INVALID_DATE_KEY"
    OCCURRENCE_CANCELLED = "OCCURRENCE_CANCELLED"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"

    STATUS_CODES = {
        INVALID_DATE_KEY: 400,
        OCCURRENCE_CANCELLED: 409,
        EVENT_NOT_FOUND: 404,
    }

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def status_code(self) -> int:
        return self.STATUS_CODES.get(self.code, 400)

    def as_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


def is_valid_date_key(value: object) -> bool:
    """Return True for a zero-padded ``YYYY-MM-DD`` string naming a real day."""
    if not isinstance(value, str) or not DATE_KEY_PATTERN.fullmatch(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def parse_date_key(value: str) -> date:
    if not is_valid_date_key(value):
        raise ValueError(f"Invalid date key: {value!r}")
    return date.fromisoformat(value)


def coerce_date_key(value: object) -> str | None:
    """Return a date key for a valid key or ``date``; ``None`` for anything else."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned if is_valid_date_key(cleaned) else None
    return None


def add_days(date_key: str, days: int) -> str:
    return (parse_date_key(date_key) + timedelta(days=days)).isoformat()


def days_between(start_key: str, end_key: str) -> int:
    return (parse_date_key(end_key) - parse_date_key(start_key)).days


def get_today_key(tz_name: str | None = None) -> str:
    return datetime.now(ZoneInfo(tz_name or settings.timezone)).date().isoformat()


def date_key_from_datetime(value: datetime, tz_name: str | None = None) -> str:
    """Return the local calendar day for ``value``; naive datetimes are UTC."""
    aware = value if value.tzinfo else value.replace(tzinfo=UTC)
    return aware.astimezone(ZoneInfo(tz_name or settings.timezone)).date().isoformat()


def day_index(value: date) -> int:
    """Weekday index with Sunday as 0."""
    return (value.weekday() + 1) % 7


def day_of_week_from_date_key(date_key: str | None) -> str | None:
    if not is_valid_date_key(date_key):
        return None
    return DAY_NAMES[day_index(date.fromisoformat(date_key))]


def format_date_key_for_display(date_key: str) -> str:
    """``2026-01-24`` -> ``Saturday, January 24, 2026``."""
    value = parse_date_key(date_key)
    return (
        f"{DAY_NAMES[day_index(value)]}, {MONTH_NAMES[value.month - 1]} "
        f"{value.day}, {value.year}"
    )


def format_date_key_short(date_key: str) -> str:
    """``2026-01-24`` -> ``Sat, Jan 24``."""
    value = parse_date_key(date_key)
    return (
        f"{DAY_NAMES[day_index(value)][:3]}, {MONTH_NAMES[value.month - 1][:3]} "
        f"{value.day}"
    )


def format_date_key_for_email(date_key: str) -> str:
    value = parse_date_key(date_key)
    return f"{value.month:02d}-{value.day:02d}-{value.year:04d}"


def format_date_group_header(date_key: str, today_key: str | None = None) -> str:
    today = today_key or get_today_key()
    if date_key == today:
        return "Today"
    if date_key == add_days(today, 1):
        return "Tomorrow"
    return format_date_key_short(date_key)
