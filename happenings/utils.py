"""Utility helpers for Happenings."""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

_slug_invalid = re.compile(r"[^a-z0-9]+")
_time_pattern = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def slugify(value: str) -> str:
    """Return a canonical slug suitable for URLs."""
    value = (
        unicodedata.normalize("NFKD", value or "")
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    value = value.strip().lower()
    value = _slug_invalid.sub("-", value)
    value = value.strip("-")
    return value


def get_field(record: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a mapping or an attribute-style record (ORM row)."""

    if isinstance(record, Mapping):
        return record.get(name, default)
    return getattr(record, name, default)


def parse_time(value: str | None) -> tuple[int, int, int] | None:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a tuple, or ``None`` when invalid."""

    if not isinstance(value, str):
        return None
    match = _time_pattern.match(value.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)


def is_valid_time(value: str | None) -> bool:
    return parse_time(value) is not None


def normalize_time(value: str | None) -> str | None:
    """Return ``HH:MM:SS`` for a valid time string, ``None`` for blanks.

    Raises ``ValueError`` for non-empty strings that are not times.
    """

    if value is None or not str(value).strip():
        return None
    parsed = parse_time(str(value))
    if parsed is None:
        raise ValueError(f"Invalid time: {value!r}")
    return "%02d:%02d:%02d" % parsed


def format_time_to_ampm(value: str | None) -> str:
    """Render ``19:30`` as ``7:30 PM``; whole hours drop the minutes."""

    parsed = parse_time(value)
    if parsed is None:
        return "NA"
    hours, minutes, _ = parsed
    period = "PM" if hours >= 12 else "AM"
    display_hour = hours % 12 or 12
    if minutes == 0:
        return f"{display_hour} {period}"
    return f"{display_hour}:{minutes:02d} {period}"
