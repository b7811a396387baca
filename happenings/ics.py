"""iCalendar (.ics) export for a series of occurrences."""

from __future__ import annotations

import html
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from .config import settings
from .occurrences import apply_occurrence_override, get_display_date_for_occurrence
from .utils import get_field, parse_time

_tag_pattern = re.compile(r"<[^>]+>")
DEFAULT_DURATION = timedelta(hours=2)


def _ensure_utc(dt: datetime) -> datetime:
    """Return a timezone-aware UTC datetime."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _format_utc(dt: datetime) -> str:
    """Format a datetime as an RFC5545 UTC timestamp."""

    return _ensure_utc(dt).replace(microsecond=0).strftime("%Y%m%dT%H%M%SZ")


def _format_date(value: date) -> str:
    return value.strftime("%Y%m%d")


def _escape_text(value: str | None) -> str:
    """Escape text for ICS fields and strip any HTML tags."""

    if not value:
        return ""
    stripped = _tag_pattern.sub("", html.unescape(value))
    normalized = stripped.replace("\r\n", "\n").replace("\r", "\n")
    return (
        normalized.replace("\\", "\\\\")
        .replace(";", r"\;")
        .replace(",", r"\,")
        .replace("\n", "\\n")
    )


def _local_datetime(day: date, time_value: str | None, tz: ZoneInfo) -> datetime | None:
    parts = parse_time(time_value)
    if parts is None:
        return None
    hour, minute, second = parts
    return datetime(day.year, day.month, day.day, hour, minute, second, tzinfo=tz)


def _venue_location(venue: Any) -> str | None:
    parts = (get_field(venue, name) for name in ("name", "address", "city"))
    return ", ".join(part for part in parts if part) or None


def _event_lines(
    event: Mapping[str, Any],
    *,
    uid: str,
    day: date,
    dtstamp: str,
    cancelled: bool,
    location: str | None,
    tz: ZoneInfo,
) -> list[str]:
    lines = ["BEGIN:VEVENT", f"UID:{uid}", f"DTSTAMP:{dtstamp}"]
    start = _local_datetime(day, event.get("start_time"), tz)
    if start is None:
        # Untimed occurrences are all-day events.
        lines.append(f"DTSTART;VALUE=DATE:{_format_date(day)}")
        lines.append(f"DTEND;VALUE=DATE:{_format_date(day + timedelta(days=1))}")
    else:
        end = _local_datetime(day, event.get("end_time"), tz)
        if end is None or end <= start:
            end = start + DEFAULT_DURATION
        lines.append(f"DTSTART:{_format_utc(start)}")
        lines.append(f"DTEND:{_format_utc(end)}")
    lines.append(f"SUMMARY:{_escape_text(event.get('title'))}")
    description = event.get("description")
    if event.get("host_notes"):
        description = "\n\n".join(filter(None, [description, event["host_notes"]]))
    lines.append(f"DESCRIPTION:{_escape_text(description)}")
    lines.append(f"LOCATION:{_escape_text(location)}")
    if event.get("external_url"):
        lines.append(f"URL:{event['external_url']}")
    lines.append("STATUS:CANCELLED" if cancelled else "STATUS:CONFIRMED")
    lines.append("END:VEVENT")
    return lines


def generate_ics(
    event: Any,
    date_keys: Iterable[str],
    *,
    override_map: Mapping[tuple[str, str], Any] | None = None,
    venues: Mapping[str, Any] | None = None,
    location: str | None = None,
    now: datetime | None = None,
) -> str:
    """Return ICS text with one VEVENT per occurrence in ``date_keys``.

    Each occurrence is built from the override-merged event and placed on its
    display date. The UID keeps the original date key so calendar clients
    update a rescheduled occurrence in place. LOCATION comes from the
    merged ``venue_id`` looked up in ``venues``, so a venue swap moves the
    occurrence too; ``location`` is used when there is no match.
    """

    tz = ZoneInfo(settings.timezone)
    dtstamp = _format_utc(now or datetime.now(UTC))
    event_id = str(get_field(event, "id"))
    base = event.as_dict() if hasattr(event, "as_dict") else dict(event)
    overrides = override_map or {}
    venue_index = venues or {}

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Happenings//EN",
        "CALSCALE:GREGORIAN",
    ]
    for date_key in date_keys:
        override = overrides.get((event_id, date_key))
        merged = apply_occurrence_override(base, override)
        display = get_display_date_for_occurrence(date_key, override)
        cancelled = override is not None and (
            (get_field(override, "status") or "").lower() == "cancelled"
        )
        venue = venue_index.get(merged.get("venue_id"))
        lines.extend(
            _event_lines(
                merged,
                uid=f"{event_id}-{date_key}@happenings",
                day=date.fromisoformat(display.display_date),
                dtstamp=dtstamp,
                cancelled=cancelled,
                location=_venue_location(venue) if venue is not None else location,
                tz=tz,
            )
        )
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"
