"""Occurrence expansion and override merging.

Everything here is a pure function of its arguments: events (mappings or ORM
rows), a date window given as date keys, and an override map. Nothing reads
the clock except when a window or "today" is left out, and nothing touches
the database, so the same inputs always give the same timeline.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from itertools import islice
from typing import Any

from dateutil.relativedelta import relativedelta

from .datekeys import (
    add_days,
    coerce_date_key,
    get_today_key,
    is_valid_date_key,
    parse_date_key,
)
from .recurrence import (
    RRULE_WEEKDAYS,
    NormalizedRecurrence,
    assert_recurrence_invariant,
    build_rrule,
    interpret_recurrence,
    label_from_recurrence,
)
from .utils import get_field, parse_time


@dataclass(frozen=True)
class ExpansionCaps:
    max_events: int = 200
    max_total_occurrences: int = 500
    max_per_event: int = 40
    default_window_days: int = 90


EXPANSION_CAPS = ExpansionCaps()
SERIES_VIEW_MAX_UPCOMING = 12
# Long enough to reach the next date of a yearly series.
NEXT_OCCURRENCE_HORIZON_DAYS = 400

OCCURRENCE_STATUSES = ("normal", "cancelled")

ALLOWED_OVERRIDE_FIELDS = frozenset(
    {
        "title",
        "description",
        "start_time",
        "end_time",
        "venue_id",
        "location_mode",
        "custom_location_name",
        "custom_address",
        "custom_city",
        "custom_state",
        "online_url",
        "location_notes",
        "capacity",
        "has_timeslots",
        "total_slots",
        "slot_duration_minutes",
        "is_free",
        "cost_label",
        "signup_url",
        "signup_deadline",
        "age_policy",
        "external_url",
        "categories",
        "cover_image_url",
        "host_notes",
        "is_published",
    }
)

_MISSING_TIME = (99, 99, 99)


def _midnight(value: date) -> datetime:
    return datetime.combine(value, time.min)


# -------- Date generation --------


def nth_weekday_of_month(year: int, month: int, weekday: int, n: int) -> date | None:
    """Return the ``n``-th ``weekday`` (Sunday=0) of a month.

    Negative ``n`` counts from the end of the month (-1 is the last one).
    Months outside 1..12 roll into neighbouring years. Returns ``None`` when
    the month has no such day, e.g. a 5th Monday in a four-Monday month.
    """
    if n == 0:
        return None
    first = date(year + (month - 1) // 12, (month - 1) % 12 + 1, 1)
    target = RRULE_WEEKDAYS[weekday](n)
    if n > 0:
        found = first + relativedelta(weekday=target)
    else:
        found = first + relativedelta(day=31, weekday=target)
    return found if found.month == first.month else None


def iter_series_dates(
    rec: NormalizedRecurrence, *, anchor: date, begin: date, last: date
) -> Iterator[date]:
    """Yield the series' dates in ``[begin, last]`` in ascending order.

    ``anchor`` is the series start (the rule's DTSTART): nothing before it is
    produced, interval weeks are counted from its week, and ``rec.count`` is
    counted from it even when ``begin`` falls later. ``rec.end_date`` caps
    ``last``.
    """
    if rec.end_date:
        last = min(last, date.fromisoformat(rec.end_date))
    if max(anchor, begin) > last:
        return
    rule = build_rrule(rec, anchor)
    if rule is None:
        return
    if rec.count:
        series = (value for value in rule if value.date() >= anchor)
        candidates = islice(series, rec.count)
    else:
        candidates = rule.between(
            _midnight(max(anchor, begin)), _midnight(last), inc=True
        )
    for value in candidates:
        day = value.date()
        if day > last:
            return
        if day >= begin and day >= anchor:
            yield day


def _anchor_for(rec: NormalizedRecurrence, fallback: date) -> date:
    return date.fromisoformat(rec.start_date) if rec.start_date else fallback


def _resolve_window(start_key: str | None, end_key: str | None) -> tuple[str, str]:
    start_key = start_key or get_today_key()
    end_key = end_key or add_days(start_key, EXPANSION_CAPS.default_window_days)
    parse_date_key(start_key)
    parse_date_key(end_key)
    return start_key, end_key


def _expand(
    rec: NormalizedRecurrence,
    event: Any,
    start_key: str,
    end_key: str,
    limit: int,
) -> list[str]:
    if not rec.is_confident:
        return []
    start, end = parse_date_key(start_key), parse_date_key(end_key)
    if end < start or limit <= 0:
        return []
    anchor = _anchor_for(rec, start)
    keys: list[str] = []
    for value in iter_series_dates(rec, anchor=anchor, begin=start, last=end):
        keys.append(value.isoformat())
        if len(keys) >= limit:
            return keys
    if rec.is_recurring:
        assert_recurrence_invariant(
            rec,
            len(keys),
            window_days=(end - max(start, anchor)).days + 1,
            event_id=get_field(event, "id"),
            start_key=start_key,
            end_key=end_key,
        )
    return keys


def expand_occurrences_for_event(
    event: Any,
    start_key: str | None = None,
    end_key: str | None = None,
    max_occurrences: int | None = None,
) -> list[str]:
    """Return the event's occurrence date keys within the inclusive window.

    Unconfident schedules expand to nothing; see ``interpret_recurrence``.
    """
    start_key, end_key = _resolve_window(start_key, end_key)
    limit = max_occurrences or EXPANSION_CAPS.max_per_event
    return _expand(interpret_recurrence(event), event, start_key, end_key, limit)


# -------- Next occurrence --------


@dataclass(frozen=True)
class NextOccurrence:
    date: str
    is_today: bool
    is_tomorrow: bool
    is_confident: bool


def _next_occurrence(date_key: str, today_key: str, *, confident: bool) -> NextOccurrence:
    return NextOccurrence(
        date=date_key,
        is_today=date_key == today_key,
        is_tomorrow=date_key == add_days(today_key, 1),
        is_confident=confident,
    )


def compute_next_occurrence(event: Any, today_key: str | None = None) -> NextOccurrence:
    """Next date on or after today.

    One-time events report their own date even when it has passed. Schedules
    that are unconfident or have ended report today with
    ``is_confident=False``.
    """
    today = today_key or get_today_key()
    rec = interpret_recurrence(event)
    if rec.is_confident and not rec.is_recurring and rec.start_date:
        return _next_occurrence(rec.start_date, today, confident=True)
    if rec.is_confident:
        start = parse_date_key(today)
        horizon = start + timedelta(days=NEXT_OCCURRENCE_HORIZON_DAYS)
        dates = iter_series_dates(
            rec, anchor=_anchor_for(rec, start), begin=start, last=horizon
        )
        found = next(dates, None)
        if found is not None:
            return _next_occurrence(found.isoformat(), today, confident=True)
    return _next_occurrence(today, today, confident=False)


def group_events_by_next_occurrence(
    events: Iterable[Any], today_key: str | None = None
) -> dict[str, list[Any]]:
    """Bucket events by next occurrence date; keys come back sorted."""
    today = today_key or get_today_key()
    groups: dict[str, list[Any]] = {}
    for event in events:
        upcoming = compute_next_occurrence(event, today)
        groups.setdefault(upcoming.date, []).append(event)
    return {key: groups[key] for key in sorted(groups)}


# -------- Overrides --------


@dataclass(frozen=True)
class OccurrenceOverride:
    event_id: str
    date_key: str
    status: str = "normal"
    override_start_time: str | None = None
    override_cover_image_url: str | None = None
    override_notes: str | None = None
    override_patch: Mapping[str, Any] | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @classmethod
    def from_record(cls, record: Any) -> OccurrenceOverride:
        if isinstance(record, cls):
            return record
        patch = get_field(record, "override_patch")
        return cls(
            event_id=str(get_field(record, "event_id")),
            date_key=get_field(record, "date_key"),
            status=(get_field(record, "status") or "normal").strip().lower(),
            override_start_time=get_field(record, "override_start_time"),
            override_cover_image_url=get_field(record, "override_cover_image_url"),
            override_notes=get_field(record, "override_notes"),
            override_patch=dict(patch) if isinstance(patch, Mapping) else None,
        )


OverrideKey = tuple[str, str]


def build_override_key(event_id: Any, date_key: str) -> OverrideKey:
    return (str(event_id), date_key)


def build_override_map(overrides: Iterable[Any]) -> dict[OverrideKey, OccurrenceOverride]:
    """Index overrides by ``(event_id, date_key)``; a later duplicate wins."""
    mapping: dict[OverrideKey, OccurrenceOverride] = {}
    for record in overrides:
        override = OccurrenceOverride.from_record(record)
        mapping[build_override_key(override.event_id, override.date_key)] = override
    return mapping


def apply_occurrence_override(
    base: Mapping[str, Any], override: Any | None
) -> dict[str, Any]:
    """Return a copy of ``base`` with one occurrence's override applied.

    Legacy columns (start time, cover image, notes) apply first; allowlisted
    ``override_patch`` keys then win, null values included. The input is
    never mutated and applying the same override twice changes nothing.
    """
    merged = dict(base)
    if override is None:
        return merged
    start_time = get_field(override, "override_start_time")
    if start_time is not None:
        merged["start_time"] = start_time
    cover = get_field(override, "override_cover_image_url")
    if cover is not None:
        merged["cover_image_url"] = cover
    notes = get_field(override, "override_notes")
    if notes is not None:
        merged["host_notes"] = notes
    patch = get_field(override, "override_patch")
    if isinstance(patch, Mapping):
        for key, value in patch.items():
            if key in ALLOWED_OVERRIDE_FIELDS:
                merged[key] = copy.deepcopy(value)
    return merged


@dataclass(frozen=True)
class DisplayDate:
    display_date: str
    is_rescheduled: bool
    original_date_key: str | None = None


def get_display_date_for_occurrence(
    date_key: str, override: Any | None = None
) -> DisplayDate:
    """Where an occurrence is shown; identity stays ``date_key`` regardless."""
    if override is not None:
        patch = get_field(override, "override_patch")
        target = patch.get("event_date") if isinstance(patch, Mapping) else None
        if is_valid_date_key(target) and target != date_key:
            return DisplayDate(target, True, date_key)
    return DisplayDate(date_key, False)


def _is_cancelled(override: Any | None) -> bool:
    if override is None:
        return False
    return (get_field(override, "status") or "").strip().lower() == "cancelled"


# -------- Timeline grouping --------


@dataclass(frozen=True)
class OccurrenceEntry:
    event: Any
    date_key: str
    is_confident: bool = True
    override: Any | None = None
    is_cancelled: bool = False
    display_date: str | None = None
    is_rescheduled: bool = False
    original_date_key: str | None = None

    @property
    def effective_date(self) -> str:
        return self.display_date or self.date_key

    @property
    def start_time(self) -> str | None:
        """The start time ``apply_occurrence_override`` would produce.

        A patch key wins even when it is null, then the override column, then
        the event's own time.
        """
        if self.override is not None:
            patch = get_field(self.override, "override_patch")
            if isinstance(patch, Mapping) and "start_time" in patch:
                return patch["start_time"]
            override_time = get_field(self.override, "override_start_time")
            if override_time is not None:
                return override_time
        return get_field(self.event, "start_time")


def _time_sort_key(value: str | None) -> tuple[int, int, int]:
    return parse_time(value) or _MISSING_TIME


def _entry_sort_key(entry: OccurrenceEntry) -> tuple[int, int, int]:
    return _time_sort_key(entry.start_time)


def _make_entry(event: Any, date_key: str, override: Any | None) -> OccurrenceEntry:
    display = get_display_date_for_occurrence(date_key, override)
    return OccurrenceEntry(
        event=event,
        date_key=date_key,
        override=override,
        is_cancelled=_is_cancelled(override),
        display_date=display.display_date,
        is_rescheduled=display.is_rescheduled,
        original_date_key=display.original_date_key,
    )


@dataclass
class ExpansionMetrics:
    events_processed: int = 0
    events_skipped: int = 0
    total_occurrences: int = 0
    cancelled_count: int = 0
    unknown_count: int = 0
    was_capped: bool = False


@dataclass
class ExpansionResult:
    grouped_events: dict[str, list[OccurrenceEntry]]
    cancelled_occurrences: list[OccurrenceEntry]
    unknown_events: list[Any]
    metrics: ExpansionMetrics = field(default_factory=ExpansionMetrics)


def expand_and_group_events(
    events: Iterable[Any],
    *,
    start_key: str | None = None,
    end_key: str | None = None,
    max_occurrences: int | None = None,
    max_events: int | None = None,
    max_total_occurrences: int | None = None,
    override_map: Mapping[OverrideKey, Any] | None = None,
) -> ExpansionResult:
    """Expand events into a date-grouped timeline.

    Active occurrences are grouped by date key (groups sorted by date,
    entries by start time with untimed entries last and ties in input
    order). Cancelled occurrences are returned separately and unconfident
    events land in ``unknown_events``. Only the first ``max_events`` events
    are considered and expansion stops once ``max_total_occurrences`` is
    reached.
    """
    start_key, end_key = _resolve_window(start_key, end_key)
    per_event = max_occurrences or EXPANSION_CAPS.max_per_event
    max_events = max_events or EXPANSION_CAPS.max_events
    max_total = max_total_occurrences or EXPANSION_CAPS.max_total_occurrences
    overrides = override_map or {}

    candidates = list(events)
    metrics = ExpansionMetrics()
    if len(candidates) > max_events:
        metrics.events_skipped = len(candidates) - max_events
        metrics.was_capped = True
        candidates = candidates[:max_events]

    groups: dict[str, list[OccurrenceEntry]] = {}
    cancelled: list[OccurrenceEntry] = []
    unknown: list[Any] = []

    for position, event in enumerate(candidates):
        if metrics.total_occurrences >= max_total:
            metrics.was_capped = True
            metrics.events_skipped += len(candidates) - position
            break
        metrics.events_processed += 1
        rec = interpret_recurrence(event)
        if not rec.is_confident:
            unknown.append(event)
            metrics.unknown_count += 1
            continue
        limit = min(per_event, max_total - metrics.total_occurrences)
        event_id = get_field(event, "id")
        for date_key in _expand(rec, event, start_key, end_key, limit):
            entry = _make_entry(
                event, date_key, overrides.get(build_override_key(event_id, date_key))
            )
            if entry.is_cancelled:
                cancelled.append(entry)
                metrics.cancelled_count += 1
            else:
                groups.setdefault(date_key, []).append(entry)
            metrics.total_occurrences += 1

    grouped = {key: sorted(groups[key], key=_entry_sort_key) for key in sorted(groups)}
    cancelled.sort(key=lambda entry: entry.date_key)
    return ExpansionResult(grouped, cancelled, unknown, metrics)


def apply_reschedules_to_timeline(
    groups: Mapping[str, list[OccurrenceEntry]],
) -> dict[str, list[OccurrenceEntry]]:
    """Move rescheduled entries under their display date.

    Moved entries keep their identity ``date_key`` and override reference;
    empty groups are dropped and keys come back sorted.
    """
    placed: dict[str, list[OccurrenceEntry]] = {}
    moved: list[OccurrenceEntry] = []
    for group_key, entries in groups.items():
        for entry in entries:
            display = get_display_date_for_occurrence(entry.date_key, entry.override)
            if display.is_rescheduled:
                moved.append(
                    replace(
                        entry,
                        display_date=display.display_date,
                        is_rescheduled=True,
                        original_date_key=entry.date_key,
                    )
                )
            else:
                placed.setdefault(group_key, []).append(entry)
    for entry in moved:
        placed.setdefault(entry.display_date, []).append(entry)
    return {key: sorted(placed[key], key=_entry_sort_key) for key in sorted(placed)}


# -------- Series view --------


@dataclass
class SeriesEntry:
    event: Any
    next_occurrence: NextOccurrence
    upcoming_occurrences: list[OccurrenceEntry]
    total_upcoming_count: int
    recurrence_summary: str
    is_one_time: bool


@dataclass
class SeriesMetrics:
    events_processed: int = 0
    events_skipped: int = 0
    events_without_occurrences: int = 0
    was_capped: bool = False


@dataclass
class SeriesViewResult:
    series: list[SeriesEntry]
    unknown_events: list[Any]
    metrics: SeriesMetrics = field(default_factory=SeriesMetrics)


def _count_in_window(rec: NormalizedRecurrence, start_key: str, end_key: str) -> int:
    """Occurrences in the window without the per-event expansion cap."""
    start, end = parse_date_key(start_key), parse_date_key(end_key)
    dates = iter_series_dates(rec, anchor=_anchor_for(rec, start), begin=start, last=end)
    return sum(1 for _ in dates)


def group_events_as_series_view(
    events: Iterable[Any],
    *,
    start_key: str | None = None,
    end_key: str | None = None,
    override_map: Mapping[OverrideKey, Any] | None = None,
    max_events: int | None = None,
    max_upcoming: int = SERIES_VIEW_MAX_UPCOMING,
    today_key: str | None = None,
) -> SeriesViewResult:
    """One row per event with its upcoming occurrences.

    Cancelled occurrences stay in ``upcoming_occurrences`` (flagged) so a
    series page can show them struck through; the next occurrence skips them
    unless every upcoming date is cancelled. Rows are ordered by next date.
    """
    start_key, end_key = _resolve_window(start_key, end_key)
    today = today_key or get_today_key()
    max_events = max_events or EXPANSION_CAPS.max_events
    overrides = override_map or {}

    candidates = list(events)
    metrics = SeriesMetrics()
    if len(candidates) > max_events:
        metrics.events_skipped = len(candidates) - max_events
        metrics.was_capped = True
        candidates = candidates[:max_events]

    series: list[SeriesEntry] = []
    unknown: list[Any] = []
    for event in candidates:
        metrics.events_processed += 1
        rec = interpret_recurrence(event)
        if not rec.is_confident:
            unknown.append(event)
            continue
        event_id = get_field(event, "id")
        entries = [
            _make_entry(event, key, overrides.get(build_override_key(event_id, key)))
            for key in _expand(
                rec, event, start_key, end_key, EXPANSION_CAPS.max_per_event
            )
        ]
        if not entries:
            metrics.events_without_occurrences += 1
            continue
        upcoming = next((e for e in entries if not e.is_cancelled), entries[0])
        series.append(
            SeriesEntry(
                event=event,
                next_occurrence=_next_occurrence(
                    upcoming.effective_date, today, confident=True
                ),
                upcoming_occurrences=entries[:max_upcoming],
                total_upcoming_count=_count_in_window(rec, start_key, end_key),
                recurrence_summary=label_from_recurrence(rec),
                is_one_time=not rec.is_recurring,
            )
        )

    series.sort(
        key=lambda row: (
            row.next_occurrence.date,
            _time_sort_key(get_field(row.event, "start_time")),
            (get_field(row.event, "title") or "").lower(),
        )
    )
    return SeriesViewResult(series, unknown, metrics)


# -------- De-duplication --------


def _completeness_score(event: Any) -> int:
    score = 0
    if get_field(event, "recurrence_rule"):
        score += 2
    if get_field(event, "start_time"):
        score += 1
    return score


def deduplicate_by_title(events: Iterable[Any]) -> list[Any]:
    """Collapse events sharing a title (case and whitespace insensitive).

    The record with a recurrence rule and a start time beats a bare one; on
    a tie the first seen wins. Output keeps first-seen title order.
    """
    chosen: dict[str, Any] = {}
    for event in events:
        key = (get_field(event, "title") or "").strip().lower()
        current = chosen.get(key)
        if current is None or _completeness_score(event) > _completeness_score(current):
            chosen[key] = event
    return list(chosen.values())


def occurrence_window(
    start_key: str | None = None,
    end_key: str | None = None,
    *,
    window_days: int | None = None,
) -> tuple[str, str]:
    """Resolve a window, defaulting to today plus ``window_days``."""
    start = coerce_date_key(start_key) if start_key else get_today_key()
    if start is None:
        raise ValueError(f"Invalid date key: {start_key!r}")
    if end_key:
        end = coerce_date_key(end_key)
        if end is None:
            raise ValueError(f"Invalid date key: {end_key!r}")
    else:
        end = add_days(start, window_days or EXPANSION_CAPS.default_window_days)
    if end < start:
        raise ValueError("end must be on or after start")
    return start, end
