"""CRUD helpers for venues, events, occurrence overrides, and RSVPs."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .datekeys import DAY_NAMES, DateKeyError, get_today_key, is_valid_date_key
from .models import RSVP, Event, OccurrenceOverride, Venue
from .occurrences import (
    ALLOWED_OVERRIDE_FIELDS,
    OCCURRENCE_STATUSES,
    compute_next_occurrence,
)
from .ops import (
    EventCsvRow,
    EventImportRow,
    OverrideCsvRow,
    RecordDiff,
    VenueCsvRow,
    compute_event_diff,
    compute_override_diff,
    compute_venue_diff,
    validate_event_import_row,
)
from .recurrence import (
    canonicalize_day_of_week,
    day_index_from_name,
    day_matches_date,
    derive_day_of_week_from_date,
    interpret_recurrence,
    normalize_custom_dates,
)
from .utils import normalize_time, slugify

VALID_ATTENDANCE_STATUSES = {"yes", "no", "maybe"}
SERIES_MODES = {"single", "weekly", "custom"}
OVERRIDE_PATCH_FIELDS = ALLOWED_OVERRIDE_FIELDS | {"event_date"}

EVENT_FIELDS = {
    "title",
    "event_type",
    "description",
    "venue_id",
    "event_date",
    "day_of_week",
    "recurrence_rule",
    "recurrence_end_date",
    "custom_dates",
    "max_occurrences",
    "start_time",
    "end_time",
    "cover_image_url",
    "host_notes",
    "external_url",
    "capacity",
    "is_free",
    "cost_label",
    "age_policy",
    "categories",
    "is_published",
}
_SCHEDULE_FIELDS = (
    "event_date",
    "day_of_week",
    "recurrence_rule",
    "recurrence_end_date",
    "custom_dates",
    "max_occurrences",
    "start_time",
    "end_time",
)


# -------- Venues --------


def get_venue_by_slug(session: Session, slug: str) -> Venue | None:
    normalized = (slug or "").strip().lower()
    if not normalized:
        return None
    return session.scalars(select(Venue).where(Venue.slug == normalized)).first()


def find_venues_by_name(session: Session, name: str) -> Sequence[Venue]:
    """Case-insensitive exact name match; more than one result is ambiguous."""
    cleaned = (name or "").strip().lower()
    if not cleaned:
        return []
    stmt = select(Venue).where(func.lower(Venue.name) == cleaned).order_by(Venue.slug)
    return session.scalars(stmt).all()


def list_venues(session: Session, search_term: str | None = None) -> Sequence[Venue]:
    stmt = select(Venue).order_by(Venue.name.asc())
    if search_term:
        stmt = stmt.where(
            Venue.name.ilike(f"%{search_term}%") | Venue.city.ilike(f"%{search_term}%")
        )
    return session.scalars(stmt).all()


def ensure_venue(
    session: Session,
    *,
    name: str,
    address: str | None = None,
    city: str | None = None,
    state: str | None = None,
) -> Venue:
    cleaned_name = (name or "").strip()
    slug = slugify(cleaned_name)
    if not slug:
        raise ValueError("Venue name is required")
    existing = get_venue_by_slug(session, slug)
    if existing:
        return existing
    venue = Venue(name=cleaned_name, slug=slug, address=address, city=city, state=state)
    session.add(venue)
    session.flush()
    return venue


VENUE_FIELDS = {
    "name",
    "address",
    "city",
    "state",
    "zip",
    "website_url",
    "phone",
    "google_maps_url",
    "notes",
}


def update_venue(session: Session, venue: Venue, **changes: Any) -> Venue:
    """Write venue details; the slug is kept so existing links keep working."""
    unknown = set(changes) - VENUE_FIELDS
    if unknown:
        raise ValueError(f"Unknown venue fields: {', '.join(sorted(unknown))}")
    if "name" in changes:
        cleaned_name = (changes["name"] or "").strip()
        if not cleaned_name:
            raise ValueError("Venue name is required")
        changes["name"] = cleaned_name
    for name, value in changes.items():
        setattr(venue, name, value)
    session.add(venue)
    session.flush()
    return venue


# -------- Events --------


def get_event(session: Session, event_id: str) -> Event | None:
    return session.get(Event, event_id)


def list_events(
    session: Session,
    *,
    venue_id: str | None = None,
    include_unpublished: bool = False,
) -> Sequence[Event]:
    """Events in a stable order so timelines break ties the same way each time."""
    stmt = select(Event).order_by(Event.title.asc(), Event.id.asc())
    if venue_id:
        stmt = stmt.where(Event.venue_id == venue_id)
    if not include_unpublished:
        stmt = stmt.where(Event.is_published.is_(True))
    return session.scalars(stmt).all()


def _optional_date(name: str, value: Any) -> str | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    cleaned = value.strip() if isinstance(value, str) else value
    if not is_valid_date_key(cleaned):
        raise ValueError(f"Invalid {name}: expected YYYY-MM-DD")
    return cleaned


def _optional_count(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        count = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("max_occurrences must be a whole number") from exc
    if count < 0:
        raise ValueError("max_occurrences must be >= 0")
    return count or None


def _normalize_schedule(values: dict[str, Any]) -> dict[str, Any]:
    """Validate and canonicalize the schedule columns of an event."""
    schedule = dict(values)
    schedule["event_date"] = _optional_date("event_date", schedule.get("event_date"))
    schedule["recurrence_end_date"] = _optional_date(
        "recurrence_end_date", schedule.get("recurrence_end_date")
    )
    schedule["start_time"] = normalize_time(schedule.get("start_time"))
    schedule["end_time"] = normalize_time(schedule.get("end_time"))
    schedule["max_occurrences"] = _optional_count(schedule.get("max_occurrences"))
    rule = (schedule.get("recurrence_rule") or "").strip() or None
    schedule["recurrence_rule"] = rule

    if rule and rule.lower() == "custom":
        dates = normalize_custom_dates(schedule.get("custom_dates"))
        if not dates:
            raise ValueError("Custom schedules need at least one valid date")
        schedule["custom_dates"] = dates
        schedule["event_date"] = dates[0]
        schedule["day_of_week"] = None
        return schedule
    schedule["custom_dates"] = None

    raw_day = schedule.get("day_of_week")
    if isinstance(raw_day, str) and raw_day.strip():
        index = day_index_from_name(raw_day)
        if index is None:
            raise ValueError(f"Invalid day_of_week: {raw_day!r}")
        raw_day = DAY_NAMES[index]
    schedule["day_of_week"] = canonicalize_day_of_week(
        rule, raw_day, schedule["event_date"]
    )

    recurrence = interpret_recurrence(schedule)
    if recurrence.frequency in ("weekly", "biweekly") and not day_matches_date(
        schedule["day_of_week"], schedule["event_date"]
    ):
        raise ValueError(
            f"event_date {schedule['event_date']} is not a {schedule['day_of_week']}"
        )
    return schedule


def _apply_series_mode(
    fields: dict[str, Any], series_mode: str | None, occurrence_count: int | None
) -> dict[str, Any]:
    if series_mode is None:
        return fields
    if series_mode not in SERIES_MODES:
        raise ValueError(f"Unknown series mode: {series_mode!r}")
    if series_mode == "custom":
        return {**fields, "recurrence_rule": "custom", "day_of_week": None}
    if not fields.get("event_date"):
        raise ValueError("event_date is required")
    if series_mode == "single":
        return {
            **fields,
            "recurrence_rule": None,
            "day_of_week": None,
            "custom_dates": None,
            "max_occurrences": None,
        }
    return {
        **fields,
        "recurrence_rule": "weekly",
        "day_of_week": derive_day_of_week_from_date(fields["event_date"]),
        "custom_dates": None,
        "max_occurrences": occurrence_count or None,
    }


def create_event(
    session: Session,
    *,
    title: str,
    venue: Venue | None = None,
    series_mode: str | None = None,
    occurrence_count: int | None = None,
    **fields: Any,
) -> Event:
    """Create an event.

    ``series_mode`` is a shortcut for the common shapes: ``single`` (one
    date), ``weekly`` (repeats on the weekday of ``event_date``, optionally
    ``occurrence_count`` times; 0 means no limit) and ``custom`` (explicit
    ``custom_dates``). Without it the schedule fields are taken as given.
    """
    unknown = set(fields) - EVENT_FIELDS
    if unknown:
        raise ValueError(f"Unknown event fields: {', '.join(sorted(unknown))}")
    cleaned_title = (title or "").strip()
    if not cleaned_title:
        raise ValueError("Title is required")
    if venue is not None:
        fields["venue_id"] = venue.id
    fields = _normalize_schedule(_apply_series_mode(fields, series_mode, occurrence_count))
    event = Event(title=cleaned_title, slug=slugify(cleaned_title) or "event", **fields)
    session.add(event)
    session.flush()
    return event


def update_event(session: Session, event: Event, **changes: Any) -> Event:
    unknown = set(changes) - EVENT_FIELDS
    if unknown:
        raise ValueError(f"Unknown event fields: {', '.join(sorted(unknown))}")
    if "title" in changes:
        cleaned_title = (changes["title"] or "").strip()
        if not cleaned_title:
            raise ValueError("Title is required")
        changes["title"] = cleaned_title
        event.slug = slugify(cleaned_title) or "event"
    if any(name in changes for name in _SCHEDULE_FIELDS):
        current = {name: getattr(event, name) for name in _SCHEDULE_FIELDS}
        if "day_of_week" not in changes and (
            "event_date" in changes or "recurrence_rule" in changes
        ):
            # A stale weekday would contradict the new anchor; re-derive it.
            current["day_of_week"] = None
        changes = {**changes, **_normalize_schedule({**current, **changes})}
    for name, value in changes.items():
        setattr(event, name, value)
    session.add(event)
    session.flush()
    return event


def update_custom_dates(session: Session, event: Event, dates: Any) -> list[str]:
    """Replace the event's schedule with explicit dates.

    Overrides for dates that drop out of the list are left in place.
    """
    if not isinstance(dates, (list, tuple)) or not dates:
        raise ValueError("custom_dates must be a non-empty list")
    normalized = normalize_custom_dates(dates)
    if not normalized:
        raise ValueError("custom_dates contained no valid dates")
    event.custom_dates = normalized
    event.event_date = normalized[0]
    event.recurrence_rule = "custom"
    event.day_of_week = None
    session.add(event)
    session.flush()
    return normalized


def delete_event(session: Session, event: Event) -> None:
    session.delete(event)
    session.flush()


# -------- Overrides --------


def get_override(
    session: Session, event_id: str, date_key: str
) -> OccurrenceOverride | None:
    stmt = select(OccurrenceOverride).where(
        OccurrenceOverride.event_id == event_id,
        OccurrenceOverride.date_key == date_key,
    )
    return session.scalars(stmt).first()


def list_overrides(
    session: Session,
    *,
    event_ids: Iterable[str] | None = None,
    start_key: str | None = None,
    end_key: str | None = None,
) -> Sequence[OccurrenceOverride]:
    stmt = select(OccurrenceOverride).order_by(
        OccurrenceOverride.date_key, OccurrenceOverride.event_id
    )
    if event_ids is not None:
        stmt = stmt.where(OccurrenceOverride.event_id.in_(list(event_ids)))
    if start_key:
        stmt = stmt.where(OccurrenceOverride.date_key >= start_key)
    if end_key:
        stmt = stmt.where(OccurrenceOverride.date_key <= end_key)
    return session.scalars(stmt).all()


def _clean_override_patch(
    date_key: str, patch: Any, *, today_key: str
) -> dict[str, Any] | None:
    if patch is None:
        return None
    if not isinstance(patch, dict):
        raise ValueError("override_patch must be an object")
    unsupported = sorted(set(patch) - OVERRIDE_PATCH_FIELDS)
    if unsupported:
        raise ValueError(f"Unsupported override fields: {', '.join(unsupported)}")
    cleaned = dict(patch)
    if "event_date" in cleaned:
        target = cleaned["event_date"]
        if target is None or target == date_key:
            cleaned.pop("event_date")
        elif not is_valid_date_key(target):
            raise ValueError("Invalid reschedule date: expected YYYY-MM-DD")
        elif target < today_key:
            raise ValueError("Cannot reschedule an occurrence into the past")
    for name in ("start_time", "end_time"):
        if cleaned.get(name) is not None:
            cleaned[name] = normalize_time(cleaned[name])
    return cleaned or None


def upsert_override(
    session: Session,
    event: Event,
    date_key: str,
    *,
    status: str = "normal",
    override_start_time: str | None = None,
    override_cover_image_url: str | None = None,
    override_notes: str | None = None,
    override_patch: dict[str, Any] | None = None,
    keep_patch: bool = False,
    today_key: str | None = None,
) -> OccurrenceOverride | None:
    """Create or replace the override for one occurrence.

    A ``normal`` override with no content is a revert: the stored row is
    removed and ``None`` is returned. With ``keep_patch`` the stored
    ``override_patch`` is left as it is and ``override_patch`` is ignored.
    """
    if not is_valid_date_key(date_key):
        raise ValueError("Invalid date_key: expected YYYY-MM-DD")
    normalized_status = (status or "normal").strip().lower()
    if normalized_status not in OCCURRENCE_STATUSES:
        raise ValueError(f"Invalid status: {status!r}")
    start_time = normalize_time(override_start_time)
    cover = (override_cover_image_url or "").strip() or None
    notes = (override_notes or "").strip() or None
    existing = get_override(session, event.id, date_key)
    if keep_patch:
        patch = existing.override_patch if existing else None
    else:
        patch = _clean_override_patch(
            date_key, override_patch, today_key=today_key or get_today_key()
        )

    if normalized_status == "normal" and not (start_time or cover or notes or patch):
        if existing:
            session.delete(existing)
            session.flush()
        return None

    override = existing or OccurrenceOverride(event_id=event.id, date_key=date_key)
    override.status = normalized_status
    override.override_start_time = start_time
    override.override_cover_image_url = cover
    override.override_notes = notes
    override.override_patch = patch
    session.add(override)
    session.flush()
    return override


def delete_override(session: Session, event_id: str, date_key: str) -> bool:
    existing = get_override(session, event_id, date_key)
    if not existing:
        return False
    session.delete(existing)
    session.flush()
    return True


# -------- Date-key contract --------


def resolve_effective_date_key(
    session: Session,
    event_id: str,
    provided: str | None = None,
    *,
    today_key: str | None = None,
) -> str:
    """Return the occurrence a write targets.

    An explicit key must be well formed; without one the event's next
    occurrence is used.
    """
    event = get_event(session, event_id)
    if event is None:
        raise DateKeyError(DateKeyError.EVENT_NOT_FOUND, "Event not found")
    if provided is not None and str(provided).strip():
        cleaned = str(provided).strip()
        if not is_valid_date_key(cleaned):
            raise DateKeyError(
                DateKeyError.INVALID_DATE_KEY,
                f"Invalid date key {cleaned!r}: expected YYYY-MM-DD",
            )
        return cleaned
    return compute_next_occurrence(event, today_key).date


def validate_date_key_for_write(
    session: Session,
    event_id: str,
    provided: str | None = None,
    *,
    today_key: str | None = None,
) -> str:
    date_key = resolve_effective_date_key(
        session, event_id, provided, today_key=today_key
    )
    override = get_override(session, event_id, date_key)
    if override is not None and override.status == "cancelled":
        raise DateKeyError(
            DateKeyError.OCCURRENCE_CANCELLED,
            f"The {date_key} occurrence has been cancelled",
        )
    return date_key


# -------- RSVPs --------


def create_rsvp(
    session: Session,
    *,
    event: Event,
    name: str,
    attendance_status: str = "yes",
    guest_count: int = 0,
    note: str | None = None,
    date_key: str | None = None,
    today_key: str | None = None,
) -> RSVP:
    cleaned_name = (name or "").strip()
    if not cleaned_name:
        raise ValueError("Name is required")
    status = (attendance_status or "").strip().lower() or "yes"
    if status not in VALID_ATTENDANCE_STATUSES:
        raise ValueError(f"Invalid attendance status: {attendance_status!r}")
    if guest_count < 0:
        raise ValueError("guest_count must be >= 0")
    target = validate_date_key_for_write(
        session, event.id, date_key, today_key=today_key
    )
    rsvp = RSVP(
        event_id=event.id,
        date_key=target,
        name=cleaned_name,
        attendance_status=status,
        guest_count=guest_count,
        note=note,
    )
    session.add(rsvp)
    session.flush()
    return rsvp


def list_rsvps(
    session: Session, event_id: str, date_key: str | None = None
) -> Sequence[RSVP]:
    stmt = select(RSVP).where(RSVP.event_id == event_id).order_by(RSVP.created_at)
    if date_key:
        stmt = stmt.where(RSVP.date_key == date_key)
    return session.scalars(stmt).all()


# -------- Bulk imports --------


def apply_override_rows(
    session: Session, rows: Sequence[OverrideCsvRow], *, apply: bool = False
) -> dict[str, Any]:
    """Diff validated CSV rows against stored overrides, optionally writing them.

    Rows naming unknown events are reported and never written. The CSV has
    no patch column, so stored ``override_patch`` values survive an update.
    """
    event_ids = {row.event_id for row in rows}
    known = set(session.scalars(select(Event.id).where(Event.id.in_(event_ids))).all())
    missing = [row for row in rows if row.event_id not in known]
    usable = [row for row in rows if row.event_id in known]
    diff = compute_override_diff(usable, list_overrides(session, event_ids=known))
    report: dict[str, Any] = {
        **diff.as_dict(),
        "errors": [
            f"Row {row.row_number}: event {row.event_id} not found" for row in missing
        ],
        "applied": False,
    }
    if not apply:
        return report
    for row in [*diff.inserts, *diff.updates]:
        event = session.get(Event, row.event_id)
        upsert_override(
            session,
            event,
            row.date_key,
            status=row.status,
            override_start_time=row.override_start_time,
            override_cover_image_url=row.override_cover_image_url,
            override_notes=row.override_notes,
            keep_patch=True,
        )
    report["applied"] = True
    return report


def _record_report(diff: RecordDiff) -> dict[str, Any]:
    return {
        **diff.as_dict(),
        "changes": [
            {
                "id": row.id,
                "row": row.row_number,
                "fields": [
                    {"field": change.field, "old": change.old, "new": change.new}
                    for change in changes
                ],
            }
            for row, changes in diff.updates
        ],
        "errors": [
            f"Row {row.row_number}: {row.id} not found" for row in diff.not_found
        ],
        "applied": False,
    }


def apply_venue_rows(
    session: Session, rows: Sequence[VenueCsvRow], *, apply: bool = False
) -> dict[str, Any]:
    """Update stored venues from validated CSV rows; unknown ids are never created."""
    ids = {row.id for row in rows}
    diff = compute_venue_diff(
        rows, session.scalars(select(Venue).where(Venue.id.in_(ids))).all()
    )
    report = _record_report(diff)
    if not apply:
        return report
    for venue_id, changes in diff.update_payloads():
        update_venue(session, session.get(Venue, venue_id), **changes)
    report["applied"] = True
    return report


def apply_event_rows(
    session: Session, rows: Sequence[EventCsvRow], *, apply: bool = False
) -> dict[str, Any]:
    """Update stored events from validated CSV rows.

    A row pointing at an unknown venue is an error. Changes that fail the
    schedule rules are reported per row and leave that event untouched.
    """
    known_venues = set(session.scalars(select(Venue.id)).all())
    bad_venue = [
        row for row in rows if row.venue_id and row.venue_id not in known_venues
    ]
    usable = [row for row in rows if row not in bad_venue]
    ids = {row.id for row in usable}
    diff = compute_event_diff(
        usable, session.scalars(select(Event).where(Event.id.in_(ids))).all()
    )
    report = _record_report(diff)
    report["errors"].extend(
        f"Row {row.row_number}: venue {row.venue_id} not found" for row in bad_venue
    )
    if not apply:
        return report
    rows_by_id = {row.id: row for row, _ in diff.updates}
    updated: list[str] = []
    for event_id, changes in diff.update_payloads():
        event = session.get(Event, event_id)
        try:
            update_event(session, event, **changes)
        except ValueError as exc:
            # Drop the half-applied slug from the failed row.
            session.expire(event)
            report["errors"].append(f"Row {rows_by_id[event_id].row_number}: {exc}")
            continue
        updated.append(event_id)
    report["updated"] = updated
    report["applied"] = True
    return report


@dataclass
class EventImportReport:
    created: list[str] = field(default_factory=list)
    would_create: list[int] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "would_create": self.would_create,
            "skipped": self.skipped,
            "warnings": self.warnings,
            "errors": self.errors,
        }


def _resolve_import_venue(
    session: Session, row: EventImportRow, report: EventImportReport
) -> str | None:
    prefix = f"Row {row.row_number}"
    if row.venue_id:
        if session.get(Venue, row.venue_id) is None:
            report.warnings.append(f"{prefix}: venue {row.venue_id} not found")
            return None
        return row.venue_id
    if not row.venue_name:
        return None
    matches = find_venues_by_name(session, row.venue_name)
    if not matches:
        report.warnings.append(f"{prefix}: venue {row.venue_name!r} not found")
        return None
    if len(matches) > 1:
        report.warnings.append(
            f"{prefix}: {len(matches)} venues named {row.venue_name!r}; left unset"
        )
        return None
    return matches[0].id


def import_events(
    session: Session, rows: Sequence[EventImportRow], *, apply: bool = False
) -> EventImportReport:
    """Validate, de-duplicate and optionally create imported events.

    A row is skipped when its slug collides with a stored event or an
    earlier row, or when an event with the same title, date and venue exists.
    """
    report = EventImportReport()
    existing_slugs = set(session.scalars(select(Event.slug)).all())
    batch_slugs: dict[str, int] = {}

    for row in rows:
        errors = validate_event_import_row(row)
        if errors:
            report.errors.extend(errors)
            continue
        prefix = f"Row {row.row_number}"
        if row.slug in existing_slugs:
            report.skipped.append(f"{prefix}: an event with slug {row.slug!r} exists")
            continue
        if row.slug in batch_slugs:
            report.skipped.append(
                f"{prefix}: duplicates row {batch_slugs[row.slug]} ({row.slug!r})"
            )
            continue
        venue_id = _resolve_import_venue(session, row, report)
        duplicate = session.scalars(
            select(Event.id).where(
                func.lower(Event.title) == row.title.lower(),
                Event.event_date.is_(None)
                if row.event_date is None
                else Event.event_date == row.event_date,
                Event.venue_id.is_(None) if venue_id is None else Event.venue_id == venue_id,
            )
        ).first()
        if duplicate:
            report.skipped.append(
                f"{prefix}: matches existing event {duplicate} (title, date, venue)"
            )
            continue
        batch_slugs[row.slug] = row.row_number

        if not apply:
            report.would_create.append(row.row_number)
            continue
        try:
            event = create_event(
                session,
                title=row.title,
                event_type=row.event_type,
                event_date=row.event_date,
                start_time=row.start_time,
                end_time=row.end_time,
                venue_id=venue_id,
                day_of_week=row.day_of_week,
                recurrence_rule=row.recurrence_rule,
                description=row.description,
                external_url=row.external_url,
                categories=list(row.categories) or None,
                is_free=row.is_free,
                cost_label=row.cost_label,
                age_policy=row.age_policy,
                max_occurrences=row.max_occurrences,
            )
        except ValueError as exc:
            report.errors.append(f"{prefix}: {exc}")
            continue
        report.created.append(event.id)
    return report
