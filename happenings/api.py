"""FastAPI application for Happenings."""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date, datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .crud import (
    apply_event_rows,
    apply_override_rows,
    apply_venue_rows,
    create_event,
    create_rsvp,
    delete_event,
    delete_override,
    ensure_venue,
    get_event,
    get_override,
    get_venue_by_slug,
    import_events,
    list_events,
    list_overrides,
    list_rsvps,
    list_venues,
    update_custom_dates,
    update_event,
    upsert_override,
)
from .database import SessionLocal
from .datekeys import (
    DateKeyError,
    format_date_group_header,
    format_date_key_for_display,
    get_today_key,
    is_valid_date_key,
)
from .ics import generate_ics
from .models import RSVP, Event, OccurrenceOverride, Venue
from .occurrences import (
    OccurrenceEntry,
    SeriesEntry,
    apply_occurrence_override,
    apply_reschedules_to_timeline,
    build_override_map,
    compute_next_occurrence,
    deduplicate_by_title,
    expand_and_group_events,
    expand_occurrences_for_event,
    get_display_date_for_occurrence,
    group_events_as_series_view,
    occurrence_window,
)
from .ops import (
    parse_event_csv,
    parse_event_import_csv,
    parse_override_csv,
    parse_venue_csv,
    serialize_event_csv,
    serialize_override_csv,
    serialize_venue_csv,
    validate_event_rows,
    validate_override_rows,
    validate_venue_rows,
)
from .recurrence import get_recurrence_summary
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .utils import format_time_to_ampm

# Use uvicorn's error logger so messages get the level prefix in the default log
# format (needed for downstream filtering like Loki).
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("happenings")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="Happenings", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(DateKeyError)
async def date_key_error_handler(request: Request, exc: DateKeyError):
    return JSONResponse(exc.as_dict(), status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    lower = raw.lower()
    if "database is locked" in lower:
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# -------- Payloads --------


class VenueCreatePayload(BaseModel):
    name: str
    address: str | None = None
    city: str | None = None
    state: str | None = None


class EventFieldsPayload(BaseModel):
    event_type: str | None = None
    description: str | None = None
    venue_id: str | None = None
    event_date: str | None = Field(None, description="YYYY-MM-DD")
    day_of_week: str | None = None
    recurrence_rule: str | None = Field(
        None, description="RRULE text or a label such as 'weekly' or '1st/3rd'"
    )
    recurrence_end_date: str | None = None
    custom_dates: list[str] | None = None
    max_occurrences: int | None = Field(None, ge=0)
    start_time: str | None = Field(None, description="HH:MM or HH:MM:SS, local time")
    end_time: str | None = None
    cover_image_url: str | None = None
    host_notes: str | None = None
    external_url: str | None = None
    capacity: int | None = Field(None, ge=0)
    is_free: bool | None = None
    cost_label: str | None = None
    age_policy: str | None = None
    categories: list[str] | None = None
    is_published: bool | None = None


class EventCreatePayload(EventFieldsPayload):
    title: str
    series_mode: str | None = Field(None, description="single, weekly or custom")
    occurrence_count: int | None = Field(
        None, ge=0, description="Weekly series length; 0 means no limit"
    )


class EventUpdatePayload(EventFieldsPayload):
    title: str | None = None


class CustomDatesPayload(BaseModel):
    dates: list[str]


class OverridePayload(BaseModel):
    status: str = "normal"
    override_start_time: str | None = None
    override_cover_image_url: str | None = None
    override_notes: str | None = None
    override_patch: dict[str, Any] | None = None


class RSVPCreatePayload(BaseModel):
    name: str
    attendance_status: str = "yes"
    guest_count: int = Field(0, ge=0, le=20)
    note: str | None = None
    date_key: str | None = Field(
        None, description="Occurrence to RSVP for; defaults to the next one"
    )


class CsvImportPayload(BaseModel):
    csv_text: str
    apply: bool = False


# -------- Serialization --------


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _serialize_venue(venue: Venue) -> dict:
    return {
        "id": venue.id,
        "name": venue.name,
        "slug": venue.slug,
        "address": venue.address,
        "city": venue.city,
        "state": venue.state,
        "zip": venue.zip,
        "website_url": venue.website_url,
        "phone": venue.phone,
        "google_maps_url": venue.google_maps_url,
        "notes": venue.notes,
    }


def _serialize_event_values(
    values: Mapping[str, Any], venues: Mapping[str, Venue] | None = None
) -> dict:
    payload = {key: _jsonable(value) for key, value in values.items()}
    payload["time_label"] = format_time_to_ampm(values.get("start_time"))
    venue = (venues or {}).get(values.get("venue_id"))
    payload["venue_name"] = venue.name if venue else None
    return payload


def _serialize_event(event: Event, *, today_key: str | None = None) -> dict:
    payload = _serialize_event_values(event.as_dict())
    payload["venue_name"] = event.venue_name
    upcoming = compute_next_occurrence(event, today_key)
    payload["recurrence_summary"] = get_recurrence_summary(event)
    payload["next_occurrence"] = asdict(upcoming)
    payload["links"] = {
        "occurrences": f"/api/v1/events/{event.id}/occurrences",
        "ics": f"/api/v1/events/{event.id}/event.ics",
    }
    return payload


def _serialize_override(override: OccurrenceOverride | None) -> dict | None:
    if override is None:
        return None
    return {
        "event_id": override.event_id,
        "date_key": override.date_key,
        "status": override.status,
        "override_start_time": override.override_start_time,
        "override_cover_image_url": override.override_cover_image_url,
        "override_notes": override.override_notes,
        "override_patch": override.override_patch,
        "updated_at": _jsonable(override.updated_at),
    }


def _serialize_rsvp(rsvp: RSVP) -> dict:
    return {
        "id": rsvp.id,
        "event_id": rsvp.event_id,
        "date_key": rsvp.date_key,
        "name": rsvp.name,
        "attendance_status": rsvp.attendance_status,
        "guest_count": rsvp.guest_count,
        "note": rsvp.note,
        "created_at": rsvp.created_at.isoformat(),
    }


def _serialize_entry(entry: OccurrenceEntry, venues: Mapping[str, Venue]) -> dict:
    effective = apply_occurrence_override(entry.event.as_dict(), entry.override)
    return {
        "event_id": entry.event.id,
        "date_key": entry.date_key,
        "display_date": entry.effective_date,
        "is_rescheduled": entry.is_rescheduled,
        "original_date_key": entry.original_date_key,
        "is_cancelled": entry.is_cancelled,
        "start_time": entry.start_time,
        "time_label": format_time_to_ampm(entry.start_time),
        "event": _serialize_event_values(effective, venues),
    }


def _serialize_unknown(event: Event) -> dict:
    return {
        "id": event.id,
        "title": event.title,
        "venue_name": event.venue_name,
        "recurrence_rule": event.recurrence_rule,
        "recurrence_summary": get_recurrence_summary(event),
    }


def _serialize_series(entry: SeriesEntry, venues: Mapping[str, Venue]) -> dict:
    return {
        "event_id": entry.event.id,
        "title": entry.event.title,
        "venue_name": entry.event.venue_name,
        "recurrence_summary": entry.recurrence_summary,
        "is_one_time": entry.is_one_time,
        "next_occurrence": asdict(entry.next_occurrence),
        "total_upcoming_count": entry.total_upcoming_count,
        "upcoming_occurrences": [
            _serialize_entry(item, venues) for item in entry.upcoming_occurrences
        ],
    }


# -------- Helpers --------


def _ensure_event(db: Session, event_id: str) -> Event:
    event = get_event(db, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def _window(start: str | None, end: str | None) -> tuple[str, str]:
    try:
        return occurrence_window(start, end, window_days=settings.default_window_days)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _require_date_key(date_key: str) -> str:
    if not is_valid_date_key(date_key):
        raise DateKeyError(
            DateKeyError.INVALID_DATE_KEY,
            f"Invalid date key {date_key!r}: expected YYYY-MM-DD",
        )
    return date_key


def _venue_index(db: Session) -> dict[str, Venue]:
    return {venue.id: venue for venue in list_venues(db)}


def _timeline_payload(
    db: Session, events: Iterable[Event], start_key: str, end_key: str
) -> dict:
    override_map = build_override_map(
        list_overrides(db, start_key=start_key, end_key=end_key)
    )
    result = expand_and_group_events(
        events,
        start_key=start_key,
        end_key=end_key,
        max_occurrences=settings.max_occurrences_per_event,
        max_events=settings.max_events,
        max_total_occurrences=settings.max_total_occurrences,
        override_map=override_map,
    )
    venues = _venue_index(db)
    today_key = get_today_key()
    groups = apply_reschedules_to_timeline(result.grouped_events)
    return {
        "view": "timeline",
        "window": {"start": start_key, "end": end_key},
        "groups": [
            {
                "date_key": date_key,
                "header": format_date_group_header(date_key, today_key),
                "display": format_date_key_for_display(date_key),
                "occurrences": [_serialize_entry(entry, venues) for entry in entries],
            }
            for date_key, entries in groups.items()
        ],
        "cancelled": [
            _serialize_entry(entry, venues) for entry in result.cancelled_occurrences
        ],
        "unknown": [_serialize_unknown(event) for event in result.unknown_events],
        "metrics": asdict(result.metrics),
    }


def _series_payload(
    db: Session, events: Iterable[Event], start_key: str, end_key: str
) -> dict:
    override_map = build_override_map(
        list_overrides(db, start_key=start_key, end_key=end_key)
    )
    result = group_events_as_series_view(
        events,
        start_key=start_key,
        end_key=end_key,
        override_map=override_map,
        max_events=settings.max_events,
        max_upcoming=settings.series_max_upcoming,
    )
    venues = _venue_index(db)
    return {
        "view": "series",
        "window": {"start": start_key, "end": end_key},
        "series": [_serialize_series(entry, venues) for entry in result.series],
        "unknown": [_serialize_unknown(event) for event in result.unknown_events],
        "metrics": asdict(result.metrics),
    }


# -------- Happenings --------


@app.get("/api/v1/happenings")
def api_list_happenings(
    start: str | None = Query(None, description="First date (YYYY-MM-DD)"),
    end: str | None = Query(None, description="Last date (YYYY-MM-DD)"),
    view: str = Query("timeline", pattern="^(timeline|series)$"),
    db: Session = Depends(get_db),
):
    start_key, end_key = _window(start, end)
    events = list_events(db)
    if view == "series":
        return _series_payload(db, events, start_key, end_key)
    return _timeline_payload(db, events, start_key, end_key)


# -------- Venues --------


@app.get("/api/v1/venues")
def api_list_venues(
    q: str | None = Query(None, description="Filter by name or city"),
    db: Session = Depends(get_db),
):
    return {"venues": [_serialize_venue(venue) for venue in list_venues(db, q)]}


@app.post("/api/v1/venues", status_code=201)
def api_create_venue(payload: VenueCreatePayload, db: Session = Depends(get_db)):
    try:
        venue = ensure_venue(
            db,
            name=payload.name,
            address=payload.address,
            city=payload.city,
            state=payload.state,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"venue": _serialize_venue(venue)}


@app.get("/api/v1/venues/{slug}/happenings")
def api_venue_happenings(
    slug: str,
    start: str | None = Query(None),
    end: str | None = Query(None),
    db: Session = Depends(get_db),
):
    venue = get_venue_by_slug(db, slug)
    if not venue:
        raise HTTPException(status_code=404, detail="Venue not found")
    start_key, end_key = _window(start, end)
    events = deduplicate_by_title(list_events(db, venue_id=venue.id))
    payload = _series_payload(db, events, start_key, end_key)
    payload["venue"] = _serialize_venue(venue)
    return payload


# -------- Events --------


def _check_venue(db: Session, venue_id: str | None) -> None:
    if venue_id and db.get(Venue, venue_id) is None:
        raise HTTPException(status_code=400, detail="Venue not found")


@app.post("/api/v1/events", status_code=201)
def api_create_event(payload: EventCreatePayload, db: Session = Depends(get_db)):
    data = payload.model_dump(exclude_unset=True)
    title = data.pop("title")
    series_mode = data.pop("series_mode", None)
    occurrence_count = data.pop("occurrence_count", None)
    _check_venue(db, data.get("venue_id"))
    try:
        event = create_event(
            db,
            title=title,
            series_mode=series_mode,
            occurrence_count=occurrence_count,
            **data,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"event": _serialize_event(event)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(event_id: str, db: Session = Depends(get_db)):
    event = _ensure_event(db, event_id)
    return {"event": _serialize_event(event)}


@app.patch("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str, payload: EventUpdatePayload, db: Session = Depends(get_db)
):
    event = _ensure_event(db, event_id)
    data = payload.model_dump(exclude_unset=True)
    _check_venue(db, data.get("venue_id"))
    try:
        update_event(db, event, **data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"event": _serialize_event(event)}


@app.delete("/api/v1/events/{event_id}", status_code=204)
def api_delete_event(event_id: str, db: Session = Depends(get_db)):
    event = _ensure_event(db, event_id)
    delete_event(db, event)
    return Response(status_code=204)


@app.put("/api/v1/events/{event_id}/custom-dates")
def api_update_custom_dates(
    event_id: str, payload: CustomDatesPayload, db: Session = Depends(get_db)
):
    event = _ensure_event(db, event_id)
    try:
        dates = update_custom_dates(db, event, payload.dates)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"custom_dates": dates, "event": _serialize_event(event)}


# -------- Occurrences --------


@app.get("/api/v1/events/{event_id}/occurrences")
def api_list_occurrences(
    event_id: str,
    start: str | None = Query(None),
    end: str | None = Query(None),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    start_key, end_key = _window(start, end)
    result = expand_and_group_events(
        [event],
        start_key=start_key,
        end_key=end_key,
        max_occurrences=settings.max_occurrences_per_event,
        override_map=build_override_map(event.overrides),
    )
    venues = _venue_index(db)
    entries = [entry for group in result.grouped_events.values() for entry in group]
    entries.extend(result.cancelled_occurrences)
    entries.sort(key=lambda entry: entry.date_key)
    return {
        "event_id": event.id,
        "window": {"start": start_key, "end": end_key},
        "is_confident": not result.unknown_events,
        "recurrence_summary": get_recurrence_summary(event),
        "occurrences": [_serialize_entry(entry, venues) for entry in entries],
    }


@app.get("/api/v1/events/{event_id}/occurrences/{date_key}")
def api_get_occurrence(event_id: str, date_key: str, db: Session = Depends(get_db)):
    """The event as it looks on one date, with that date's override applied."""
    event = _ensure_event(db, event_id)
    _require_date_key(date_key)
    if date_key not in expand_occurrences_for_event(event, date_key, date_key, 1):
        raise HTTPException(status_code=404, detail="No occurrence on that date")
    override = get_override(db, event.id, date_key)
    display = get_display_date_for_occurrence(date_key, override)
    effective = apply_occurrence_override(event.as_dict(), override)
    return {
        "event_id": event.id,
        "date_key": date_key,
        "display_date": display.display_date,
        "is_rescheduled": display.is_rescheduled,
        "is_cancelled": bool(override and override.status == "cancelled"),
        "override": _serialize_override(override),
        "event": _serialize_event_values(effective, _venue_index(db)),
    }


# -------- Overrides --------


@app.get("/api/v1/events/{event_id}/overrides")
def api_list_overrides(event_id: str, db: Session = Depends(get_db)):
    event = _ensure_event(db, event_id)
    overrides = list_overrides(db, event_ids=[event.id])
    return {"overrides": [_serialize_override(o) for o in overrides]}


@app.put("/api/v1/events/{event_id}/overrides/{date_key}")
def api_put_override(
    event_id: str,
    date_key: str,
    payload: OverridePayload,
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_date_key(date_key)
    try:
        override = upsert_override(db, event, date_key, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"override": _serialize_override(override), "reverted": override is None}


@app.delete("/api/v1/events/{event_id}/overrides/{date_key}", status_code=204)
def api_delete_override(event_id: str, date_key: str, db: Session = Depends(get_db)):
    event = _ensure_event(db, event_id)
    _require_date_key(date_key)
    if not delete_override(db, event.id, date_key):
        raise HTTPException(status_code=404, detail="Override not found")
    return Response(status_code=204)


# -------- RSVPs --------


@app.get("/api/v1/events/{event_id}/rsvps")
def api_list_rsvps(
    event_id: str,
    date_key: str | None = Query(None),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    if date_key is not None:
        _require_date_key(date_key)
    rsvps = list_rsvps(db, event.id, date_key)
    return {
        "rsvps": [_serialize_rsvp(r) for r in rsvps],
        "party_size": sum(
            (r.guest_count or 0) + 1 for r in rsvps if r.attendance_status == "yes"
        ),
    }


@app.post("/api/v1/events/{event_id}/rsvps", status_code=201)
def api_create_rsvp(
    event_id: str, payload: RSVPCreatePayload, db: Session = Depends(get_db)
):
    event = get_event(db, event_id)
    if event is None:
        raise DateKeyError(DateKeyError.EVENT_NOT_FOUND, "Event not found")
    try:
        rsvp = create_rsvp(
            db,
            event=event,
            name=payload.name,
            attendance_status=payload.attendance_status,
            guest_count=payload.guest_count,
            note=payload.note,
            date_key=payload.date_key,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"rsvp": _serialize_rsvp(rsvp)}


# -------- Calendar --------


@app.get("/api/v1/events/{event_id}/event.ics")
def api_get_event_ics(
    event_id: str,
    start: str | None = Query(None),
    end: str | None = Query(None),
    db: Session = Depends(get_db),
):
    """Serve an event's occurrences as a downloadable ICS file."""

    event = _ensure_event(db, event_id)
    start_key, end_key = _window(start, end)
    date_keys = expand_occurrences_for_event(
        event, start_key, end_key, settings.max_occurrences_per_event
    )
    ics_text = generate_ics(
        event,
        date_keys,
        override_map=build_override_map(event.overrides),
        venues=_venue_index(db),
    )
    filename = f"event_{event_id}.ics"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=ics_text, media_type="text/calendar", headers=headers)


# -------- Ops --------


@app.get("/api/v1/ops/overrides.csv")
def api_export_overrides(db: Session = Depends(get_db)):
    text = serialize_override_csv(list_overrides(db))
    headers = {"Content-Disposition": 'attachment; filename="overrides.csv"'}
    return Response(content=text, media_type="text/csv", headers=headers)


@app.post("/api/v1/ops/overrides/import")
def api_import_overrides(payload: CsvImportPayload, db: Session = Depends(get_db)):
    parsed = parse_override_csv(payload.csv_text, max_rows=settings.max_import_rows)
    rows, errors = validate_override_rows(parsed.rows)
    errors = parsed.errors + errors
    if errors:
        raise HTTPException(status_code=400, detail={"errors": errors})
    return apply_override_rows(db, rows, apply=payload.apply)


@app.post("/api/v1/ops/events/import")
def api_import_events(payload: CsvImportPayload, db: Session = Depends(get_db)):
    parsed = parse_event_import_csv(
        payload.csv_text, max_rows=settings.max_import_rows
    )
    if parsed.errors:
        raise HTTPException(status_code=400, detail={"errors": parsed.errors})
    report = import_events(db, parsed.rows, apply=payload.apply)
    return {**report.as_dict(), "applied": payload.apply}


@app.get("/api/v1/ops/venues.csv")
def api_export_venues(db: Session = Depends(get_db)):
    text = serialize_venue_csv(list_venues(db))
    headers = {"Content-Disposition": 'attachment; filename="venues.csv"'}
    return Response(content=text, media_type="text/csv", headers=headers)


@app.post("/api/v1/ops/venues/import")
def api_import_venues(payload: CsvImportPayload, db: Session = Depends(get_db)):
    parsed = parse_venue_csv(payload.csv_text, max_rows=settings.max_import_rows)
    rows, errors, warnings = validate_venue_rows(parsed.rows)
    errors = parsed.errors + errors
    if errors:
        raise HTTPException(status_code=400, detail={"errors": errors})
    return {**apply_venue_rows(db, rows, apply=payload.apply), "warnings": warnings}


@app.get("/api/v1/ops/events.csv")
def api_export_events(db: Session = Depends(get_db)):
    events = list_events(db, include_unpublished=True)
    headers = {"Content-Disposition": 'attachment; filename="events.csv"'}
    return Response(
        content=serialize_event_csv(events), media_type="text/csv", headers=headers
    )


@app.post("/api/v1/ops/events/update")
def api_update_events(payload: CsvImportPayload, db: Session = Depends(get_db)):
    parsed = parse_event_csv(payload.csv_text, max_rows=settings.max_import_rows)
    rows, errors = validate_event_rows(parsed.rows)
    errors = parsed.errors + errors
    if errors:
        raise HTTPException(status_code=400, detail={"errors": errors})
    report = apply_event_rows(db, rows, apply=payload.apply)
    if report["applied"]:
        logger.info("Updated %d events from CSV", len(report["updated"]))
    return report
