"""CSV import/export helpers for bulk admin work.

Supported formats:

* occurrence overrides, one row per ``(event_id, date_key)``; exported from
  the database, edited in a spreadsheet and re-imported as a diff;
* venues and events keyed by id, exported and re-imported as field updates;
* new events, imported in bulk with venue names resolved by the caller.

Parsing never touches the database. Rows come back as dataclasses plus a list
of human-readable errors so a preview can show everything wrong at once.
"""

from __future__ import annotations

import csv
import io
import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any

from .datekeys import is_valid_date_key
from .occurrences import OCCURRENCE_STATUSES, build_override_key
from .recurrence import day_index_from_name
from .utils import get_field, normalize_time, slugify

MAX_IMPORT_ROWS = 500

OVERRIDE_CSV_HEADERS = (
    "event_id",
    "date_key",
    "status",
    "override_start_time",
    "override_notes",
    "override_cover_image_url",
)
VALID_OVERRIDE_STATUSES = frozenset(OCCURRENCE_STATUSES)

EVENT_IMPORT_HEADERS = (
    "title",
    "event_type",
    "event_date",
    "start_time",
    "end_time",
    "venue_id",
    "venue_name",
    "day_of_week",
    "recurrence_rule",
    "description",
    "external_url",
    "categories",
    "is_free",
    "cost_label",
    "age_policy",
    "max_occurrences",
)

_url_pattern = re.compile(r"^https?://\S+$", re.IGNORECASE)
_category_split = re.compile(r"[;,]")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _read_rows(text: str) -> list[list[str]]:
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    return [row for row in reader if any(cell.strip() for cell in row)]


def _parse_fixed_csv(
    text: str | None, headers: tuple[str, ...], max_rows: int
) -> tuple[list[tuple[int, dict[str, str | None]]], list[str]]:
    """Read a CSV whose header must be exactly ``headers``.

    Returns ``(row_number, values)`` pairs plus errors. Header and row-count
    problems stop parsing; a ragged row is reported and skipped.
    """
    if not text or not text.strip():
        return [], ["CSV is empty"]
    rows = _read_rows(text)
    if not rows:
        return [], ["CSV is empty"]
    header = [cell.strip().lower() for cell in rows[0]]
    if len(header) != len(headers):
        return [], [
            f"Invalid header count: expected {len(headers)}, got {len(header)}"
        ]
    if tuple(header) != headers:
        return [], ["Invalid headers: expected " + ",".join(headers)]

    body = rows[1:]
    if len(body) > max_rows:
        return [], [f"Too many rows: {len(body)} (max {max_rows})"]

    records: list[tuple[int, dict[str, str | None]]] = []
    errors: list[str] = []
    for row_number, cells in enumerate(body, start=2):
        if len(cells) != len(headers):
            errors.append(
                f"Row {row_number}: expected {len(headers)} columns, got {len(cells)}"
            )
            continue
        records.append(
            (row_number, {name: _clean(cell) for name, cell in zip(headers, cells)})
        )
    return records, errors


def _write_csv(headers: tuple[str, ...], records: Iterable[Any]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for record in records:
        values = (get_field(record, column) for column in headers)
        writer.writerow(["" if value is None else value for value in values])
    return buffer.getvalue()


def parse_boolean(value: str | None) -> bool | None:
    """``true/1/yes`` and ``false/0/no`` (any case); blank is ``None``."""
    cleaned = (value or "").strip().lower()
    if not cleaned:
        return None
    if cleaned in {"true", "1", "yes"}:
        return True
    if cleaned in {"false", "0", "no"}:
        return False
    raise ValueError(f"Invalid boolean: {value!r}")


# -------- Override CSV --------


@dataclass(frozen=True)
class OverrideCsvRow:
    row_number: int
    event_id: str | None
    date_key: str | None
    status: str
    override_start_time: str | None = None
    override_notes: str | None = None
    override_cover_image_url: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return build_override_key(self.event_id, self.date_key)


@dataclass
class OverrideCsvResult:
    rows: list[OverrideCsvRow] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def parse_override_csv(
    text: str | None, *, max_rows: int = MAX_IMPORT_ROWS
) -> OverrideCsvResult:
    """Parse override CSV text; structural problems are reported, not raised."""
    records, errors = _parse_fixed_csv(text, OVERRIDE_CSV_HEADERS, max_rows)
    result = OverrideCsvResult(errors=errors)
    for row_number, values in records:
        result.rows.append(
            OverrideCsvRow(
                row_number=row_number,
                event_id=values["event_id"],
                date_key=values["date_key"],
                status=(values["status"] or "normal").lower(),
                override_start_time=values["override_start_time"],
                override_notes=values["override_notes"],
                override_cover_image_url=values["override_cover_image_url"],
            )
        )
    return result


def validate_override_row(row: OverrideCsvRow) -> list[str]:
    prefix = f"Row {row.row_number}"
    errors: list[str] = []
    if not row.event_id:
        errors.append(f"{prefix}: event_id is required")
    if not is_valid_date_key(row.date_key):
        errors.append(f"{prefix}: invalid date_key {row.date_key!r}")
    if row.status not in VALID_OVERRIDE_STATUSES:
        errors.append(f"{prefix}: invalid status {row.status!r}")
    if row.override_start_time:
        try:
            normalize_time(row.override_start_time)
        except ValueError:
            errors.append(
                f"{prefix}: invalid override_start_time {row.override_start_time!r}"
            )
    if row.override_cover_image_url and not _url_pattern.match(
        row.override_cover_image_url
    ):
        errors.append(f"{prefix}: override_cover_image_url must be an http(s) URL")
    return errors


def validate_override_rows(
    rows: Iterable[OverrideCsvRow],
) -> tuple[list[OverrideCsvRow], list[str]]:
    """Return normalized valid rows and errors; duplicate keys are errors."""
    valid: list[OverrideCsvRow] = []
    errors: list[str] = []
    seen: dict[tuple[str, str], int] = {}
    for row in rows:
        row_errors = validate_override_row(row)
        if not row_errors and row.key in seen:
            row_errors.append(
                f"Row {row.row_number}: duplicate of row {seen[row.key]} "
                f"({row.event_id} on {row.date_key})"
            )
        if row_errors:
            errors.extend(row_errors)
            continue
        seen[row.key] = row.row_number
        valid.append(
            replace(
                row, override_start_time=normalize_time(row.override_start_time)
            )
        )
    return valid, errors


def serialize_override_csv(overrides: Iterable[Any]) -> str:
    """Write overrides (ORM rows, mappings or CSV rows) as CSV text."""
    return _write_csv(OVERRIDE_CSV_HEADERS, overrides)


_DIFF_FIELDS = (
    "status",
    "override_start_time",
    "override_notes",
    "override_cover_image_url",
)


@dataclass
class OverrideDiff:
    inserts: list[OverrideCsvRow] = field(default_factory=list)
    updates: list[OverrideCsvRow] = field(default_factory=list)
    unchanged: list[OverrideCsvRow] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "inserts": len(self.inserts),
            "updates": len(self.updates),
            "unchanged": len(self.unchanged),
        }


def compute_override_diff(
    rows: Iterable[OverrideCsvRow], existing: Iterable[Any]
) -> OverrideDiff:
    """Classify rows against stored overrides by ``(event_id, date_key)``."""
    current = {
        build_override_key(get_field(record, "event_id"), get_field(record, "date_key")): record
        for record in existing
    }
    diff = OverrideDiff()
    for row in rows:
        record = current.get(row.key)
        if record is None:
            diff.inserts.append(row)
        elif any(
            (get_field(record, name) or None) != (getattr(row, name) or None)
            for name in _DIFF_FIELDS
        ):
            diff.updates.append(row)
        else:
            diff.unchanged.append(row)
    return diff


# -------- Event import CSV --------


@dataclass(frozen=True)
class EventImportRow:
    row_number: int
    title: str | None
    event_type: str | None = None
    event_date: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    venue_id: str | None = None
    venue_name: str | None = None
    day_of_week: str | None = None
    recurrence_rule: str | None = None
    description: str | None = None
    external_url: str | None = None
    categories: tuple[str, ...] = ()
    is_free: bool | None = None
    cost_label: str | None = None
    age_policy: str | None = None
    max_occurrences: int | None = None

    @property
    def slug(self) -> str:
        return slugify(self.title or "")


@dataclass
class EventImportResult:
    rows: list[EventImportRow] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def _parse_categories(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    parts = (part.strip() for part in _category_split.split(value))
    return tuple(dict.fromkeys(part for part in parts if part))


def parse_event_import_csv(
    text: str | None, *, max_rows: int = MAX_IMPORT_ROWS
) -> EventImportResult:
    """Parse event rows; columns may come in any order but must be known."""
    result = EventImportResult()
    if not text or not text.strip():
        result.errors.append("CSV is empty")
        return result

    rows = _read_rows(text)
    if not rows:
        result.errors.append("CSV is empty")
        return result
    header = [cell.strip().lower() for cell in rows[0]]
    unknown = [name for name in header if name not in EVENT_IMPORT_HEADERS]
    if unknown:
        result.errors.append("Unknown columns: " + ", ".join(unknown))
        return result
    if "title" not in header:
        result.errors.append("Missing required column: title")
        return result

    body = rows[1:]
    if len(body) > max_rows:
        result.errors.append(f"Too many rows: {len(body)} (max {max_rows})")
        return result

    for row_number, cells in enumerate(body, start=2):
        if len(cells) != len(header):
            result.errors.append(
                f"Row {row_number}: expected {len(header)} columns, got {len(cells)}"
            )
            continue
        values = {name: _clean(cell) for name, cell in zip(header, cells)}
        try:
            is_free = parse_boolean(values.get("is_free"))
        except ValueError as exc:
            result.errors.append(f"Row {row_number}: {exc}")
            continue
        raw_max = values.get("max_occurrences")
        if raw_max is not None and not raw_max.isdigit():
            result.errors.append(
                f"Row {row_number}: max_occurrences must be a whole number"
            )
            continue
        result.rows.append(
            EventImportRow(
                row_number=row_number,
                title=values.get("title"),
                event_type=values.get("event_type"),
                event_date=values.get("event_date"),
                start_time=values.get("start_time"),
                end_time=values.get("end_time"),
                venue_id=values.get("venue_id"),
                venue_name=values.get("venue_name"),
                day_of_week=values.get("day_of_week"),
                recurrence_rule=values.get("recurrence_rule"),
                description=values.get("description"),
                external_url=values.get("external_url"),
                categories=_parse_categories(values.get("categories")),
                is_free=is_free,
                cost_label=values.get("cost_label"),
                age_policy=values.get("age_policy"),
                max_occurrences=(int(raw_max) or None) if raw_max else None,
            )
        )
    return result


def validate_event_import_row(row: EventImportRow) -> list[str]:
    prefix = f"Row {row.row_number}"
    errors: list[str] = []
    if not row.title:
        errors.append(f"{prefix}: title is required")
    elif not row.slug:
        errors.append(f"{prefix}: title must contain letters or numbers")
    if row.event_date and not is_valid_date_key(row.event_date):
        errors.append(f"{prefix}: invalid event_date {row.event_date!r}")
    for name in ("start_time", "end_time"):
        value = getattr(row, name)
        if value:
            try:
                normalize_time(value)
            except ValueError:
                errors.append(f"{prefix}: invalid {name} {value!r}")
    if row.day_of_week and day_index_from_name(row.day_of_week) is None:
        errors.append(f"{prefix}: invalid day_of_week {row.day_of_week!r}")
    if not (row.event_date or row.day_of_week or row.recurrence_rule):
        errors.append(
            f"{prefix}: one of event_date, day_of_week or recurrence_rule is required"
        )
    if row.external_url and not _url_pattern.match(row.external_url):
        errors.append(f"{prefix}: external_url must be an http(s) URL")
    return errors


# -------- Record diffs --------


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip() or None
    return value


@dataclass(frozen=True)
class FieldChange:
    field: str
    old: Any
    new: Any


@dataclass
class RecordDiff:
    """Per-id comparison of CSV rows against stored records.

    Blank cells, ``None`` and whitespace compare equal, so an export that is
    re-imported untouched reports no updates.
    """

    updates: list[tuple[Any, list[FieldChange]]] = field(default_factory=list)
    not_found: list[Any] = field(default_factory=list)
    unchanged: list[Any] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "updates": len(self.updates),
            "not_found": len(self.not_found),
            "unchanged": len(self.unchanged),
        }

    def update_payloads(self) -> list[tuple[str, dict[str, Any]]]:
        return [
            (row.id, {change.field: change.new for change in changes})
            for row, changes in self.updates
        ]


def _compute_record_diff(
    rows: Iterable[Any], existing: Iterable[Any], fields: tuple[str, ...]
) -> RecordDiff:
    current = {get_field(record, "id"): record for record in existing}
    diff = RecordDiff()
    for row in rows:
        record = current.get(row.id)
        if record is None:
            diff.not_found.append(row)
            continue
        changes = [
            FieldChange(name, get_field(record, name), getattr(row, name))
            for name in fields
            if _comparable(get_field(record, name)) != _comparable(getattr(row, name))
        ]
        if changes:
            diff.updates.append((row, changes))
        else:
            diff.unchanged.append(row)
    return diff


def _is_uuid(value: str | None) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _duplicate_id_error(row: Any, seen: dict[str, int]) -> str | None:
    if row.id in seen:
        return f"Row {row.row_number}: duplicate id {row.id} (first on row {seen[row.id]})"
    seen[row.id] = row.row_number
    return None


# -------- Venue CSV --------

VENUE_CSV_HEADERS = (
    "id",
    "name",
    "address",
    "city",
    "state",
    "zip",
    "website_url",
    "phone",
    "google_maps_url",
    "notes",
)


@dataclass(frozen=True)
class VenueCsvRow:
    row_number: int
    id: str | None
    name: str | None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    website_url: str | None = None
    phone: str | None = None
    google_maps_url: str | None = None
    notes: str | None = None


@dataclass
class VenueCsvResult:
    rows: list[VenueCsvRow] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def parse_venue_csv(
    text: str | None, *, max_rows: int = MAX_IMPORT_ROWS
) -> VenueCsvResult:
    records, errors = _parse_fixed_csv(text, VENUE_CSV_HEADERS, max_rows)
    result = VenueCsvResult(errors=errors)
    for row_number, values in records:
        result.rows.append(VenueCsvRow(row_number=row_number, **values))
    return result


def validate_venue_rows(
    rows: Iterable[VenueCsvRow],
) -> tuple[list[VenueCsvRow], list[str], list[str]]:
    """Return valid rows, errors and warnings; a missing city or state only warns."""
    valid: list[VenueCsvRow] = []
    errors: list[str] = []
    warnings: list[str] = []
    seen: dict[str, int] = {}
    for row in rows:
        prefix = f"Row {row.row_number}"
        row_errors: list[str] = []
        if not row.id:
            row_errors.append(f"{prefix}: id is required")
        elif not _is_uuid(row.id):
            row_errors.append(f"{prefix}: invalid id {row.id!r}")
        if not row.name:
            row_errors.append(f"{prefix}: name is required")
        for name in ("website_url", "google_maps_url"):
            value = getattr(row, name)
            if value and not _url_pattern.match(value):
                row_errors.append(f"{prefix}: {name} must be an http(s) URL")
        if not row_errors:
            duplicate = _duplicate_id_error(row, seen)
            if duplicate:
                row_errors.append(duplicate)
        if row_errors:
            errors.extend(row_errors)
            continue
        if not row.city:
            warnings.append(f"{prefix}: city is empty")
        if not row.state:
            warnings.append(f"{prefix}: state is empty")
        valid.append(row)
    return valid, errors, warnings


def serialize_venue_csv(venues: Iterable[Any]) -> str:
    return _write_csv(VENUE_CSV_HEADERS, venues)


def compute_venue_diff(
    rows: Iterable[VenueCsvRow], existing: Iterable[Any]
) -> RecordDiff:
    return _compute_record_diff(rows, existing, VENUE_CSV_HEADERS[1:])


# -------- Event update CSV --------

EVENT_CSV_HEADERS = (
    "id",
    "title",
    "event_type",
    "event_date",
    "day_of_week",
    "recurrence_rule",
    "start_time",
    "end_time",
    "venue_id",
    "is_published",
    "host_notes",
)


@dataclass(frozen=True)
class EventCsvRow:
    row_number: int
    id: str | None
    title: str | None
    event_type: str | None = None
    event_date: str | None = None
    day_of_week: str | None = None
    recurrence_rule: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    venue_id: str | None = None
    is_published: bool | None = None
    host_notes: str | None = None


@dataclass
class EventCsvResult:
    rows: list[EventCsvRow] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def parse_event_csv(
    text: str | None, *, max_rows: int = MAX_IMPORT_ROWS
) -> EventCsvResult:
    """Parse the fixed-column event export back into rows for a bulk update."""
    records, errors = _parse_fixed_csv(text, EVENT_CSV_HEADERS, max_rows)
    result = EventCsvResult(errors=errors)
    for row_number, values in records:
        try:
            values["is_published"] = parse_boolean(values["is_published"])
        except ValueError as exc:
            result.errors.append(f"Row {row_number}: {exc}")
            continue
        result.rows.append(EventCsvRow(row_number=row_number, **values))
    return result


def validate_event_rows(
    rows: Iterable[EventCsvRow],
) -> tuple[list[EventCsvRow], list[str]]:
    """Return rows with times normalized, plus errors."""
    valid: list[EventCsvRow] = []
    errors: list[str] = []
    seen: dict[str, int] = {}
    for row in rows:
        prefix = f"Row {row.row_number}"
        row_errors: list[str] = []
        if not row.id:
            row_errors.append(f"{prefix}: id is required")
        if not row.title:
            row_errors.append(f"{prefix}: title is required")
        if row.is_published is None:
            row_errors.append(f"{prefix}: is_published must be true or false")
        if row.event_date and not is_valid_date_key(row.event_date):
            row_errors.append(f"{prefix}: invalid event_date {row.event_date!r}")
        if row.day_of_week and day_index_from_name(row.day_of_week) is None:
            row_errors.append(f"{prefix}: invalid day_of_week {row.day_of_week!r}")
        for name in ("start_time", "end_time"):
            value = getattr(row, name)
            if value:
                try:
                    normalize_time(value)
                except ValueError:
                    row_errors.append(f"{prefix}: invalid {name} {value!r}")
        if not row_errors and row.id:
            duplicate = _duplicate_id_error(row, seen)
            if duplicate:
                row_errors.append(duplicate)
        if row_errors:
            errors.extend(row_errors)
            continue
        valid.append(
            replace(
                row,
                start_time=normalize_time(row.start_time),
                end_time=normalize_time(row.end_time),
            )
        )
    return valid, errors


def serialize_event_csv(events: Iterable[Any]) -> str:
    return _write_csv(EVENT_CSV_HEADERS, events)


def compute_event_diff(
    rows: Iterable[EventCsvRow], existing: Iterable[Any]
) -> RecordDiff:
    return _compute_record_diff(rows, existing, EVENT_CSV_HEADERS[1:])
