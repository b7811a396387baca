from __future__ import annotations

import pytest

from happenings.crud import (
    apply_event_rows,
    apply_override_rows,
    apply_venue_rows,
    create_event,
    create_rsvp,
    delete_override,
    ensure_venue,
    find_venues_by_name,
    get_override,
    import_events,
    list_events,
    list_overrides,
    list_rsvps,
    list_venues,
    resolve_effective_date_key,
    update_custom_dates,
    update_event,
    update_venue,
    upsert_override,
    validate_date_key_for_write,
)
from happenings.datekeys import DateKeyError
from happenings.models import Venue
from happenings.ops import (
    EventCsvRow,
    EventImportRow,
    VenueCsvRow,
    parse_override_csv,
    validate_override_rows,
)


def _weekly(session, title="Trivia Night", **fields):
    values = {"event_date": "2026-01-06", "recurrence_rule": "weekly", **fields}
    event = create_event(session, title=title, **values)
    session.commit()
    return event


def test_ensure_venue_creates_and_reuses(session):
    created = ensure_venue(session, name="The Hall", city="Denver")
    session.commit()
    reused = ensure_venue(session, name="  the hall ")
    assert reused.id == created.id
    assert created.slug == "the-hall"
    with pytest.raises(ValueError):
        ensure_venue(session, name="  ")


def test_venue_lookups(session):
    ensure_venue(session, name="The Hall", city="Denver")
    ensure_venue(session, name="Bluebird", city="Boulder")
    session.commit()
    assert [venue.name for venue in list_venues(session, "boul")] == ["Bluebird"]
    assert [venue.name for venue in list_venues(session)] == ["Bluebird", "The Hall"]
    assert len(find_venues_by_name(session, "THE HALL")) == 1
    assert find_venues_by_name(session, "") == []


def test_create_event_normalizes_schedule(session):
    event = _weekly(session, start_time="19:00", title=" Trivia Night ")
    assert event.title == "Trivia Night"
    assert event.slug == "trivia-night"
    assert event.start_time == "19:00:00"
    assert event.day_of_week is None
    assert event.custom_dates is None


def test_create_event_rejects_bad_input(session):
    with pytest.raises(ValueError, match="Title is required"):
        create_event(session, title=" ")
    with pytest.raises(ValueError, match="Unknown event fields"):
        create_event(session, title="Trivia", colour="red")
    with pytest.raises(ValueError, match="is not a Friday"):
        create_event(
            session,
            title="Fish Fry",
            event_date="2026-01-06",
            day_of_week="friday",
            recurrence_rule="weekly",
        )
    with pytest.raises(ValueError, match="Invalid day_of_week"):
        create_event(session, title="Fish Fry", day_of_week="Caturday")
    with pytest.raises(ValueError, match="at least one valid date"):
        create_event(session, title="Pop-up", recurrence_rule="custom")


def test_ordinal_rule_derives_day_from_anchor(session):
    event = create_event(
        session, title="Crafts", event_date="2026-01-06", recurrence_rule="1st/3rd"
    )
    assert event.day_of_week == "Tuesday"


def test_series_modes(session):
    weekly = create_event(
        session,
        title="Run Club",
        event_date="2026-01-06",
        series_mode="weekly",
        occurrence_count=3,
    )
    assert weekly.recurrence_rule == "weekly"
    assert weekly.day_of_week == "Tuesday"
    assert weekly.max_occurrences == 3

    single = create_event(
        session, title="Gala", event_date="2026-01-09", series_mode="single"
    )
    assert single.recurrence_rule is None
    assert single.max_occurrences is None

    custom = create_event(
        session,
        title="Pop-up",
        series_mode="custom",
        custom_dates=["2026-02-01", "2026-01-10"],
    )
    assert custom.recurrence_rule == "custom"
    assert custom.custom_dates == ["2026-01-10", "2026-02-01"]
    assert custom.event_date == "2026-01-10"

    with pytest.raises(ValueError, match="event_date is required"):
        create_event(session, title="Nope", series_mode="weekly")
    with pytest.raises(ValueError, match="Unknown series mode"):
        create_event(session, title="Nope", event_date="2026-01-06", series_mode="daily")


def test_update_event_resets_stale_day_of_week(session):
    event = _weekly(session, day_of_week="Tuesday")
    update_event(session, event, event_date="2026-01-09", title="Friday Trivia")
    session.commit()
    assert event.event_date == "2026-01-09"
    assert event.day_of_week is None
    assert event.slug == "friday-trivia"
    with pytest.raises(ValueError):
        update_event(session, event, start_time="25:00")


def test_update_custom_dates(session):
    event = _weekly(session)
    assert update_custom_dates(session, event, ["2026-03-01", "2026-02-14"]) == [
        "2026-02-14",
        "2026-03-01",
    ]
    assert event.recurrence_rule == "custom"
    assert event.event_date == "2026-02-14"
    with pytest.raises(ValueError, match="non-empty list"):
        update_custom_dates(session, event, [])
    with pytest.raises(ValueError, match="no valid dates"):
        update_custom_dates(session, event, ["someday"])


def test_list_events_hides_unpublished(session):
    _weekly(session, title="Visible")
    _weekly(session, title="Draft", is_published=False)
    assert [event.title for event in list_events(session)] == ["Visible"]
    assert len(list_events(session, include_unpublished=True)) == 2


def test_upsert_override_create_update_and_revert(session):
    event = _weekly(session)
    created = upsert_override(
        session, event, "2026-01-13", status="Cancelled", today_key="2026-01-01"
    )
    session.commit()
    assert created.status == "cancelled"

    updated = upsert_override(
        session,
        event,
        "2026-01-13",
        override_start_time="18:30",
        override_patch={"title": "Holiday Trivia"},
        today_key="2026-01-01",
    )
    session.commit()
    assert updated.id == created.id
    assert updated.status == "normal"
    assert updated.override_start_time == "18:30:00"
    assert updated.override_patch == {"title": "Holiday Trivia"}

    assert upsert_override(session, event, "2026-01-13", today_key="2026-01-01") is None
    session.commit()
    assert get_override(session, event.id, "2026-01-13") is None


def test_upsert_override_validates_patch(session):
    event = _weekly(session)
    with pytest.raises(ValueError, match="Unsupported override fields: slug"):
        upsert_override(
            session, event, "2026-01-13", override_patch={"slug": "x"}, today_key="2026-01-01"
        )
    with pytest.raises(ValueError, match="into the past"):
        upsert_override(
            session,
            event,
            "2026-01-13",
            override_patch={"event_date": "2025-12-30"},
            today_key="2026-01-01",
        )
    with pytest.raises(ValueError, match="Invalid status"):
        upsert_override(session, event, "2026-01-13", status="moved")
    with pytest.raises(ValueError, match="Invalid date_key"):
        upsert_override(session, event, "13/01/2026", status="cancelled")

    # Rescheduling onto the same day is a no-op and leaves nothing to store.
    assert (
        upsert_override(
            session,
            event,
            "2026-01-13",
            override_patch={"event_date": "2026-01-13"},
            today_key="2026-01-01",
        )
        is None
    )


def test_list_and_delete_overrides(session):
    event = _weekly(session)
    for date_key in ("2026-01-20", "2026-01-13"):
        upsert_override(session, event, date_key, status="cancelled", today_key="2026-01-01")
    session.commit()
    assert [o.date_key for o in list_overrides(session)] == ["2026-01-13", "2026-01-20"]
    assert [
        o.date_key for o in list_overrides(session, start_key="2026-01-14")
    ] == ["2026-01-20"]
    assert delete_override(session, event.id, "2026-01-13")
    assert not delete_override(session, event.id, "2026-01-13")


def test_resolve_effective_date_key(session):
    event = _weekly(session)
    assert (
        resolve_effective_date_key(session, event.id, None, today_key="2026-01-07")
        == "2026-01-13"
    )
    assert resolve_effective_date_key(session, event.id, " 2026-01-20 ") == "2026-01-20"
    with pytest.raises(DateKeyError) as invalid:
        resolve_effective_date_key(session, event.id, "next tuesday")
    assert invalid.value.code == DateKeyError.INVALID_DATE_KEY
    with pytest.raises(DateKeyError) as missing:
        resolve_effective_date_key(session, "no-such-event")
    assert missing.value.status_code == 404


def test_writes_to_cancelled_occurrence_are_rejected(session):
    event = _weekly(session)
    upsert_override(session, event, "2026-01-13", status="cancelled", today_key="2026-01-01")
    session.commit()
    with pytest.raises(DateKeyError) as excinfo:
        validate_date_key_for_write(session, event.id, "2026-01-13")
    assert excinfo.value.code == DateKeyError.OCCURRENCE_CANCELLED
    assert validate_date_key_for_write(session, event.id, "2026-01-20") == "2026-01-20"


def test_create_rsvp_targets_next_occurrence(session):
    event = _weekly(session)
    rsvp = create_rsvp(
        session, event=event, name=" Sam ", guest_count=2, today_key="2026-01-07"
    )
    session.commit()
    assert rsvp.date_key == "2026-01-13"
    assert rsvp.name == "Sam"
    assert rsvp.attendance_status == "yes"

    create_rsvp(session, event=event, name="Alex", attendance_status="Maybe", date_key="2026-01-20")
    session.commit()
    assert [r.name for r in list_rsvps(session, event.id, "2026-01-20")] == ["Alex"]
    assert len(list_rsvps(session, event.id)) == 2


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"name": " "}, "Name is required"),
        ({"name": "Sam", "attendance_status": "perhaps"}, "Invalid attendance status"),
        ({"name": "Sam", "guest_count": -1}, "guest_count"),
    ],
)
def test_create_rsvp_validation(session, kwargs, message):
    event = _weekly(session)
    with pytest.raises(ValueError, match=message):
        create_rsvp(session, event=event, date_key="2026-01-13", **kwargs)


def _override_rows(text):
    parsed = parse_override_csv(text)
    rows, errors = validate_override_rows(parsed.rows)
    assert not parsed.errors and not errors
    return rows


def test_apply_override_rows_preview_then_apply(session):
    event = _weekly(session)
    upsert_override(session, event, "2026-01-13", status="cancelled", today_key="2026-01-01")
    upsert_override(
        session, event, "2026-01-20", override_notes="Back room", today_key="2026-01-01"
    )
    session.commit()
    header = "event_id,date_key,status,override_start_time,override_notes,override_cover_image_url\n"
    rows = _override_rows(
        header
        + f"{event.id},2026-01-13,cancelled,,,\n"
        + f"{event.id},2026-01-20,normal,18:00,Back room,\n"
        + f"{event.id},2026-01-27,cancelled,,,\n"
        + "ghost,2026-01-27,cancelled,,,\n"
    )

    preview = apply_override_rows(session, rows)
    assert preview["inserts"] == 1
    assert preview["updates"] == 1
    assert preview["unchanged"] == 1
    assert preview["errors"] == ["Row 5: event ghost not found"]
    assert not preview["applied"]
    assert get_override(session, event.id, "2026-01-27") is None

    applied = apply_override_rows(session, rows, apply=True)
    session.commit()
    assert applied["applied"]
    assert get_override(session, event.id, "2026-01-27").status == "cancelled"
    assert get_override(session, event.id, "2026-01-20").override_start_time == "18:00:00"


def test_apply_override_rows_keeps_stored_patch(session):
    event = _weekly(session)
    venue = ensure_venue(session, name="The Annex")
    patch = {"venue_id": venue.id, "event_date": "2026-01-22"}
    upsert_override(
        session, event, "2026-01-20", override_patch=patch, today_key="2026-01-01"
    )
    session.commit()
    header = "event_id,date_key,status,override_start_time,override_notes,override_cover_image_url\n"
    rows = _override_rows(header + f"{event.id},2026-01-20,normal,,Use the side door,\n")

    applied = apply_override_rows(session, rows, apply=True)
    session.commit()

    assert applied["updates"] == 1
    stored = get_override(session, event.id, "2026-01-20")
    assert stored.override_notes == "Use the side door"
    assert stored.override_patch == patch


def test_import_events_preview_skips_and_warnings(session):
    _weekly(session, title="Trivia Night")
    session.add(Venue(name="The Hall", slug="the-hall"))
    session.add(Venue(name="the hall", slug="the-hall-annex"))
    session.commit()
    rows = [
        EventImportRow(row_number=2, title="Trivia Night", event_date="2026-01-06"),
        EventImportRow(row_number=3, title="Book Club", day_of_week="Monday"),
        EventImportRow(row_number=4, title="Book  Club!", day_of_week="Monday"),
        EventImportRow(
            row_number=5, title="Open Mic", event_date="2026-01-09", venue_name="The Hall"
        ),
        EventImportRow(row_number=6, title=None, event_date="2026-01-09"),
    ]
    report = import_events(session, rows)
    assert report.would_create == [3, 5]
    assert report.created == []
    assert report.skipped[0].startswith("Row 2: an event with slug 'trivia-night'")
    assert report.skipped[1].startswith("Row 4: duplicates row 3")
    assert report.warnings == ["Row 5: 2 venues named 'The Hall'; left unset"]
    assert report.errors == ["Row 6: title is required"]
    assert len(list_events(session)) == 1


def test_import_events_apply_creates_events(session):
    venue = ensure_venue(session, name="Bluebird")
    session.commit()
    rows = [
        EventImportRow(
            row_number=2,
            title="Open Mic",
            event_date="2026-01-09",
            start_time="19:00",
            venue_name="bluebird",
            recurrence_rule="weekly",
            categories=("music", "comedy"),
        ),
        EventImportRow(
            row_number=3,
            title="Mismatch",
            event_date="2026-01-09",
            day_of_week="Monday",
            recurrence_rule="weekly",
        ),
    ]
    report = import_events(session, rows, apply=True)
    session.commit()
    assert len(report.created) == 1
    assert report.errors == ["Row 3: event_date 2026-01-09 is not a Monday"]
    (event,) = list_events(session)
    assert event.venue_id == venue.id
    assert event.start_time == "19:00:00"
    assert event.categories == ["music", "comedy"]


def test_update_venue_keeps_slug(session):
    venue = ensure_venue(session, name="Blue Room", city="Dayton")
    update_venue(session, venue, name="  The Blue Room ", zip="45402")
    assert venue.name == "The Blue Room"
    assert venue.slug == "blue-room"
    assert venue.zip == "45402"
    with pytest.raises(ValueError, match="name is required"):
        update_venue(session, venue, name=" ")
    with pytest.raises(ValueError, match="Unknown venue fields: slug"):
        update_venue(session, venue, slug="other")


def test_apply_venue_rows_updates_but_never_creates(session):
    venue = ensure_venue(session, name="Blue Room", city="Dayton", state="OH")
    session.commit()
    rows = [
        VenueCsvRow(
            row_number=2,
            id=venue.id,
            name="Blue Room",
            city="Kettering",
            state="OH",
            phone="555-0100",
        ),
        VenueCsvRow(
            row_number=3, id="5c3e1a2b-0000-4000-8000-000000000000", name="Ghost Hall"
        ),
    ]

    preview = apply_venue_rows(session, rows)
    assert preview["updates"] == 1
    assert preview["not_found"] == 1
    assert preview["errors"] == [
        "Row 3: 5c3e1a2b-0000-4000-8000-000000000000 not found"
    ]
    assert [item["field"] for item in preview["changes"][0]["fields"]] == [
        "city",
        "phone",
    ]
    assert session.get(Venue, venue.id).city == "Dayton"

    applied = apply_venue_rows(session, rows, apply=True)
    session.commit()
    assert applied["applied"]
    assert session.get(Venue, venue.id).city == "Kettering"
    assert len(list_venues(session)) == 1


def _event_row(event, row_number=2, **changes):
    values = {
        "id": event.id,
        "title": event.title,
        "event_type": event.event_type,
        "event_date": event.event_date,
        "day_of_week": event.day_of_week,
        "recurrence_rule": event.recurrence_rule,
        "start_time": event.start_time,
        "end_time": event.end_time,
        "venue_id": event.venue_id,
        "is_published": event.is_published,
        "host_notes": event.host_notes,
        **changes,
    }
    return EventCsvRow(row_number=row_number, **values)


def test_apply_event_rows_updates_and_reports_bad_rows(session):
    trivia = _weekly(session)
    karaoke = _weekly(session, title="Karaoke")
    venue = ensure_venue(session, name="Blue Room")
    session.commit()
    rows = [
        _event_row(trivia, venue_id=venue.id, host_notes="Bring pens"),
        _event_row(karaoke, row_number=3, venue_id="missing-venue"),
    ]

    preview = apply_event_rows(session, rows)
    assert preview["updates"] == 1
    assert preview["errors"] == ["Row 3: venue missing-venue not found"]
    assert trivia.venue_id is None

    applied = apply_event_rows(session, rows, apply=True)
    session.commit()
    assert applied["updated"] == [trivia.id]
    assert trivia.venue_id == venue.id
    assert trivia.host_notes == "Bring pens"
    assert karaoke.venue_id is None


def test_apply_event_rows_leaves_failed_event_untouched(session):
    event = _weekly(session)
    session.commit()
    rows = [_event_row(event, title="Renamed Trivia", recurrence_rule="custom")]

    report = apply_event_rows(session, rows, apply=True)
    session.commit()

    assert report["updated"] == []
    assert report["errors"] == ["Row 2: Custom schedules need at least one valid date"]
    assert event.title == "Trivia Night"
    assert event.slug == "trivia-night"
    assert event.recurrence_rule == "weekly"
