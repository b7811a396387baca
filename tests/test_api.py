from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from happenings import api

OVERRIDE_HEADER = (
    "event_id,date_key,status,override_start_time,override_notes,override_cover_image_url\n"
)
JANUARY = {"start": "2026-01-01", "end": "2026-01-31"}


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _create_event(client: TestClient, **payload) -> dict:
    body = {
        "title": "Trivia Night",
        "event_date": "2026-01-06",
        "recurrence_rule": "weekly",
        "start_time": "19:00",
        **payload,
    }
    response = client.post("/api/v1/events", json=body)
    assert response.status_code == 201, response.text
    return response.json()["event"]


def _cancel(client: TestClient, event_id: str, date_key: str) -> None:
    response = client.put(
        f"/api/v1/events/{event_id}/overrides/{date_key}", json={"status": "cancelled"}
    )
    assert response.status_code == 200, response.text


def test_create_and_search_venues(client):
    created = client.post("/api/v1/venues", json={"name": "The Hall", "city": "Denver"})
    assert created.status_code == 201
    venue = created.json()["venue"]
    assert venue["slug"] == "the-hall"

    again = client.post("/api/v1/venues", json={"name": "the hall"})
    assert again.json()["venue"]["id"] == venue["id"]

    blank = client.post("/api/v1/venues", json={"name": "  "})
    assert blank.status_code == 400
    assert blank.json() == {"detail": "Venue name is required"}

    found = client.get("/api/v1/venues", params={"q": "denv"}).json()["venues"]
    assert [v["name"] for v in found] == ["The Hall"]
    assert client.get("/api/v1/venues", params={"q": "boulder"}).json() == {"venues": []}


def test_create_event_serializes_schedule(client):
    event = _create_event(client)
    assert event["slug"] == "trivia-night"
    assert event["start_time"] == "19:00:00"
    assert event["time_label"] == "7 PM"
    assert event["recurrence_summary"] == "Every Tuesday"
    assert event["next_occurrence"]["is_confident"] is True
    assert event["links"]["ics"] == f"/api/v1/events/{event['id']}/event.ics"

    fetched = client.get(f"/api/v1/events/{event['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["event"]["title"] == "Trivia Night"


def test_create_event_errors(client):
    missing_title = client.post("/api/v1/events", json={"event_date": "2026-01-06"})
    assert missing_title.status_code == 422

    mismatch = client.post(
        "/api/v1/events",
        json={
            "title": "Fish Fry",
            "event_date": "2026-01-06",
            "day_of_week": "Friday",
            "recurrence_rule": "weekly",
        },
    )
    assert mismatch.status_code == 400
    assert "is not a Friday" in mismatch.json()["detail"]

    no_venue = client.post(
        "/api/v1/events", json={"title": "Gala", "event_date": "2026-01-09", "venue_id": "nope"}
    )
    assert no_venue.status_code == 400
    assert no_venue.json() == {"detail": "Venue not found"}


def test_update_and_delete_event(client):
    event = _create_event(client)
    updated = client.patch(
        f"/api/v1/events/{event['id']}",
        json={"start_time": "20:15", "title": "Pub Quiz"},
    )
    assert updated.status_code == 200
    body = updated.json()["event"]
    assert body["time_label"] == "8:15 PM"
    assert body["slug"] == "pub-quiz"

    bad = client.patch(
        f"/api/v1/events/{event['id']}",
        json={"event_date": "2026-01-09", "day_of_week": "Tuesday"},
    )
    assert bad.status_code == 400

    deleted = client.delete(f"/api/v1/events/{event['id']}")
    assert deleted.status_code == 204
    missing = client.get(f"/api/v1/events/{event['id']}")
    assert missing.status_code == 404
    assert missing.json() == {"detail": "Event not found"}


def test_custom_dates_endpoint(client):
    event = _create_event(client)
    response = client.put(
        f"/api/v1/events/{event['id']}/custom-dates",
        json={"dates": ["2026-02-14", "2026-01-10", "2026-01-10"]},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["custom_dates"] == ["2026-01-10", "2026-02-14"]
    assert body["event"]["recurrence_summary"] == "Custom Schedule"

    empty = client.put(f"/api/v1/events/{event['id']}/custom-dates", json={"dates": []})
    assert empty.status_code == 400


def test_timeline_groups_cancelled_and_unknown(client):
    trivia = _create_event(client)
    _create_event(
        client,
        title="Farmers Market",
        event_date=None,
        recurrence_rule="seasonal",
        day_of_week="Saturday",
    )
    _cancel(client, trivia["id"], "2026-01-13")

    response = client.get("/api/v1/happenings", params=JANUARY)
    assert response.status_code == 200
    body = response.json()
    assert body["view"] == "timeline"
    assert body["window"] == JANUARY
    assert [group["date_key"] for group in body["groups"]] == [
        "2026-01-06",
        "2026-01-20",
        "2026-01-27",
    ]
    first = body["groups"][0]
    assert first["display"] == "Tuesday, January 6, 2026"
    assert first["occurrences"][0]["event"]["title"] == "Trivia Night"
    assert first["occurrences"][0]["time_label"] == "7 PM"
    assert [entry["date_key"] for entry in body["cancelled"]] == ["2026-01-13"]
    assert [event["title"] for event in body["unknown"]] == ["Farmers Market"]
    assert body["unknown"][0]["recurrence_summary"] == "Seasonal, check venue"
    assert body["metrics"]["cancelled_count"] == 1
    assert body["metrics"]["unknown_count"] == 1


def test_timeline_applies_override_fields(client):
    trivia = _create_event(client)
    client.put(
        f"/api/v1/events/{trivia['id']}/overrides/2026-01-20",
        json={"override_start_time": "18:00", "override_patch": {"title": "Holiday Trivia"}},
    )
    body = client.get("/api/v1/happenings", params=JANUARY).json()
    by_date = {group["date_key"]: group["occurrences"][0] for group in body["groups"]}
    assert by_date["2026-01-20"]["event"]["title"] == "Holiday Trivia"
    assert by_date["2026-01-20"]["start_time"] == "18:00:00"
    assert by_date["2026-01-27"]["event"]["title"] == "Trivia Night"


def test_series_view(client):
    trivia = _create_event(client)
    _cancel(client, trivia["id"], "2026-01-06")
    body = client.get(
        "/api/v1/happenings", params={**JANUARY, "view": "series"}
    ).json()
    assert body["view"] == "series"
    (row,) = body["series"]
    assert row["next_occurrence"]["date"] == "2026-01-13"
    assert row["total_upcoming_count"] == 4
    assert row["upcoming_occurrences"][0]["is_cancelled"] is True

    invalid = client.get("/api/v1/happenings", params={"view": "grid"})
    assert invalid.status_code == 422
    backwards = client.get("/api/v1/happenings", params={"start": "2026-02-01", "end": "2026-01-01"})
    assert backwards.status_code == 400


def test_venue_happenings_deduplicates_titles(client):
    venue = client.post("/api/v1/venues", json={"name": "The Hall"}).json()["venue"]
    _create_event(
        client,
        title="Open Mic",
        event_date="2026-01-09",
        recurrence_rule=None,
        start_time=None,
        venue_id=venue["id"],
    )
    weekly = _create_event(
        client,
        title="open mic",
        event_date="2026-01-09",
        start_time="20:00",
        venue_id=venue["id"],
    )
    response = client.get("/api/v1/venues/the-hall/happenings", params=JANUARY)
    assert response.status_code == 200
    body = response.json()
    assert body["venue"]["slug"] == "the-hall"
    assert [row["event_id"] for row in body["series"]] == [weekly["id"]]
    assert body["series"][0]["recurrence_summary"] == "Every Friday"
    assert body["series"][0]["venue_name"] == "The Hall"

    assert client.get("/api/v1/venues/nowhere/happenings").status_code == 404


def test_event_occurrences(client):
    trivia = _create_event(client)
    _cancel(client, trivia["id"], "2026-01-13")
    body = client.get(f"/api/v1/events/{trivia['id']}/occurrences", params=JANUARY).json()
    assert body["is_confident"] is True
    assert [o["date_key"] for o in body["occurrences"]] == [
        "2026-01-06",
        "2026-01-13",
        "2026-01-20",
        "2026-01-27",
    ]
    assert [o["is_cancelled"] for o in body["occurrences"]] == [False, True, False, False]

    seasonal = _create_event(
        client, title="Market", event_date=None, recurrence_rule="seasonal"
    )
    unknown = client.get(f"/api/v1/events/{seasonal['id']}/occurrences", params=JANUARY)
    assert unknown.json()["is_confident"] is False
    assert unknown.json()["occurrences"] == []


def test_single_occurrence_with_override(client):
    trivia = _create_event(client)
    client.put(
        f"/api/v1/events/{trivia['id']}/overrides/2026-01-20",
        json={"override_notes": "Back room", "override_patch": {"title": "Holiday Trivia"}},
    )
    response = client.get(f"/api/v1/events/{trivia['id']}/occurrences/2026-01-20")
    assert response.status_code == 200
    body = response.json()
    assert body["event"]["title"] == "Holiday Trivia"
    assert body["event"]["host_notes"] == "Back room"
    assert body["is_cancelled"] is False
    assert body["override"]["override_patch"] == {"title": "Holiday Trivia"}

    off_day = client.get(f"/api/v1/events/{trivia['id']}/occurrences/2026-01-21")
    assert off_day.status_code == 404
    malformed = client.get(f"/api/v1/events/{trivia['id']}/occurrences/2026-1-20")
    assert malformed.status_code == 400
    assert malformed.json()["error"] == "INVALID_DATE_KEY"


def test_override_put_revert_and_delete(client):
    trivia = _create_event(client)
    url = f"/api/v1/events/{trivia['id']}/overrides/2026-01-13"
    created = client.put(url, json={"status": "cancelled"})
    assert created.json()["override"]["status"] == "cancelled"
    assert created.json()["reverted"] is False
    listed = client.get(f"/api/v1/events/{trivia['id']}/overrides").json()["overrides"]
    assert [o["date_key"] for o in listed] == ["2026-01-13"]

    reverted = client.put(url, json={"status": "normal"})
    assert reverted.json() == {"override": None, "reverted": True}
    assert client.delete(url).status_code == 404

    client.put(url, json={"status": "cancelled"})
    assert client.delete(url).status_code == 204

    bad_field = client.put(url, json={"override_patch": {"slug": "x"}})
    assert bad_field.status_code == 400
    assert "Unsupported override fields" in bad_field.json()["detail"]


def test_rsvp_flow(client):
    trivia = _create_event(client)
    _cancel(client, trivia["id"], "2026-01-13")
    rsvps_url = f"/api/v1/events/{trivia['id']}/rsvps"

    created = client.post(
        rsvps_url, json={"name": "Sam", "guest_count": 2, "date_key": "2026-01-20"}
    )
    assert created.status_code == 201
    assert created.json()["rsvp"]["date_key"] == "2026-01-20"
    client.post(
        rsvps_url,
        json={"name": "Alex", "attendance_status": "no", "date_key": "2026-01-20"},
    )

    cancelled = client.post(rsvps_url, json={"name": "Kim", "date_key": "2026-01-13"})
    assert cancelled.status_code == 409
    assert cancelled.json()["error"] == "OCCURRENCE_CANCELLED"

    malformed = client.post(rsvps_url, json={"name": "Kim", "date_key": "Jan 20"})
    assert malformed.status_code == 400
    assert malformed.json()["error"] == "INVALID_DATE_KEY"

    assert client.post(rsvps_url, json={"name": " ", "date_key": "2026-01-20"}).status_code == 400
    assert client.post(rsvps_url, json={"name": "Kim", "guest_count": 21}).status_code == 422

    missing = client.post("/api/v1/events/nope/rsvps", json={"name": "Kim"})
    assert missing.status_code == 404
    assert missing.json()["error"] == "EVENT_NOT_FOUND"

    listing = client.get(rsvps_url, params={"date_key": "2026-01-20"}).json()
    assert [r["name"] for r in listing["rsvps"]] == ["Sam", "Alex"]
    assert listing["party_size"] == 3


def test_event_ics_download(client):
    trivia = _create_event(client)
    _cancel(client, trivia["id"], "2026-01-13")
    response = client.get(f"/api/v1/events/{trivia['id']}/event.ics", params=JANUARY)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/calendar")
    assert f"event_{trivia['id']}.ics" in response.headers["content-disposition"]
    body = response.text
    assert body.startswith("BEGIN:VCALENDAR")
    assert body.count("BEGIN:VEVENT") == 4
    assert body.count("STATUS:CANCELLED") == 1


def test_override_csv_export_and_import(client):
    trivia = _create_event(client)
    _cancel(client, trivia["id"], "2026-01-13")

    exported = client.get("/api/v1/ops/overrides.csv")
    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/csv")
    assert f"{trivia['id']},2026-01-13,cancelled,,," in exported.text

    csv_text = (
        OVERRIDE_HEADER
        + f"{trivia['id']},2026-01-13,cancelled,,,\n"
        + f"{trivia['id']},2026-01-27,cancelled,,,\n"
    )
    preview = client.post("/api/v1/ops/overrides/import", json={"csv_text": csv_text})
    assert preview.status_code == 200
    assert preview.json()["inserts"] == 1
    assert preview.json()["unchanged"] == 1
    assert preview.json()["applied"] is False

    applied = client.post(
        "/api/v1/ops/overrides/import", json={"csv_text": csv_text, "apply": True}
    )
    assert applied.json()["applied"] is True
    listed = client.get(f"/api/v1/events/{trivia['id']}/overrides").json()["overrides"]
    assert [o["date_key"] for o in listed] == ["2026-01-13", "2026-01-27"]

    broken = client.post(
        "/api/v1/ops/overrides/import",
        json={"csv_text": OVERRIDE_HEADER + "x,2026-13-01,cancelled,,,\n"},
    )
    assert broken.status_code == 400
    assert broken.json()["detail"]["errors"] == ["Row 2: invalid date_key '2026-13-01'"]


def test_event_import(client):
    csv_text = (
        "title,event_date,recurrence_rule\n"
        "Book Club,2026-01-05,weekly\n"
        "Book Club,2026-01-12,weekly\n"
    )
    preview = client.post("/api/v1/ops/events/import", json={"csv_text": csv_text})
    assert preview.status_code == 200
    body = preview.json()
    assert body["would_create"] == [2]
    assert body["skipped"] == ["Row 3: duplicates row 2 ('book-club')"]
    assert body["applied"] is False

    applied = client.post(
        "/api/v1/ops/events/import", json={"csv_text": csv_text, "apply": True}
    ).json()
    assert len(applied["created"]) == 1
    event = client.get(f"/api/v1/events/{applied['created'][0]}").json()["event"]
    assert event["recurrence_summary"] == "Every Monday"

    unknown = client.post("/api/v1/ops/events/import", json={"csv_text": "colour\nred\n"})
    assert unknown.status_code == 400


def test_venue_csv_export_and_import(client):
    venue = client.post(
        "/api/v1/venues", json={"name": "The Hall", "city": "Denver", "state": "CO"}
    ).json()["venue"]

    exported = client.get("/api/v1/ops/venues.csv")
    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/csv")
    lines = exported.text.splitlines()
    assert lines[0] == "id,name,address,city,state,zip,website_url,phone,google_maps_url,notes"
    assert lines[1] == f"{venue['id']},The Hall,,Denver,CO,,,,,"

    edited = exported.text.replace(
        "Denver,CO,,,,,", "Denver,CO,80202,https://thehall.example,,,Side door"
    )
    preview = client.post("/api/v1/ops/venues/import", json={"csv_text": edited}).json()
    assert preview["updates"] == 1
    assert preview["applied"] is False
    assert [f["field"] for f in preview["changes"][0]["fields"]] == [
        "zip",
        "website_url",
        "notes",
    ]

    applied = client.post(
        "/api/v1/ops/venues/import", json={"csv_text": edited, "apply": True}
    ).json()
    assert applied["applied"] is True
    found = client.get("/api/v1/venues", params={"q": "hall"}).json()["venues"]
    assert found[0]["zip"] == "80202"
    assert found[0]["website_url"] == "https://thehall.example"

    broken = client.post(
        "/api/v1/ops/venues/import",
        json={"csv_text": lines[0] + "\nnot-a-uuid,The Hall,,,,,,,,\n"},
    )
    assert broken.status_code == 400
    assert broken.json()["detail"]["errors"] == ["Row 2: invalid id 'not-a-uuid'"]


def test_event_csv_export_and_update(client):
    trivia = _create_event(client)
    hidden = _create_event(client, title="Staff Meeting", is_published=False)

    exported = client.get("/api/v1/ops/events.csv")
    assert exported.status_code == 200
    assert f"{hidden['id']},Staff Meeting," in exported.text
    assert f"{trivia['id']},Trivia Night,,2026-01-06,Tuesday,weekly,19:00:00,," in exported.text

    unchanged = client.post(
        "/api/v1/ops/events/update", json={"csv_text": exported.text}
    ).json()
    assert unchanged["updates"] == 0
    assert unchanged["unchanged"] == 2

    edited = exported.text.replace("19:00:00", "20:30")
    applied = client.post(
        "/api/v1/ops/events/update", json={"csv_text": edited, "apply": True}
    ).json()
    assert applied["applied"] is True
    assert sorted(applied["updated"]) == sorted([trivia["id"], hidden["id"]])
    event = client.get(f"/api/v1/events/{trivia['id']}").json()["event"]
    assert event["start_time"] == "20:30:00"

    bad_venue = exported.text.replace(
        f"{trivia['id']},Trivia Night,,2026-01-06,Tuesday,weekly,19:00:00,,",
        f"{trivia['id']},Trivia Night,,2026-01-06,Tuesday,weekly,19:00:00,,nope",
    )
    report = client.post("/api/v1/ops/events/update", json={"csv_text": bad_venue}).json()
    # Exports sort by title, so Trivia Night follows Staff Meeting.
    assert report["errors"] == ["Row 3: venue nope not found"]

    broken = client.post(
        "/api/v1/ops/events/update", json={"csv_text": "id,title\nx,y\n"}
    )
    assert broken.status_code == 400
