from __future__ import annotations

from typer.testing import CliRunner

from happenings.cli import app
from happenings.crud import create_event, ensure_venue, upsert_override

runner = CliRunner()

HEADER = "event_id,date_key,status,override_start_time,override_notes,override_cover_image_url\n"


def _trivia(session):
    event = create_event(
        session, title="Trivia Night", event_date="2026-01-06", recurrence_rule="weekly"
    )
    session.commit()
    return event


def test_occurrences_command_lists_dates(session):
    event = _trivia(session)
    result = runner.invoke(
        app, ["occurrences", event.id, "--start", "2026-01-01", "--end", "2026-01-14"]
    )
    assert result.exit_code == 0, result.output
    assert "Trivia Night: 2 occurrence(s) 2026-01-01..2026-01-14" in result.output
    assert "- 2026-01-13  Tuesday, January 13, 2026" in result.output


def test_occurrences_command_errors():
    bad_window = runner.invoke(app, ["occurrences", "x", "--start", "soon"])
    assert bad_window.exit_code == 2
    missing = runner.invoke(app, ["occurrences", "nope", "--start", "2026-01-01"])
    assert missing.exit_code == 1


def test_export_and_import_overrides(session, tmp_path):
    event = _trivia(session)
    upsert_override(session, event, "2026-01-13", status="cancelled", today_key="2026-01-01")
    session.commit()

    exported = tmp_path / "overrides.csv"
    result = runner.invoke(app, ["export-overrides", "--output", str(exported)])
    assert result.exit_code == 0, result.output
    assert f"{event.id},2026-01-13,cancelled" in exported.read_text(encoding="utf-8")

    incoming = tmp_path / "incoming.csv"
    incoming.write_text(HEADER + f"{event.id},2026-01-20,cancelled,,,\n", encoding="utf-8")
    preview = runner.invoke(app, ["import-overrides", str(incoming)])
    assert "Preview: 1 inserts, 0 updates, 0 unchanged." in preview.output
    applied = runner.invoke(app, ["import-overrides", str(incoming), "--apply"])
    assert "Applied: 1 inserts" in applied.output

    missing = runner.invoke(app, ["import-overrides", str(tmp_path / "nope.csv")])
    assert missing.exit_code == 1


def test_import_events_command(tmp_path):
    path = tmp_path / "events.csv"
    path.write_text("title,day_of_week\nBook Club,Monday\n", encoding="utf-8")
    preview = runner.invoke(app, ["import-events", str(path)])
    assert preview.exit_code == 0, preview.output
    assert "Preview: 1 event(s) would be created." in preview.output
    applied = runner.invoke(app, ["import-events", str(path), "--apply"])
    assert "Created 1 event(s)." in applied.output


def test_export_and_import_venues(session, tmp_path):
    venue = ensure_venue(session, name="The Hall", city="Denver")
    session.commit()

    exported = tmp_path / "venues.csv"
    result = runner.invoke(app, ["export-venues", "--output", str(exported)])
    assert result.exit_code == 0, result.output
    text = exported.read_text(encoding="utf-8")
    assert f"{venue.id},The Hall,,Denver,,,,,," in text

    exported.write_text(text.replace("Denver,,", "Boulder,CO,"), encoding="utf-8")
    preview = runner.invoke(app, ["import-venues", str(exported)])
    assert preview.exit_code == 0, preview.output
    assert "city, state" in preview.output
    assert "Preview: 1 updates, 0 unchanged, 0 not found." in preview.output

    applied = runner.invoke(app, ["import-venues", str(exported), "--apply"])
    assert "Applied: 1 updates" in applied.output
    session.expire_all()
    assert session.get(type(venue), venue.id).city == "Boulder"

    exported.write_text(text.replace(venue.id, "bad-id"), encoding="utf-8")
    broken = runner.invoke(app, ["import-venues", str(exported)])
    assert broken.exit_code == 1


def test_export_and_update_events(session, tmp_path):
    event = _trivia(session)

    stdout = runner.invoke(app, ["export-events"])
    assert stdout.exit_code == 0, stdout.output
    assert f"{event.id},Trivia Night,,2026-01-06,Tuesday,weekly," in stdout.output

    path = tmp_path / "events.csv"
    path.write_text(stdout.output.replace(",True,", ",False,"), encoding="utf-8")
    preview = runner.invoke(app, ["update-events", str(path)])
    assert preview.exit_code == 0, preview.output
    assert f"- row 2 {event.id}: is_published" in preview.output

    applied = runner.invoke(app, ["update-events", str(path), "--apply"])
    assert "Applied: 1 updates, 0 unchanged, 0 not found." in applied.output
    session.expire_all()
    assert session.get(type(event), event.id).is_published is False
