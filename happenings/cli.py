"""Typer CLI for Happenings."""

from __future__ import annotations

import json
from pathlib import Path

import typer
import uvicorn
from sqlalchemy.exc import OperationalError

from .config import load_settings, settings, settings_as_dict, update_config_file
from .crud import (
    apply_event_rows,
    apply_override_rows,
    apply_venue_rows,
    get_event,
    import_events,
    list_events,
    list_overrides,
    list_venues,
)
from .database import get_session
from .datekeys import format_date_key_for_display
from .housekeeping import run_housekeeping, vacuum_database
from .occurrences import expand_occurrences_for_event, occurrence_window
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
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import init_db, upgrade_database

app = typer.Typer(help="Happenings command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("housekeeping")
def housekeeping(
    vacuum: bool = typer.Option(
        False,
        "--vacuum",
        help="Run SQLite VACUUM after housekeeping completes",
    ),
) -> None:
    """Delete expired overrides and RSVPs now."""
    init_db()
    stats = run_housekeeping()
    typer.echo(f"Housekeeping complete: {stats}")
    if vacuum:
        vacuum_database()
        typer.echo("Database vacuum complete.")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    start_scheduler()
    config = uvicorn.Config(
        "happenings.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting Happenings on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    venues: int = typer.Option(
        settings.seed_venues, "--venues", min=0, help="Number of venues to create"
    ),
    events_per_venue: int = typer.Option(
        settings.seed_events_per_venue,
        "--events-per-venue",
        min=1,
        help="Maximum happenings to create at each venue",
    ),
    max_rsvps: int = typer.Option(
        4, "--max-rsvps", min=0, help="Maximum RSVPs to attach to each happening"
    ),
    override_percent: int = typer.Option(
        25,
        "--override-percent",
        min=0,
        max=100,
        help="Percentage of happenings that get one override (0-100)",
    ),
):
    """Populate the database with fake venues and happenings for testing."""
    stats = seed_fake_data(
        venue_count=venues,
        events_per_venue=events_per_venue,
        max_rsvps_per_event=max_rsvps,
        override_percentage=override_percent,
    )
    typer.echo(
        f"Seed complete: {stats['venues']} venues, {stats['events']} events, "
        f"{stats['overrides']} overrides, {stats['rsvps']} RSVPs created."
    )


@app.command("occurrences")
def occurrences(
    event_id: str = typer.Argument(..., help="Event id to expand"),
    start: str | None = typer.Option(None, "--start", help="First date (YYYY-MM-DD)"),
    end: str | None = typer.Option(None, "--end", help="Last date (YYYY-MM-DD)"),
) -> None:
    """Print the dates an event occurs on within a window."""
    try:
        start_key, end_key = occurrence_window(
            start, end, window_days=settings.default_window_days
        )
    except ValueError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=2)
    init_db()
    with get_session() as session:
        event = get_event(session, event_id)
        if event is None:
            typer.secho(f"Event {event_id} not found", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1)
        date_keys = expand_occurrences_for_event(
            event, start_key, end_key, max_occurrences=settings.max_total_occurrences
        )
        typer.echo(f"{event.title}: {len(date_keys)} occurrence(s) {start_key}..{end_key}")
        for date_key in date_keys:
            typer.echo(f"- {date_key}  {format_date_key_for_display(date_key)}")


@app.command("export-overrides")
def export_overrides(
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Write CSV here instead of stdout"
    ),
) -> None:
    """Export every occurrence override as CSV."""
    init_db()
    with get_session() as session:
        text = serialize_override_csv(list_overrides(session))
    if output is None:
        typer.echo(text, nl=False)
        return
    output.write_text(text, encoding="utf-8")
    typer.echo(f"Wrote overrides to {output}")


def _read_csv(path: Path) -> str:
    if not path.exists():
        typer.secho(f"{path} does not exist", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return path.read_text(encoding="utf-8")


@app.command("import-overrides")
def import_overrides(
    path: Path = typer.Argument(..., help="CSV file to import"),
    apply: bool = typer.Option(
        False, "--apply", help="Write changes (default is a preview)"
    ),
) -> None:
    """Preview or apply an override CSV."""
    parsed = parse_override_csv(_read_csv(path), max_rows=settings.max_import_rows)
    rows, errors = validate_override_rows(parsed.rows)
    errors = parsed.errors + errors
    if errors:
        for error in errors:
            typer.secho(error, err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    init_db()
    with get_session() as session:
        report = apply_override_rows(session, rows, apply=apply)
    for error in report["errors"]:
        typer.secho(error, err=True, fg=typer.colors.YELLOW)
    verb = "Applied" if report["applied"] else "Preview"
    typer.echo(
        f"{verb}: {report['inserts']} inserts, {report['updates']} updates, "
        f"{report['unchanged']} unchanged."
    )


def _write_export(text: str, output: Path | None, label: str) -> None:
    if output is None:
        typer.echo(text, nl=False)
        return
    output.write_text(text, encoding="utf-8")
    typer.echo(f"Wrote {label} to {output}")


def _fail_on(errors: list[str]) -> None:
    if errors:
        for error in errors:
            typer.secho(error, err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_record_report(report: dict) -> None:
    for change in report["changes"]:
        fields = ", ".join(item["field"] for item in change["fields"])
        typer.echo(f"- row {change['row']} {change['id']}: {fields}")
    for error in report["errors"]:
        typer.secho(error, err=True, fg=typer.colors.YELLOW)
    verb = "Applied" if report["applied"] else "Preview"
    typer.echo(
        f"{verb}: {report['updates']} updates, {report['unchanged']} unchanged, "
        f"{report['not_found']} not found."
    )


@app.command("export-venues")
def export_venues(
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Write CSV here instead of stdout"
    ),
) -> None:
    """Export every venue as CSV."""
    init_db()
    with get_session() as session:
        text = serialize_venue_csv(list_venues(session))
    _write_export(text, output, "venues")


@app.command("import-venues")
def import_venues(
    path: Path = typer.Argument(..., help="CSV file to import"),
    apply: bool = typer.Option(
        False, "--apply", help="Write changes (default is a preview)"
    ),
) -> None:
    """Preview or apply venue updates; venues are matched by id and never created."""
    parsed = parse_venue_csv(_read_csv(path), max_rows=settings.max_import_rows)
    rows, errors, warnings = validate_venue_rows(parsed.rows)
    _fail_on(parsed.errors + errors)
    for warning in warnings:
        typer.secho(warning, err=True, fg=typer.colors.YELLOW)
    init_db()
    with get_session() as session:
        report = apply_venue_rows(session, rows, apply=apply)
    _echo_record_report(report)


@app.command("export-events")
def export_events(
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Write CSV here instead of stdout"
    ),
) -> None:
    """Export every event, published or not, as CSV."""
    init_db()
    with get_session() as session:
        text = serialize_event_csv(list_events(session, include_unpublished=True))
    _write_export(text, output, "events")


@app.command("update-events")
def update_events(
    path: Path = typer.Argument(..., help="CSV file exported by export-events"),
    apply: bool = typer.Option(
        False, "--apply", help="Write changes (default is a preview)"
    ),
) -> None:
    """Preview or apply field changes to existing events."""
    parsed = parse_event_csv(_read_csv(path), max_rows=settings.max_import_rows)
    rows, errors = validate_event_rows(parsed.rows)
    _fail_on(parsed.errors + errors)
    init_db()
    with get_session() as session:
        report = apply_event_rows(session, rows, apply=apply)
    _echo_record_report(report)


@app.command("import-events")
def import_events_command(
    path: Path = typer.Argument(..., help="CSV file to import"),
    apply: bool = typer.Option(
        False, "--apply", help="Create events (default is a preview)"
    ),
) -> None:
    """Preview or apply an event import CSV."""
    parsed = parse_event_import_csv(
        _read_csv(path), max_rows=settings.max_import_rows
    )
    if parsed.errors:
        for error in parsed.errors:
            typer.secho(error, err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    init_db()
    with get_session() as session:
        report = import_events(session, parsed.rows, apply=apply)
    for message in report.warnings + report.skipped:
        typer.secho(message, err=True, fg=typer.colors.YELLOW)
    for error in report.errors:
        typer.secho(error, err=True, fg=typer.colors.RED)
    if apply:
        typer.echo(f"Created {len(report.created)} event(s).")
    else:
        typer.echo(f"Preview: {len(report.would_create)} event(s) would be created.")
    if report.errors:
        raise typer.Exit(code=1)


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    timezone: str | None = typer.Option(
        None, "--timezone", help="IANA timezone that date keys are computed in"
    ),
    default_window_days: int | None = typer.Option(
        None, "--default-window-days", min=1, help="Days shown when no end is given"
    ),
    max_events: int | None = typer.Option(
        None, "--max-events", min=1, help="Events considered per timeline request"
    ),
    max_total_occurrences: int | None = typer.Option(
        None,
        "--max-total-occurrences",
        min=1,
        help="Occurrences returned per timeline request",
    ),
    max_occurrences_per_event: int | None = typer.Option(
        None,
        "--max-occurrences-per-event",
        min=1,
        help="Occurrences expanded for any one event",
    ),
    series_max_upcoming: int | None = typer.Option(
        None, "--series-max-upcoming", min=1, help="Upcoming dates shown per series"
    ),
    override_retention_days: int | None = typer.Option(
        None,
        "--override-retention-days",
        min=1,
        help="Days after an occurrence before its override is deleted",
    ),
    rsvp_retention_days: int | None = typer.Option(
        None,
        "--rsvp-retention-days",
        min=1,
        help="Days after an occurrence before its RSVPs are deleted",
    ),
    housekeeping_interval_hours: int | None = typer.Option(
        None,
        "--housekeeping-interval-hours",
        min=1,
        help="Hours between housekeeping runs",
    ),
    vacuum_hours: int | None = typer.Option(
        None, "--vacuum-hours", help="Hours between SQLite VACUUM runs"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None,
        "--config-path",
        help="Path to happenings.toml (default: ./happenings.toml)",
    ),
    seed_venues: int | None = typer.Option(
        None, "--seed-venues", min=0, help="Default seed-data venues"
    ),
    seed_events_per_venue: int | None = typer.Option(
        None, "--seed-events-per-venue", min=1, help="Default seed-data events/venue"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (housekeeping/vacuum)",
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "timezone": timezone,
        "default_window_days": default_window_days,
        "max_events": max_events,
        "max_total_occurrences": max_total_occurrences,
        "max_occurrences_per_event": max_occurrences_per_event,
        "series_max_upcoming": series_max_upcoming,
        "override_retention_days": override_retention_days,
        "rsvp_retention_days": rsvp_retention_days,
        "housekeeping_interval_hours": housekeeping_interval_hours,
        "sqlite_vacuum_hours": vacuum_hours,
        "app_host": host,
        "app_port": port,
        "seed_venues": seed_venues,
        "seed_events_per_venue": seed_events_per_venue,
        "enable_scheduler": enable_scheduler,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
