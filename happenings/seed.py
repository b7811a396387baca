"""Development helpers for populating fake venues and happenings."""

from __future__ import annotations

import random

from faker import Faker
from sqlalchemy.orm import Session

from .crud import (
    create_event,
    create_rsvp,
    ensure_venue,
    get_venue_by_slug,
    upsert_override,
)
from .database import get_session
from .datekeys import DAY_NAMES, DateKeyError, add_days, get_today_key
from .models import Event, Venue
from .occurrences import expand_occurrences_for_event
from .storage import init_db
from .utils import slugify

_venue_suffixes = [
    "Taproom",
    "Community Hall",
    "Library",
    "Coffee House",
    "Brewing Co.",
    "Park Pavilion",
    "Arts Center",
]
_event_types = [
    "Trivia Night",
    "Open Mic",
    "Board Game Night",
    "Run Club",
    "Book Club",
    "Karaoke",
    "Craft Circle",
    "Live Music",
]
_schedules = [
    {"recurrence_rule": "weekly"},
    {"recurrence_rule": "weekly"},
    {"recurrence_rule": "biweekly"},
    {"recurrence_rule": "1st/3rd"},
    {"recurrence_rule": "last"},
    {"recurrence_rule": "FREQ=MONTHLY;BYMONTHDAY=15"},
    {"recurrence_rule": None},
    {"recurrence_rule": "seasonal"},
]
_start_times = ["10:00", "12:30", "18:00", "18:30", "19:00", "19:30", "20:00", None]
_rsvp_statuses = ["yes", "yes", "yes", "maybe", "no"]


def seed_fake_data(
    *,
    venue_count: int = 4,
    events_per_venue: int = 3,
    max_rsvps_per_event: int = 4,
    override_percentage: int = 25,
    today_key: str | None = None,
) -> dict[str, int]:
    """Populate the SQLite database with synthetic venues, happenings and overrides."""
    if venue_count < 0:
        raise ValueError("venue_count must be >= 0")
    if events_per_venue < 1:
        raise ValueError("events_per_venue must be >= 1")
    if max_rsvps_per_event < 0:
        raise ValueError("max_rsvps_per_event must be >= 0")
    if not 0 <= override_percentage <= 100:
        raise ValueError("override_percentage must be between 0 and 100")

    init_db()
    fake = Faker()
    today = today_key or get_today_key()
    stats = {"venues": 0, "events": 0, "overrides": 0, "rsvps": 0}

    with get_session() as session:
        for _ in range(venue_count):
            venue = _create_venue(session, fake)
            stats["venues"] += 1
            for _ in range(random.randint(1, events_per_venue)):
                event = _create_event(session, fake, venue=venue, today_key=today)
                stats["events"] += 1
                upcoming = expand_occurrences_for_event(
                    event, today, add_days(today, 60), max_occurrences=6
                )
                if upcoming and random.randint(1, 100) <= override_percentage:
                    _create_override(session, fake, event, random.choice(upcoming), today)
                    stats["overrides"] += 1
                stats["rsvps"] += _create_rsvps(
                    session, fake, event, upcoming, max_rsvps_per_event, today
                )

    return stats


def _create_venue(session: Session, fake: Faker) -> Venue:
    for _ in range(20):
        name = f"{fake.last_name()} {random.choice(_venue_suffixes)}"
        if not slugify(name) or get_venue_by_slug(session, slugify(name)):
            continue
        return ensure_venue(
            session,
            name=name,
            address=fake.street_address(),
            city=fake.city(),
            state=fake.state_abbr(),
        )
    raise RuntimeError("Failed to create a unique venue name")


def _create_event(
    session: Session, fake: Faker, *, venue: Venue, today_key: str
) -> Event:
    schedule = dict(random.choice(_schedules))
    event_date = add_days(today_key, random.randint(-21, 21))
    if schedule["recurrence_rule"] == "seasonal":
        schedule["day_of_week"] = random.choice(DAY_NAMES)
    start_time = random.choice(_start_times)
    return create_event(
        session,
        title=f"{venue.name.split()[0]} {random.choice(_event_types)}",
        venue=venue,
        event_type=random.choice(["music", "games", "social", "fitness", "learning"]),
        description=fake.paragraph(nb_sentences=3),
        event_date=event_date,
        start_time=start_time,
        end_time=None if start_time is None else _end_time(start_time),
        is_free=random.random() < 0.6,
        categories=random.sample(["music", "games", "outdoors", "family", "21+"], k=2),
        **schedule,
    )


def _end_time(start_time: str) -> str:
    hour, minute = (int(part) for part in start_time.split(":"))
    return f"{min(hour + random.randint(1, 3), 23):02d}:{minute:02d}"


def _create_override(
    session: Session, fake: Faker, event: Event, date_key: str, today_key: str
) -> None:
    if random.random() < 0.5:
        upsert_override(
            session,
            event,
            date_key,
            status="cancelled",
            override_notes="Cancelled this week",
            today_key=today_key,
        )
    else:
        upsert_override(
            session,
            event,
            date_key,
            override_start_time=random.choice(["17:00", "21:00"]),
            override_notes=fake.sentence(),
            today_key=today_key,
        )


def _create_rsvps(
    session: Session,
    fake: Faker,
    event: Event,
    upcoming: list[str],
    max_rsvps: int,
    today_key: str,
) -> int:
    if max_rsvps <= 0 or not upcoming:
        return 0
    created = 0
    for _ in range(random.randint(0, max_rsvps)):
        try:
            create_rsvp(
                session,
                event=event,
                name=fake.name_nonbinary(),
                attendance_status=random.choice(_rsvp_statuses),
                guest_count=random.randint(0, 3),
                note=fake.sentence() if random.random() < 0.3 else None,
                date_key=random.choice(upcoming),
                today_key=today_key,
            )
        except DateKeyError:
            # The chosen occurrence was cancelled above.
            continue
        created += 1
    return created
