"""SQLAlchemy models for Happenings."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Venue(Base):
    __tablename__ = "venues"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    slug = Column(String(128), nullable=False, unique=True)
    address = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    state = Column(String(64), nullable=True)
    zip = Column(String(16), nullable=True)
    website_url = Column(String(512), nullable=True)
    phone = Column(String(32), nullable=True)
    google_maps_url = Column(String(512), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    events = relationship("Event", back_populates="venue")


class Event(Base):
    """A one-time event or the template row of a recurring series.

    Schedule fields hold date keys (``YYYY-MM-DD``) and wall-clock times
    (``HH:MM:SS``) in the community timezone, never UTC timestamps.
    """

    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    slug = Column(String(160), nullable=False, index=True)
    event_type = Column(String(64), nullable=True)
    description = Column(Text, nullable=True)
    venue_id = Column(
        String(36), ForeignKey("venues.id", ondelete="SET NULL"), nullable=True
    )
    event_date = Column(String(10), nullable=True)
    day_of_week = Column(String(16), nullable=True)
    recurrence_rule = Column(String(255), nullable=True)
    recurrence_end_date = Column(String(10), nullable=True)
    custom_dates = Column(JSON, nullable=True)
    max_occurrences = Column(Integer, nullable=True)
    start_time = Column(String(8), nullable=True)
    end_time = Column(String(8), nullable=True)
    cover_image_url = Column(String(512), nullable=True)
    host_notes = Column(Text, nullable=True)
    external_url = Column(String(512), nullable=True)
    capacity = Column(Integer, nullable=True)
    is_free = Column(Boolean, nullable=True)
    cost_label = Column(String(128), nullable=True)
    age_policy = Column(String(128), nullable=True)
    categories = Column(JSON, nullable=True)
    is_published = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    venue = relationship("Venue", back_populates="events")
    overrides = relationship(
        "OccurrenceOverride",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="OccurrenceOverride.date_key",
    )
    rsvps = relationship(
        "RSVP",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def venue_name(self) -> str | None:
        return self.venue.name if self.venue else None

    def as_dict(self) -> dict:
        """Column values keyed by name, the base an override is merged onto."""
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}


class OccurrenceOverride(Base):
    """Admin exception for one occurrence, keyed by ``(event_id, date_key)``."""

    __tablename__ = "occurrence_overrides"
    __table_args__ = (
        UniqueConstraint("event_id", "date_key", name="uq_override_event_date"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    date_key = Column(String(10), nullable=False, index=True)
    status = Column(String(16), default="normal", nullable=False)
    override_start_time = Column(String(8), nullable=True)
    override_cover_image_url = Column(String(512), nullable=True)
    override_notes = Column(Text, nullable=True)
    override_patch = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="overrides")


class RSVP(Base):
    __tablename__ = "rsvps"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    date_key = Column(String(10), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    attendance_status = Column(String(16), default="yes", nullable=False)
    guest_count = Column(Integer, default=0, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="rsvps")
