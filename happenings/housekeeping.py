"""Retention cleanup for per-occurrence rows."""

from __future__ import annotations

import logging

from sqlalchemy import delete

from .config import settings
from .database import engine, get_session
from .datekeys import add_days, get_today_key
from .models import RSVP, OccurrenceOverride

# Use uvicorn's error logger so housekeeping messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")


def run_housekeeping(today_key: str | None = None) -> dict:
    """Delete overrides and RSVPs for occurrences past their retention window.

    Rows are aged by the occurrence they belong to (``date_key``), not by when
    they were written, so an RSVP made months ahead is kept until it passes.
    """
    today = today_key or get_today_key()
    override_cutoff = add_days(today, -settings.override_retention_days)
    rsvp_cutoff = add_days(today, -settings.rsvp_retention_days)
    stats = {
        "overrides_deleted": 0,
        "rsvps_deleted": 0,
        "override_cutoff": override_cutoff,
        "rsvp_cutoff": rsvp_cutoff,
    }

    logger.info(
        "Housekeeping started (override_cutoff=%s, rsvp_cutoff=%s)",
        override_cutoff,
        rsvp_cutoff,
    )
    with get_session() as session:
        result = session.execute(
            delete(OccurrenceOverride).where(OccurrenceOverride.date_key < override_cutoff)
        )
        stats["overrides_deleted"] = result.rowcount or 0
        result = session.execute(delete(RSVP).where(RSVP.date_key < rsvp_cutoff))
        stats["rsvps_deleted"] = result.rowcount or 0

    logger.info(
        "Housekeeping finished: overrides deleted=%d, rsvps deleted=%d",
        stats["overrides_deleted"],
        stats["rsvps_deleted"],
    )
    return stats


def vacuum_database() -> None:
    with engine.connect() as connection:
        connection.execution_options(isolation_level="AUTOCOMMIT").exec_driver_sql(
            "VACUUM"
        )
