"""Initial Happenings schema: venues, events, overrides, RSVPs."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "venues",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=128), nullable=True),
        sa.Column("state", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=160), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("venue_id", sa.String(length=36), nullable=True),
        sa.Column("event_date", sa.String(length=10), nullable=True),
        sa.Column("day_of_week", sa.String(length=16), nullable=True),
        sa.Column("recurrence_rule", sa.String(length=255), nullable=True),
        sa.Column("recurrence_end_date", sa.String(length=10), nullable=True),
        sa.Column("custom_dates", sa.JSON(), nullable=True),
        sa.Column("max_occurrences", sa.Integer(), nullable=True),
        sa.Column("start_time", sa.String(length=8), nullable=True),
        sa.Column("end_time", sa.String(length=8), nullable=True),
        sa.Column("cover_image_url", sa.String(length=512), nullable=True),
        sa.Column("host_notes", sa.Text(), nullable=True),
        sa.Column("external_url", sa.String(length=512), nullable=True),
        sa.Column("capacity", sa.Integer(), nullable=True),
        sa.Column("is_free", sa.Boolean(), nullable=True),
        sa.Column("cost_label", sa.String(length=128), nullable=True),
        sa.Column("age_policy", sa.String(length=128), nullable=True),
        sa.Column("categories", sa.JSON(), nullable=True),
        sa.Column("is_published", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_modified", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["venue_id"], ["venues.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_events_slug", "events", ["slug"])

    op.create_table(
        "occurrence_overrides",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("date_key", sa.String(length=10), nullable=False),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default="normal"
        ),
        sa.Column("override_start_time", sa.String(length=8), nullable=True),
        sa.Column("override_cover_image_url", sa.String(length=512), nullable=True),
        sa.Column("override_notes", sa.Text(), nullable=True),
        sa.Column("override_patch", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", "date_key", name="uq_override_event_date"),
    )
    op.create_index(
        "ix_occurrence_overrides_date_key", "occurrence_overrides", ["date_key"]
    )

    op.create_table(
        "rsvps",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("date_key", sa.String(length=10), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("attendance_status", sa.String(length=16), nullable=False),
        sa.Column("guest_count", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_modified", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rsvps_date_key", "rsvps", ["date_key"])


def downgrade() -> None:
    op.drop_index("ix_rsvps_date_key", table_name="rsvps")
    op.drop_table("rsvps")
    op.drop_index(
        "ix_occurrence_overrides_date_key", table_name="occurrence_overrides"
    )
    op.drop_table("occurrence_overrides")
    op.drop_index("ix_events_slug", table_name="events")
    op.drop_table("events")
    op.drop_table("venues")
