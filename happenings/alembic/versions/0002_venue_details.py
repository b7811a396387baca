"""Add contact and map details to venues."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_venue_details"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("DROP TABLE IF EXISTS _alembic_tmp_venues")
    with op.batch_alter_table("venues") as batch_op:
        batch_op.add_column(sa.Column("zip", sa.String(length=16), nullable=True))
        batch_op.add_column(
            sa.Column("website_url", sa.String(length=512), nullable=True)
        )
        batch_op.add_column(sa.Column("phone", sa.String(length=32), nullable=True))
        batch_op.add_column(
            sa.Column("google_maps_url", sa.String(length=512), nullable=True)
        )
        batch_op.add_column(sa.Column("notes", sa.Text(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("venues") as batch_op:
        batch_op.drop_column("notes")
        batch_op.drop_column("google_maps_url")
        batch_op.drop_column("phone")
        batch_op.drop_column("website_url")
        batch_op.drop_column("zip")
