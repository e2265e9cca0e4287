"""track overstay notices and extension attempt lookups"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_overstay_notices"
down_revision = "0001_bookings"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("bookings", sa.Column("ending_soon_notified_at", sa.DateTime(timezone=True)))
    op.add_column("bookings", sa.Column("grace_ended_notified_at", sa.DateTime(timezone=True)))
    op.add_column(
        "bookings",
        sa.Column("overstay_charge_notified_cents", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index(
        "ix_booking_extension_attempts_booking_status",
        "booking_extension_attempts",
        ["booking_id", "status"],
    )


def downgrade() -> None:
    op.drop_index("ix_booking_extension_attempts_booking_status", table_name="booking_extension_attempts")
    op.drop_column("bookings", "overstay_charge_notified_cents")
    op.drop_column("bookings", "grace_ended_notified_at")
    op.drop_column("bookings", "ending_soon_notified_at")
