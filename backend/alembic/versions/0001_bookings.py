"""bookings and extension attempts

Revision ID: 0001_bookings
Revises: 
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_bookings"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("spot_id", sa.String(length=64), nullable=False),
        sa.Column("host_id", sa.String(length=64), nullable=False),
        sa.Column("renter_id", sa.String(length=64)),
        sa.Column("guest", sa.JSON()),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("departed_at", sa.DateTime(timezone=True)),
        sa.Column("instant_book", sa.Boolean(), nullable=False),
        sa.Column("hourly_rate_cents", sa.Integer(), nullable=False),
        sa.Column("total_hours", sa.Numeric(10, 4), nullable=False),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("platform_fee_cents", sa.Integer(), nullable=False),
        sa.Column("ev_charging_fee_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("will_use_ev_charging", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("extension_charges_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("original_total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("overstay_detected_at", sa.DateTime(timezone=True)),
        sa.Column("overstay_grace_end", sa.DateTime(timezone=True)),
        sa.Column("overstay_action", sa.String(length=16)),
        sa.Column("overstay_charge_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refund_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cancellation_reason", sa.String(length=255)),
        sa.Column("canceled_by", sa.String(length=16)),
        sa.Column("payer_ref", sa.String(length=255), nullable=False),
        sa.Column("payment_ref", sa.String(length=255)),
        sa.Column("captured_at", sa.DateTime(timezone=True)),
        sa.Column("charges", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pending_operation", sa.String(length=32)),
        sa.Column("pending_operation_at", sa.DateTime(timezone=True)),
        sa.Column("approval_reminder_sent_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            # ORM-managed updated_at (no database trigger).
            nullable=False,
        ),
    )
    op.create_index("ix_bookings_spot_id", "bookings", ["spot_id"])
    op.create_index("ix_bookings_host_id", "bookings", ["host_id"])
    op.create_index("ix_bookings_renter_id", "bookings", ["renter_id"])
    op.create_index("ix_bookings_status_created_at", "bookings", ["status", "created_at"])
    op.create_index("ix_bookings_status_end_at", "bookings", ["status", "end_at"])

    op.create_table(
        "booking_extension_attempts",
        sa.Column("attempt_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("previous_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("new_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("extension_hours", sa.Numeric(10, 4), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("intent_ref", sa.String(length=255), nullable=False),
        sa.Column("challenge_ref", sa.String(length=255)),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finalized_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "ix_booking_extension_attempts_booking_id", "booking_extension_attempts", ["booking_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_booking_extension_attempts_booking_id", table_name="booking_extension_attempts")
    op.drop_table("booking_extension_attempts")
    op.drop_index("ix_bookings_status_end_at", table_name="bookings")
    op.drop_index("ix_bookings_status_created_at", table_name="bookings")
    op.drop_index("ix_bookings_renter_id", table_name="bookings")
    op.drop_index("ix_bookings_host_id", table_name="bookings")
    op.drop_index("ix_bookings_spot_id", table_name="bookings")
    op.drop_table("bookings")
