from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from spotbook.infra.db import Base


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    spot_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    host_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    renter_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    guest: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    departed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    instant_book: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    hourly_rate_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_hours: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    ev_charging_fee_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    will_use_ev_charging: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="0"
    )
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    extension_charges_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    original_total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False)

    overstay_detected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    overstay_grace_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    overstay_action: Mapped[str | None] = mapped_column(String(16))
    overstay_charge_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    refund_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    cancellation_reason: Mapped[str | None] = mapped_column(String(255))
    canceled_by: Mapped[str | None] = mapped_column(String(16))

    payer_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_ref: Mapped[str | None] = mapped_column(String(255))
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    charges: Mapped[list[dict]] = mapped_column(JSON, default=list, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    pending_operation: Mapped[str | None] = mapped_column(String(32))
    pending_operation_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approval_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ending_soon_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    grace_ended_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    overstay_charge_notified_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_bookings_status_created_at", "status", "created_at"),
        Index("ix_bookings_status_end_at", "status", "end_at"),
    )


class BookingExtensionAttempt(Base):
    __tablename__ = "booking_extension_attempts"

    attempt_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.booking_id", ondelete="CASCADE"), nullable=False, index=True
    )
    previous_end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    new_end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    extension_hours: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    intent_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    challenge_ref: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_booking_extension_attempts_booking_status", "booking_id", "status"),
    )
