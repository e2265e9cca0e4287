from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from spotbook.domain.bookings.overstay import OverstayAction
from spotbook.domain.bookings.statuses import (
    ActorRole,
    BookingStatus,
    ChargeKind,
    ExtensionAttemptStatus,
)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class GuestIdentity(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    phone: str = Field(min_length=3, max_length=64)
    vehicle_description: str | None = Field(None, max_length=255)


class ChargeEntry(BaseModel):
    kind: ChargeKind
    intent_ref: str
    amount_cents: int
    refunded_cents: int = 0
    captured: bool = True
    created_at: datetime

    @property
    def refundable_cents(self) -> int:
        if not self.captured:
            return 0
        return max(self.amount_cents - self.refunded_cents, 0)


class Actor(BaseModel):
    role: ActorRole
    user_id: str | None = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(role=ActorRole.system)


class BookingTerms(BaseModel):
    """Everything the engine needs from the spot and the payer to open a booking."""

    spot_id: str
    host_id: str
    instant_book: bool
    hourly_rate_cents: int = Field(gt=0)
    ev_premium_cents_per_hour: int = Field(0, ge=0)
    will_use_ev_charging: bool = False
    start_at: datetime
    end_at: datetime
    payer_ref: str
    renter_id: str | None = None
    guest: GuestIdentity | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def normalize_datetime(cls, value: datetime) -> datetime:
        return as_utc(value)


class BookingRecord(BaseModel):
    booking_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    spot_id: str
    host_id: str
    renter_id: str | None = None
    guest: GuestIdentity | None = None

    start_at: datetime
    end_at: datetime
    created_at: datetime
    departed_at: datetime | None = None

    instant_book: bool
    hourly_rate_cents: int
    total_hours: Decimal
    subtotal_cents: int
    platform_fee_cents: int
    ev_charging_fee_cents: int = 0
    will_use_ev_charging: bool = False
    total_amount_cents: int
    extension_charges_cents: int = 0
    original_total_amount_cents: int

    status: BookingStatus

    overstay_detected_at: datetime | None = None
    overstay_grace_end: datetime | None = None
    overstay_action: OverstayAction | None = None
    overstay_charge_cents: int = 0

    refund_amount_cents: int = 0
    cancellation_reason: str | None = None
    canceled_by: ActorRole | None = None

    payer_ref: str
    payment_ref: str | None = None
    captured_at: datetime | None = None
    charges: list[ChargeEntry] = Field(default_factory=list)

    version: int = 0
    pending_operation: str | None = None
    pending_operation_at: datetime | None = None
    approval_reminder_sent_at: datetime | None = None
    ending_soon_notified_at: datetime | None = None
    grace_ended_notified_at: datetime | None = None
    overstay_charge_notified_cents: int = 0
    updated_at: datetime | None = None

    @field_validator(
        "start_at",
        "end_at",
        "created_at",
        "departed_at",
        "overstay_detected_at",
        "overstay_grace_end",
        "captured_at",
        "pending_operation_at",
        "approval_reminder_sent_at",
        "ending_soon_notified_at",
        "grace_ended_notified_at",
        "updated_at",
    )
    @classmethod
    def normalize_datetime(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)

    @property
    def is_guest(self) -> bool:
        return self.guest is not None

    @property
    def recipient_id(self) -> str:
        if self.renter_id:
            return self.renter_id
        return f"guest:{self.guest.email}" if self.guest else "unknown"

    @property
    def refundable_cents(self) -> int:
        return sum(entry.refundable_cents for entry in self.charges)


class ExtensionAttemptRecord(BaseModel):
    attempt_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    booking_id: str
    previous_end_at: datetime
    new_end_at: datetime
    extension_hours: Decimal
    amount_cents: int
    intent_ref: str
    challenge_ref: str | None = None
    status: ExtensionAttemptStatus = ExtensionAttemptStatus.requires_action
    created_at: datetime
    finalized_at: datetime | None = None

    @field_validator("previous_end_at", "new_end_at", "created_at", "finalized_at")
    @classmethod
    def normalize_datetime(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)


# ---- API payloads ----------------------------------------------------------


class BookingCreateRequest(BaseModel):
    """Spot terms here are filled in by the gateway from the listing, not by the driver."""

    model_config = ConfigDict(extra="forbid")

    spot_id: str = Field(min_length=1)
    host_id: str = Field(min_length=1)
    instant_book: bool = False
    hourly_rate_cents: int = Field(gt=0)
    ev_premium_cents_per_hour: int = Field(0, ge=0)
    will_use_ev_charging: bool = False
    start_at: datetime
    end_at: datetime
    payer_ref: str = Field(min_length=1)
    guest: GuestIdentity | None = None

    @model_validator(mode="after")
    def validate_ev(self) -> "BookingCreateRequest":
        if self.will_use_ev_charging and self.ev_premium_cents_per_hour <= 0:
            raise ValueError("EV charging requested but the spot has no EV premium")
        return self


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str | None = Field(None, max_length=255)


class ExtendRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    new_end_at: datetime


class ModifyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    new_start_at: datetime
    new_end_at: datetime


class OverstayActionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    action: OverstayAction


class BookingResponse(BaseModel):
    booking_id: str
    spot_id: str
    host_id: str
    renter_id: str | None
    is_guest: bool
    status: BookingStatus
    start_at: datetime
    end_at: datetime
    created_at: datetime
    departed_at: datetime | None
    instant_book: bool
    hourly_rate_cents: int
    total_hours: Decimal
    subtotal_cents: int
    platform_fee_cents: int
    ev_charging_fee_cents: int
    total_amount_cents: int
    extension_charges_cents: int
    original_total_amount_cents: int
    refund_amount_cents: int
    cancellation_reason: str | None
    overstay_detected_at: datetime | None
    overstay_grace_end: datetime | None
    overstay_action: OverstayAction | None
    overstay_charge_cents: int
    approval_deadline: datetime | None = None

    @classmethod
    def from_record(
        cls,
        record: BookingRecord,
        *,
        overstay_charge_cents: int | None = None,
        approval_deadline: datetime | None = None,
    ) -> "BookingResponse":
        return cls(
            booking_id=record.booking_id,
            spot_id=record.spot_id,
            host_id=record.host_id,
            renter_id=record.renter_id,
            is_guest=record.is_guest,
            status=record.status,
            start_at=record.start_at,
            end_at=record.end_at,
            created_at=record.created_at,
            departed_at=record.departed_at,
            instant_book=record.instant_book,
            hourly_rate_cents=record.hourly_rate_cents,
            total_hours=record.total_hours,
            subtotal_cents=record.subtotal_cents,
            platform_fee_cents=record.platform_fee_cents,
            ev_charging_fee_cents=record.ev_charging_fee_cents,
            total_amount_cents=record.total_amount_cents,
            extension_charges_cents=record.extension_charges_cents,
            original_total_amount_cents=record.original_total_amount_cents,
            refund_amount_cents=record.refund_amount_cents,
            cancellation_reason=record.cancellation_reason,
            overstay_detected_at=record.overstay_detected_at,
            overstay_grace_end=record.overstay_grace_end,
            overstay_action=record.overstay_action,
            overstay_charge_cents=(
                record.overstay_charge_cents if overstay_charge_cents is None else overstay_charge_cents
            ),
            approval_deadline=approval_deadline,
        )


class BookingEffectResponse(BaseModel):
    booking: BookingResponse
    effect: str
    amount_cents: int = 0
    challenge_ref: str | None = None
    attempt_id: str | None = None
    guest_token: str | None = None


class QuoteResponse(BaseModel):
    hours: Decimal
    driver_hourly_rate_cents: int
    subtotal_cents: int
    service_fee_cents: int
    ev_charging_fee_cents: int
    total_cents: int


class QuoteQuery(BaseModel):
    hourly_rate_cents: int = Field(gt=0)
    start_at: datetime
    end_at: datetime
    ev_premium_cents_per_hour: int = Field(0, ge=0)
    will_use_ev_charging: bool = False
