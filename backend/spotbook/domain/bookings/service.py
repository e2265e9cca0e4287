from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from opentelemetry.trace import Tracer

from spotbook.domain.bookings import cancellation, overstay
from spotbook.domain.bookings.overstay import OverstayAction
from spotbook.domain.bookings.schemas import (
    Actor,
    BookingRecord,
    BookingTerms,
    ChargeEntry,
    ExtensionAttemptRecord,
    as_utc,
)
from spotbook.domain.bookings.statuses import (
    BOOKING_TRANSITIONS,
    CANCELLATION_REASON_DECLINED,
    CANCELLATION_REASON_EXPIRED,
    CANCELLATION_REASON_HOST,
    ActorRole,
    BookingStatus,
    ChargeKind,
    ExtensionAttemptStatus,
)
from spotbook.domain.errors import (
    ApprovalWindowExpired,
    BookingNotFound,
    ConflictError,
    DomainError,
    ExtensionNotAuthorized,
    IllegalTransition,
    InvalidBookingParties,
    InvalidExtension,
    InvalidWindow,
    NotCancelable,
    PaymentAuthorizationFailed,
    PaymentCaptureFailed,
    PaymentRefundFailed,
)
from spotbook.domain.pricing.policy import (
    PricingRates,
    base_pricing,
    extension_cost,
    hours_between,
    modification_delta,
    quote_booking,
)
from spotbook.infra import notifications
from spotbook.infra.metrics import metrics
from spotbook.infra.notifications import NoopNotifier, Notifier
from spotbook.infra.payments import (
    INTENT_CANCELED,
    INTENT_SUCCEEDED,
    PENDING_STATUSES,
    PaymentGateway,
    PaymentGatewayError,
)
from spotbook.infra.stripe_idempotency import make_idempotency_key
from spotbook.infra.tracing import booking_tracer, payment_span, record_booking_event
from spotbook.settings import Settings, settings
from spotbook.shared.clock import Clock, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

HOURS_QUANTUM = Decimal("0.01")

EFFECT_CREATED = "created"
EFFECT_APPROVED = "approved"
EFFECT_DECLINED = "declined"
EFFECT_EXPIRED = "expired"
EFFECT_CANCELED = "canceled"
EFFECT_EXTENDED = "extended"
EFFECT_EXTENSION_AUTH_REQUIRED = "extension_authentication_required"
EFFECT_MODIFIED = "modified"
EFFECT_COMPLETED = "completed"
EFFECT_OVERSTAY_DETECTED = "overstay_detected"
EFFECT_OVERSTAY_ACTION_SET = "overstay_action_set"
EFFECT_TOW_CANCELED = "tow_canceled"
EFFECT_NOOP = "noop"


@dataclass(frozen=True)
class BookingEffect:
    booking: BookingRecord
    kind: str
    amount_cents: int = 0
    challenge_ref: str | None = None
    attempt_id: str | None = None


def assert_valid_booking_transition(current: BookingStatus, target: BookingStatus) -> None:
    allowed = BOOKING_TRANSITIONS.get(current, frozenset())
    if not allowed:
        raise IllegalTransition(detail=f"Booking is already in terminal status: {current.value}")
    if target not in allowed:
        raise IllegalTransition(detail=f"Cannot transition booking from {current.value} to {target.value}")


def _require_status(booking: BookingRecord, operation: str, *allowed: BookingStatus) -> None:
    if booking.status not in allowed:
        expected = ", ".join(status.value for status in allowed)
        raise IllegalTransition(
            detail=f"Cannot {operation} a booking that is {booking.status.value} (expected {expected})"
        )


def _payload_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


class BookingEngine:
    """Booking state machine.

    Every operation loads the booking, checks the transition against the
    current status and the policies, then writes through the store's
    conditional update. Operations that move money first write a claim marker
    (``pending_operation``) so that only one caller reaches the gateway, and
    commit the outcome against the claimed version afterwards. A gateway
    failure drops the claim and leaves the booking's business fields as they
    were.
    """

    def __init__(
        self,
        store,
        gateway: PaymentGateway,
        notifier: Notifier | None = None,
        *,
        clock: Clock = utc_now,
        app_settings: Settings | None = None,
        rates: PricingRates | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.notifier = notifier or NoopNotifier()
        self.clock = clock
        self.settings = app_settings or settings
        self.rates = rates or PricingRates.from_settings(self.settings)
        self.tracer = tracer or booking_tracer()

    # ---- read helpers ------------------------------------------------------

    def approval_deadline(self, booking: BookingRecord) -> datetime:
        return booking.created_at + timedelta(minutes=self.settings.approval_window_minutes)

    def current_overstay_charge(self, booking: BookingRecord, now: datetime | None = None) -> int:
        return overstay.accrued_charge(
            booking.overstay_action,
            booking.overstay_grace_end,
            now or self.clock(),
            rate_cents_per_hour=self.settings.overstay_rate_cents_per_hour,
        )

    async def get(self, booking_id: str) -> BookingRecord:
        booking = await self.store.get(booking_id)
        if booking is None:
            raise BookingNotFound(detail=f"Booking {booking_id} not found")
        return booking

    # ---- creation ----------------------------------------------------------

    async def create(self, terms: BookingTerms) -> BookingEffect:
        now = self.clock()
        if (terms.renter_id is None) == (terms.guest is None):
            raise InvalidBookingParties(detail="A booking needs exactly one of renter_id or guest details")
        if terms.end_at <= terms.start_at:
            raise InvalidWindow(detail="end_at must be after start_at")
        if terms.end_at <= now:
            raise InvalidWindow(detail="The requested window has already ended")

        hours = hours_between(terms.start_at, terms.end_at)
        quote = quote_booking(
            terms.hourly_rate_cents,
            hours,
            ev_premium_cents_per_hour=terms.ev_premium_cents_per_hour,
            will_use_ev_charging=terms.will_use_ev_charging,
            rates=self.rates,
        )
        booking_id = str(uuid.uuid4())
        intent_ref = await self._payment(
            "authorize",
            booking_id,
            lambda: self.gateway.authorize(
                quote.total_cents,
                terms.payer_ref,
                idempotency_key=self._key("booking_authorize", booking_id, quote.total_cents),
                metadata={"booking_id": booking_id, "spot_id": terms.spot_id},
            ),
            error=PaymentAuthorizationFailed,
            amount_cents=quote.total_cents,
        )

        captured_at = None
        if terms.instant_book:
            try:
                await self._payment(
                    "capture",
                    booking_id,
                    lambda: self.gateway.capture(
                        intent_ref, idempotency_key=self._key("booking_capture", booking_id, extra={"intent": intent_ref})
                    ),
                    error=PaymentCaptureFailed,
                    amount_cents=quote.total_cents,
                )
            except PaymentCaptureFailed:
                await self._release_quietly(booking_id, intent_ref)
                raise
            captured_at = now

        record = BookingRecord(
            booking_id=booking_id,
            spot_id=terms.spot_id,
            host_id=terms.host_id,
            renter_id=terms.renter_id,
            guest=terms.guest,
            start_at=terms.start_at,
            end_at=terms.end_at,
            created_at=now,
            instant_book=terms.instant_book,
            hourly_rate_cents=terms.hourly_rate_cents,
            total_hours=hours.quantize(HOURS_QUANTUM),
            subtotal_cents=quote.subtotal_cents,
            platform_fee_cents=quote.service_fee_cents,
            ev_charging_fee_cents=quote.ev_charging_fee_cents,
            will_use_ev_charging=terms.will_use_ev_charging,
            total_amount_cents=quote.total_cents,
            original_total_amount_cents=quote.total_cents,
            status=BookingStatus.active if terms.instant_book else BookingStatus.held,
            payer_ref=terms.payer_ref,
            payment_ref=intent_ref,
            captured_at=captured_at,
            charges=[
                ChargeEntry(
                    kind=ChargeKind.booking,
                    intent_ref=intent_ref,
                    amount_cents=quote.total_cents,
                    captured=terms.instant_book,
                    created_at=now,
                )
            ],
            updated_at=now,
        )
        try:
            booking = await self.store.create(record)
        except Exception:
            logger.exception("booking_persist_failed", extra={"extra": {"booking_id": booking_id}})
            if captured_at is not None:
                await self._refund_quietly(booking_id, intent_ref, quote.total_cents)
            else:
                await self._release_quietly(booking_id, intent_ref)
            raise

        self._record("created", booking, amount_cents=quote.total_cents, instant_book=terms.instant_book)
        if booking.status is BookingStatus.active:
            await self._notify([booking.host_id, booking.recipient_id], notifications.BOOKING_CONFIRMED, booking)
        else:
            await self._notify(
                [booking.host_id],
                notifications.BOOKING_REQUESTED,
                booking,
                approval_deadline=self.approval_deadline(booking),
            )
        return BookingEffect(booking=booking, kind=EFFECT_CREATED, amount_cents=quote.total_cents)

    # ---- host approval -----------------------------------------------------

    async def approve(self, booking_id: str) -> BookingEffect:
        now = self.clock()
        booking = await self.get(booking_id)
        _require_status(booking, "approve", BookingStatus.held)
        assert_valid_booking_transition(booking.status, BookingStatus.active)
        if now > self.approval_deadline(booking):
            raise ApprovalWindowExpired(detail="The approval window for this booking has elapsed")

        claimed = await self._claim(booking, "approve", now)
        await self._with_claim(
            claimed,
            lambda: self._payment(
                "capture",
                booking_id,
                lambda: self.gateway.capture(
                    booking.payment_ref,
                    idempotency_key=self._key("booking_capture", booking_id, extra={"intent": booking.payment_ref}),
                ),
                error=PaymentCaptureFailed,
                amount_cents=booking.total_amount_cents,
            ),
        )

        def apply(record: BookingRecord) -> None:
            record.status = BookingStatus.active
            record.captured_at = now
            for entry in record.charges:
                if entry.intent_ref == record.payment_ref:
                    entry.captured = True

        updated = await self._commit(claimed, apply, now)
        self._record("approved", updated)
        await self._notify([updated.recipient_id], notifications.BOOKING_CONFIRMED, updated)
        return BookingEffect(booking=updated, kind=EFFECT_APPROVED, amount_cents=updated.total_amount_cents)

    async def decline(self, booking_id: str) -> BookingEffect:
        now = self.clock()
        booking = await self.get(booking_id)
        _require_status(booking, "decline", BookingStatus.held)
        assert_valid_booking_transition(booking.status, BookingStatus.declined)

        claimed = await self._claim(booking, "decline", now)
        await self._with_claim(claimed, lambda: self._release_authorization(booking))

        def apply(record: BookingRecord) -> None:
            record.status = BookingStatus.declined
            record.cancellation_reason = CANCELLATION_REASON_DECLINED
            record.canceled_by = ActorRole.host
            record.refund_amount_cents = 0

        updated = await self._commit(claimed, apply, now)
        self._record("declined", updated)
        await self._notify([updated.recipient_id], notifications.BOOKING_DECLINED, updated)
        return BookingEffect(booking=updated, kind=EFFECT_DECLINED)

    async def expire(self, booking_id: str) -> BookingEffect:
        """Cancel a held booking whose approval window elapsed.

        Safe to call any number of times from any number of workers: a booking
        that already left ``held``, or that another caller has claimed, is
        returned unchanged without touching the gateway.
        """
        now = self.clock()
        booking = await self.get(booking_id)
        if booking.status is not BookingStatus.held:
            return self._expire_skipped(booking, "already_transitioned")
        if now <= self.approval_deadline(booking):
            raise IllegalTransition(detail="The approval window for this booking is still open")

        try:
            claimed = await self._claim(booking, "expire", now)
        except ConflictError:
            return self._expire_skipped(await self.get(booking_id), "claimed_elsewhere")

        await self._with_claim(claimed, lambda: self._release_authorization(booking))

        def apply(record: BookingRecord) -> None:
            record.status = BookingStatus.canceled
            record.cancellation_reason = CANCELLATION_REASON_EXPIRED
            record.canceled_by = ActorRole.system
            record.refund_amount_cents = 0

        try:
            updated = await self._commit(claimed, apply, now)
        except ConflictError:
            return self._expire_skipped(await self.get(booking_id), "commit_conflict")
        self._record("expired", updated)
        await self._notify([updated.recipient_id, updated.host_id], notifications.BOOKING_EXPIRED, updated)
        return BookingEffect(booking=updated, kind=EFFECT_EXPIRED)

    def _expire_skipped(self, booking: BookingRecord, reason: str) -> BookingEffect:
        logger.info(
            "booking_expire_skipped",
            extra={"extra": {"booking_id": booking.booking_id, "status": booking.status.value, "reason": reason}},
        )
        return BookingEffect(booking=booking, kind=EFFECT_NOOP)

    # ---- cancellation ------------------------------------------------------

    async def cancel(self, booking_id: str, actor: Actor, reason: str | None = None) -> BookingEffect:
        now = self.clock()
        booking = await self.get(booking_id)
        if booking.status not in (BookingStatus.held, BookingStatus.active):
            raise NotCancelable(detail=f"A {booking.status.value} booking cannot be canceled")
        if now >= booking.end_at:
            raise NotCancelable(detail="The booking has already ended")
        assert_valid_booking_transition(booking.status, BookingStatus.canceled)

        if actor.role in (ActorRole.host, ActorRole.system):
            refundable = True
            cancellation_reason = reason or CANCELLATION_REASON_HOST
        else:
            decision = cancellation.decide(
                booking.created_at,
                booking.start_at,
                now,
                grace=timedelta(minutes=self.settings.cancellation_grace_minutes),
                cutoff=timedelta(minutes=self.settings.cancellation_full_refund_cutoff_minutes),
            )
            refundable = decision.refundable
            cancellation_reason = reason or decision.reason

        claimed = await self._claim(booking, "cancel", now)
        refund_cents = 0
        applied: list[tuple[int, int]] = []
        if booking.status is BookingStatus.held:
            await self._with_claim(claimed, lambda: self._release_authorization(booking))
        elif refundable:
            refund_cents = min(booking.total_amount_cents, booking.refundable_cents)
            applied = await self._refund_or_settle(claimed, refund_cents, "cancel", now)

        def apply(record: BookingRecord) -> None:
            _apply_refunds(record, applied)
            record.status = BookingStatus.canceled
            record.refund_amount_cents = refund_cents
            record.cancellation_reason = cancellation_reason
            record.canceled_by = actor.role

        updated = await self._commit(claimed, apply, now)
        await self._abandon_open_attempts(updated, now)
        self._record(
            "canceled", updated, amount_cents=refund_cents, actor=actor.role.value, refundable=refundable
        )
        await self._notify(
            [updated.recipient_id, updated.host_id],
            notifications.BOOKING_CANCELED,
            updated,
            refund_amount_cents=refund_cents,
            canceled_by=actor.role.value,
        )
        return BookingEffect(booking=updated, kind=EFFECT_CANCELED, amount_cents=refund_cents)

    # ---- extensions --------------------------------------------------------

    async def extend(self, booking_id: str, new_end_at: datetime) -> BookingEffect:
        now = self.clock()
        new_end_at = as_utc(new_end_at)
        booking = await self.get(booking_id)
        _require_status(booking, "extend", BookingStatus.active)
        if now >= booking.end_at:
            raise InvalidExtension(detail="Bookings can only be extended before they end")
        extension_hours = hours_between(booking.end_at, new_end_at)
        if extension_hours < self.settings.extension_min_hours or extension_hours > self.settings.extension_max_hours:
            raise InvalidExtension(
                detail=(
                    f"Extensions must be between {self.settings.extension_min_hours} and "
                    f"{self.settings.extension_max_hours} hours"
                )
            )
        cost = extension_cost(booking.hourly_rate_cents, extension_hours, self.rates).driver_total_cents

        claimed = await self._claim(booking, "extend", now)
        result = await self._with_claim(
            claimed,
            lambda: self._payment(
                "charge",
                booking_id,
                lambda: self.gateway.charge_immediate(
                    cost,
                    booking.payer_ref,
                    idempotency_key=self._key(
                        "booking_extension",
                        booking_id,
                        cost,
                        extra={"from": booking.end_at, "to": new_end_at},
                    ),
                    metadata={"booking_id": booking_id, "kind": ChargeKind.extension.value},
                ),
                error=PaymentCaptureFailed,
                amount_cents=cost,
            ),
        )

        if result.requires_action:
            await self._release_claim(claimed, now)
            attempt = await self.store.save_attempt(
                ExtensionAttemptRecord(
                    booking_id=booking_id,
                    previous_end_at=booking.end_at,
                    new_end_at=new_end_at,
                    extension_hours=extension_hours.quantize(HOURS_QUANTUM),
                    amount_cents=cost,
                    intent_ref=result.intent_ref,
                    challenge_ref=result.challenge_ref,
                    created_at=now,
                )
            )
            logger.info(
                "extension_authentication_required",
                extra={"extra": {"booking_id": booking_id, "attempt_id": attempt.attempt_id, "amount_cents": cost}},
            )
            await self._notify(
                [booking.recipient_id],
                notifications.EXTENSION_AUTHENTICATION_REQUIRED,
                booking,
                attempt_id=attempt.attempt_id,
                amount_cents=cost,
            )
            current = await self.get(booking_id)
            return BookingEffect(
                booking=current,
                kind=EFFECT_EXTENSION_AUTH_REQUIRED,
                amount_cents=cost,
                challenge_ref=result.challenge_ref,
                attempt_id=attempt.attempt_id,
            )

        updated = await self._commit(
            claimed, lambda record: _apply_extension(record, new_end_at, cost, result.intent_ref, now), now
        )
        self._record("extended", updated, amount_cents=cost)
        await self._notify(
            [updated.recipient_id, updated.host_id], notifications.BOOKING_EXTENDED, updated, amount_cents=cost
        )
        return BookingEffect(booking=updated, kind=EFFECT_EXTENDED, amount_cents=cost)

    async def finalize_extension(self, booking_id: str, attempt_id: str) -> BookingEffect:
        """Apply an extension whose payment needed customer authentication.

        The extension lands only once the payment intent reports
        ``succeeded``. An intent that can no longer succeed closes the attempt
        as failed; an attempt for a booking that moved on is refunded or
        released and closed as canceled.
        """
        now = self.clock()
        attempt = await self.store.get_attempt(attempt_id)
        if attempt is None or attempt.booking_id != booking_id:
            raise ExtensionNotAuthorized(detail="No pending extension matches this booking")
        if attempt.status is not ExtensionAttemptStatus.requires_action:
            raise ExtensionNotAuthorized(detail=f"Extension attempt is already {attempt.status.value}")

        booking = await self.get(booking_id)
        if any(entry.intent_ref == attempt.intent_ref for entry in booking.charges):
            raise ExtensionNotAuthorized(detail="Extension attempt was already applied")
        if booking.status is not BookingStatus.active:
            await self._abandon_attempt(booking_id, attempt, now)
            _require_status(booking, "extend", BookingStatus.active)
        if now >= booking.end_at:
            await self._abandon_attempt(booking_id, attempt, now)
            raise InvalidExtension(detail="Bookings can only be extended before they end")

        intent_status = await self._payment(
            "retrieve",
            booking_id,
            lambda: self.gateway.intent_status(attempt.intent_ref),
            error=PaymentCaptureFailed,
        )
        if intent_status in PENDING_STATUSES:
            raise PaymentCaptureFailed(detail="The extension payment has not been authenticated yet")
        if intent_status != INTENT_SUCCEEDED:
            await self._abandon_attempt(
                booking_id, attempt, now, intent_status=intent_status, outcome=ExtensionAttemptStatus.failed
            )
            raise PaymentCaptureFailed(detail=f"The extension payment ended in status {intent_status}")

        if booking.end_at != attempt.previous_end_at:
            await self._abandon_attempt(booking_id, attempt, now, intent_status=intent_status)
            raise ConflictError(detail="The booking changed after this extension was requested")

        def apply(record: BookingRecord) -> None:
            if record.end_at != attempt.previous_end_at or any(
                entry.intent_ref == attempt.intent_ref for entry in record.charges
            ):
                raise ConflictError(detail="The booking changed after this extension was requested")
            if record.pending_operation:
                raise ConflictError(detail=f"Booking has {record.pending_operation} in progress")
            _apply_extension(record, attempt.new_end_at, attempt.amount_cents, attempt.intent_ref, now)
            record.updated_at = now

        updated = await self.store.conditional_update(
            booking_id, BookingStatus.active, apply, expected_version=booking.version
        )
        attempt.status = ExtensionAttemptStatus.succeeded
        attempt.finalized_at = now
        await self.store.update_attempt(attempt)

        self._record("extended", updated, amount_cents=attempt.amount_cents, attempt_id=attempt_id)
        await self._notify(
            [updated.recipient_id, updated.host_id],
            notifications.BOOKING_EXTENDED,
            updated,
            amount_cents=attempt.amount_cents,
        )
        return BookingEffect(
            booking=updated, kind=EFFECT_EXTENDED, amount_cents=attempt.amount_cents, attempt_id=attempt_id
        )

    async def _abandon_attempt(
        self,
        booking_id: str,
        attempt: ExtensionAttemptRecord,
        now: datetime,
        *,
        intent_status: str | None = None,
        outcome: ExtensionAttemptStatus = ExtensionAttemptStatus.canceled,
    ) -> bool:
        """Hand back whatever an unapplied extension payment holds, then close the attempt.

        Returns ``False`` and leaves the attempt open when the gateway could
        not be reached, so a later call can finish the job.
        """
        try:
            if intent_status is None:
                intent_status = await self._payment(
                    "retrieve",
                    booking_id,
                    lambda: self.gateway.intent_status(attempt.intent_ref),
                    error=PaymentRefundFailed,
                )
            if intent_status == INTENT_SUCCEEDED:
                await self._payment(
                    "refund",
                    booking_id,
                    lambda: self.gateway.refund(
                        attempt.intent_ref,
                        attempt.amount_cents,
                        idempotency_key=self._key(
                            "extension_attempt_refund",
                            booking_id,
                            attempt.amount_cents,
                            extra={"attempt": attempt.attempt_id},
                        ),
                    ),
                    error=PaymentRefundFailed,
                    amount_cents=attempt.amount_cents,
                )
            elif intent_status != INTENT_CANCELED:
                await self._payment(
                    "release",
                    booking_id,
                    lambda: self.gateway.release(
                        attempt.intent_ref,
                        idempotency_key=self._key("booking_release", booking_id, extra={"intent": attempt.intent_ref}),
                    ),
                    error=PaymentRefundFailed,
                )
        except PaymentRefundFailed:
            logger.error(
                "extension_attempt_abandon_deferred",
                extra={"extra": {"booking_id": booking_id, "attempt_id": attempt.attempt_id}},
            )
            return False

        attempt.status = outcome
        attempt.finalized_at = now
        await self.store.update_attempt(attempt)
        logger.warning(
            "extension_attempt_closed",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "attempt_id": attempt.attempt_id,
                    "outcome": outcome.value,
                    "intent_status": intent_status,
                }
            },
        )
        return True

    async def _abandon_open_attempts(self, booking: BookingRecord, now: datetime) -> None:
        applied = {entry.intent_ref for entry in booking.charges}
        open_attempts = await self.store.list_attempts(
            booking.booking_id, status=ExtensionAttemptStatus.requires_action
        )
        for attempt in open_attempts:
            if attempt.intent_ref in applied:
                # Finalized concurrently; the ledger already carries it.
                attempt.status = ExtensionAttemptStatus.succeeded
                attempt.finalized_at = now
                await self.store.update_attempt(attempt)
                continue
            await self._abandon_attempt(booking.booking_id, attempt, now)

    # ---- modification ------------------------------------------------------

    async def modify(self, booking_id: str, new_start_at: datetime, new_end_at: datetime) -> BookingEffect:
        now = self.clock()
        new_start_at, new_end_at = as_utc(new_start_at), as_utc(new_end_at)
        booking = await self.get(booking_id)
        _require_status(booking, "modify", BookingStatus.held, BookingStatus.active)
        if now >= booking.start_at:
            raise IllegalTransition(detail="Bookings can only be modified before they start")
        if new_end_at <= new_start_at:
            raise InvalidWindow(detail="new_end_at must be after new_start_at")
        if new_start_at < now:
            raise InvalidWindow(detail="new_start_at must not be in the past")

        new_hours = hours_between(new_start_at, new_end_at)
        quote = modification_delta(
            booking.hourly_rate_cents,
            booking.total_hours,
            new_hours,
            booking.total_amount_cents,
            ev_charging_fee_cents=booking.ev_charging_fee_cents,
            rates=self.rates,
        )
        pricing = base_pricing(booking.hourly_rate_cents, new_hours, self.rates)
        change = {"from": [booking.start_at, booking.end_at], "to": [new_start_at, new_end_at]}

        claimed = await self._claim(booking, "modify", now)
        new_intent: str | None = None
        new_charge: str | None = None
        applied: list[tuple[int, int]] = []

        if booking.status is BookingStatus.held:
            new_intent = await self._reauthorize(claimed, booking, quote.new_total_cents, change)
        elif quote.is_charge:
            result = await self._with_claim(
                claimed,
                lambda: self._payment(
                    "charge",
                    booking_id,
                    lambda: self.gateway.charge_immediate(
                        quote.delta_cents,
                        booking.payer_ref,
                        idempotency_key=self._key("booking_modification", booking_id, quote.delta_cents, extra=change),
                        metadata={"booking_id": booking_id, "kind": ChargeKind.modification.value},
                    ),
                    error=PaymentCaptureFailed,
                    amount_cents=quote.delta_cents,
                ),
            )
            if result.requires_action:
                await self._release_claim(claimed, now)
                raise PaymentCaptureFailed(detail="The modification charge requires customer authentication")
            new_charge = result.intent_ref
        elif quote.is_refund:
            applied = await self._refund_or_settle(claimed, -quote.delta_cents, "modify", now)

        def apply(record: BookingRecord) -> None:
            record.start_at = new_start_at
            record.end_at = new_end_at
            record.total_hours = new_hours.quantize(HOURS_QUANTUM)
            record.subtotal_cents = pricing.driver_subtotal_cents
            record.platform_fee_cents = pricing.service_fee_cents
            record.total_amount_cents = quote.new_total_cents
            record.extension_charges_cents = 0
            _apply_refunds(record, applied)
            if new_intent is not None:
                record.payment_ref = new_intent
                record.charges = [
                    ChargeEntry(
                        kind=ChargeKind.booking,
                        intent_ref=new_intent,
                        amount_cents=quote.new_total_cents,
                        captured=False,
                        created_at=now,
                    )
                ]
            if new_charge is not None:
                record.charges.append(
                    ChargeEntry(
                        kind=ChargeKind.modification,
                        intent_ref=new_charge,
                        amount_cents=quote.delta_cents,
                        created_at=now,
                    )
                )

        updated = await self._commit(claimed, apply, now)
        self._record("modified", updated, amount_cents=quote.delta_cents)
        await self._notify(
            [updated.recipient_id, updated.host_id],
            notifications.BOOKING_MODIFIED,
            updated,
            delta_cents=quote.delta_cents,
        )
        return BookingEffect(booking=updated, kind=EFFECT_MODIFIED, amount_cents=quote.delta_cents)

    async def _reauthorize(
        self, claimed: BookingRecord, booking: BookingRecord, amount_cents: int, change: dict
    ) -> str:
        new_intent = await self._with_claim(
            claimed,
            lambda: self._payment(
                "authorize",
                booking.booking_id,
                lambda: self.gateway.authorize(
                    amount_cents,
                    booking.payer_ref,
                    idempotency_key=self._key("booking_reauthorize", booking.booking_id, amount_cents, extra=change),
                    metadata={"booking_id": booking.booking_id},
                ),
                error=PaymentAuthorizationFailed,
                amount_cents=amount_cents,
            ),
        )
        try:
            await self._release_authorization(booking)
        except PaymentRefundFailed:
            await self._release_quietly(booking.booking_id, new_intent)
            await self._release_claim(claimed, self.clock())
            raise
        return new_intent

    # ---- departure and overstay -------------------------------------------

    async def confirm_departure(self, booking_id: str) -> BookingEffect:
        now = self.clock()
        booking = await self.get(booking_id)
        _require_status(booking, "confirm departure for", BookingStatus.active)
        return await self._complete(booking, now, departed=True)

    async def auto_complete(self, booking_id: str) -> BookingEffect:
        """Complete an active booking that nobody checked out.

        Clean bookings close ``auto_complete_after_minutes`` after their end;
        bookings accruing overstay charges close
        ``overstay_auto_complete_after_minutes`` after their end, settling the
        accrued charge. Overstays the host never decided on, and tow requests,
        close without a charge ``overstay_unresolved_complete_after_minutes``
        after the end.
        """
        now = self.clock()
        booking = await self.get(booking_id)
        _require_status(booking, "auto-complete", BookingStatus.active)
        if booking.overstay_detected_at is None:
            due_at = booking.end_at + timedelta(minutes=self.settings.auto_complete_after_minutes)
        elif booking.overstay_action is OverstayAction.charging:
            due_at = booking.end_at + timedelta(minutes=self.settings.overstay_auto_complete_after_minutes)
        else:
            due_at = booking.end_at + timedelta(minutes=self.settings.overstay_unresolved_complete_after_minutes)
        if now <= due_at:
            raise IllegalTransition(detail="The booking is not due for automatic completion yet")
        return await self._complete(booking, now, departed=False)

    async def _complete(self, booking: BookingRecord, now: datetime, *, departed: bool) -> BookingEffect:
        assert_valid_booking_transition(booking.status, BookingStatus.completed)
        accrual = self.current_overstay_charge(booking, now)
        claimed = await self._claim(booking, "complete", now)
        overstay_intent: str | None = None
        if accrual > 0:
            result = await self._with_claim(
                claimed,
                lambda: self._payment(
                    "charge",
                    booking.booking_id,
                    lambda: self.gateway.charge_immediate(
                        accrual,
                        booking.payer_ref,
                        idempotency_key=self._key(
                            "overstay_settlement",
                            booking.booking_id,
                            accrual,
                            extra={"grace_end": booking.overstay_grace_end},
                        ),
                        metadata={"booking_id": booking.booking_id, "kind": ChargeKind.overstay.value},
                    ),
                    error=PaymentCaptureFailed,
                    amount_cents=accrual,
                ),
            )
            if result.requires_action:
                await self._release_claim(claimed, now)
                raise PaymentCaptureFailed(detail="The overstay charge requires customer authentication")
            overstay_intent = result.intent_ref

        def apply(record: BookingRecord) -> None:
            if overstay_intent is not None:
                record.overstay_charge_cents += accrual
                record.charges.append(
                    ChargeEntry(
                        kind=ChargeKind.overstay,
                        intent_ref=overstay_intent,
                        amount_cents=accrual,
                        created_at=now,
                    )
                )
            record.overstay_detected_at = None
            record.overstay_grace_end = None
            record.overstay_action = None
            if departed:
                record.departed_at = now
            record.status = BookingStatus.completed

        updated = await self._commit(claimed, apply, now)
        await self._abandon_open_attempts(updated, now)
        self._record("completed", updated, amount_cents=accrual, departed=departed)
        await self._notify(
            [updated.recipient_id, updated.host_id],
            notifications.BOOKING_COMPLETED,
            updated,
            overstay_charge_cents=updated.overstay_charge_cents,
        )
        return BookingEffect(booking=updated, kind=EFFECT_COMPLETED, amount_cents=accrual)

    async def detect_overstay(self, booking_id: str) -> BookingEffect:
        now = self.clock()
        booking = await self.get(booking_id)
        _require_status(booking, "flag an overstay on", BookingStatus.active)
        if now <= booking.end_at:
            raise IllegalTransition(detail="The booking has not ended yet")
        if booking.overstay_detected_at is not None:
            return BookingEffect(booking=booking, kind=EFFECT_NOOP)

        grace_end = now + timedelta(minutes=self.settings.overstay_grace_minutes)

        def apply(record: BookingRecord) -> None:
            self._ensure_unclaimed(record, now)
            record.overstay_detected_at = now
            record.overstay_grace_end = grace_end
            record.updated_at = now

        try:
            updated = await self.store.conditional_update(
                booking_id, BookingStatus.active, apply, expected_version=booking.version
            )
        except ConflictError:
            current = await self.get(booking_id)
            if current.overstay_detected_at is not None:
                return BookingEffect(booking=current, kind=EFFECT_NOOP)
            raise
        self._record("overstay_detected", updated, grace_end=grace_end.isoformat())
        await self._notify(
            [updated.recipient_id, updated.host_id],
            notifications.OVERSTAY_DETECTED,
            updated,
            grace_end=grace_end,
            overstay_rate_cents_per_hour=self.settings.overstay_rate_cents_per_hour,
        )
        return BookingEffect(booking=updated, kind=EFFECT_OVERSTAY_DETECTED)

    async def set_overstay_action(self, booking_id: str, action: OverstayAction | str) -> BookingEffect:
        now = self.clock()
        chosen = OverstayAction(action)
        booking = await self.get(booking_id)
        _require_status(booking, "act on an overstay for", BookingStatus.active)
        if booking.overstay_detected_at is None or booking.overstay_grace_end is None:
            raise IllegalTransition(detail="No overstay has been detected for this booking")
        if overstay.phase(booking.end_at, now, grace_end=booking.overstay_grace_end) is not overstay.OverstayPhase.actionable:
            raise IllegalTransition(detail="The overstay grace period has not ended yet")
        if booking.overstay_action is not None:
            raise IllegalTransition(detail=f"Overstay action is already {booking.overstay_action.value}")

        def apply(record: BookingRecord) -> None:
            self._ensure_unclaimed(record, now)
            if record.overstay_action is not None:
                raise ConflictError(detail=f"Overstay action is already {record.overstay_action.value}")
            record.overstay_action = chosen
            record.updated_at = now

        updated = await self.store.conditional_update(
            booking_id, BookingStatus.active, apply, expected_version=booking.version
        )
        self._record("overstay_action_set", updated, action=chosen.value)
        if chosen is OverstayAction.charging:
            await self._notify(
                [updated.recipient_id],
                notifications.OVERSTAY_CHARGING_STARTED,
                updated,
                overstay_rate_cents_per_hour=self.settings.overstay_rate_cents_per_hour,
                charging_from=updated.overstay_grace_end,
            )
        else:
            await self._notify(
                [updated.host_id, updated.recipient_id],
                notifications.OVERSTAY_TOW_REQUESTED,
                updated,
                spot_id=updated.spot_id,
            )
        return BookingEffect(booking=updated, kind=EFFECT_OVERSTAY_ACTION_SET)

    async def cancel_tow_request(self, booking_id: str) -> BookingEffect:
        now = self.clock()
        booking = await self.get(booking_id)
        _require_status(booking, "cancel a tow request for", BookingStatus.active)
        if booking.overstay_action is not OverstayAction.towing:
            raise IllegalTransition(detail="No tow request is active for this booking")

        def apply(record: BookingRecord) -> None:
            self._ensure_unclaimed(record, now)
            if record.overstay_action is not OverstayAction.towing:
                raise ConflictError(detail="The tow request changed concurrently")
            record.overstay_action = None
            record.updated_at = now

        updated = await self.store.conditional_update(
            booking_id, BookingStatus.active, apply, expected_version=booking.version
        )
        self._record("tow_canceled", updated)
        await self._notify([updated.host_id, updated.recipient_id], notifications.OVERSTAY_TOW_CANCELED, updated)
        return BookingEffect(booking=updated, kind=EFFECT_TOW_CANCELED)

    # ---- reminders and notices ---------------------------------------------

    async def send_approval_reminder(self, booking_id: str) -> bool:
        now = self.clock()
        booking = await self.get(booking_id)
        if booking.status is not BookingStatus.held or booking.approval_reminder_sent_at is not None:
            return False
        if now > self.approval_deadline(booking):
            return False

        def mark(record: BookingRecord) -> None:
            if record.approval_reminder_sent_at is not None:
                raise ConflictError(detail="Reminder already sent")
            record.approval_reminder_sent_at = now

        updated = await self._mark_notice(booking, mark, now)
        if updated is None:
            return False
        await self._notify(
            [updated.host_id],
            notifications.BOOKING_APPROVAL_REMINDER,
            updated,
            approval_deadline=self.approval_deadline(updated),
        )
        return True

    async def send_ending_soon_warning(self, booking_id: str) -> bool:
        """Warn the driver once that the booking ends within the warning window."""
        now = self.clock()
        booking = await self.get(booking_id)
        window = timedelta(minutes=self.settings.ending_soon_warning_minutes)
        if booking.status is not BookingStatus.active or booking.ending_soon_notified_at is not None:
            return False
        if not now < booking.end_at <= now + window:
            return False

        def mark(record: BookingRecord) -> None:
            if record.ending_soon_notified_at is not None:
                raise ConflictError(detail="Ending soon warning already sent")
            record.ending_soon_notified_at = now

        updated = await self._mark_notice(booking, mark, now)
        if updated is None:
            return False
        await self._notify([updated.recipient_id], notifications.BOOKING_ENDING_SOON, updated)
        return True

    async def send_grace_ended_notices(self, booking_id: str) -> bool:
        """Prompt the host for a decision and warn the driver once the grace period is over."""
        now = self.clock()
        booking = await self.get(booking_id)
        if (
            booking.status is not BookingStatus.active
            or booking.overstay_grace_end is None
            or booking.overstay_action is not None
            or booking.grace_ended_notified_at is not None
            or now < booking.overstay_grace_end
        ):
            return False

        def mark(record: BookingRecord) -> None:
            if record.grace_ended_notified_at is not None or record.overstay_action is not None:
                raise ConflictError(detail="Grace period notices no longer apply")
            record.grace_ended_notified_at = now

        updated = await self._mark_notice(booking, mark, now)
        if updated is None:
            return False
        await self._notify([updated.host_id], notifications.OVERSTAY_ACTION_NEEDED, updated, spot_id=updated.spot_id)
        await self._notify(
            [updated.recipient_id],
            notifications.OVERSTAY_GRACE_ENDED,
            updated,
            overstay_rate_cents_per_hour=self.settings.overstay_rate_cents_per_hour,
        )
        return True

    async def send_overstay_charge_update(self, booking_id: str) -> bool:
        """Tell the driver each time the running overstay charge passes another step."""
        now = self.clock()
        booking = await self.get(booking_id)
        step = self.settings.overstay_charge_notice_step_cents
        if booking.status is not BookingStatus.active or booking.overstay_action is not OverstayAction.charging:
            return False
        accrual = self.current_overstay_charge(booking, now)
        if step <= 0 or accrual // step <= booking.overstay_charge_notified_cents // step:
            return False
        notified_cents = accrual - accrual % step

        def mark(record: BookingRecord) -> None:
            if record.overstay_charge_notified_cents != booking.overstay_charge_notified_cents:
                raise ConflictError(detail="Charge update already sent")
            record.overstay_charge_notified_cents = notified_cents

        updated = await self._mark_notice(booking, mark, now)
        if updated is None:
            return False
        await self._notify(
            [updated.recipient_id],
            notifications.OVERSTAY_CHARGE_UPDATE,
            updated,
            overstay_charge_cents=accrual,
        )
        return True

    async def _mark_notice(
        self, booking: BookingRecord, mark: Callable[[BookingRecord], None], now: datetime
    ) -> BookingRecord | None:
        def apply(record: BookingRecord) -> None:
            self._ensure_unclaimed(record, now)
            mark(record)

        try:
            return await self.store.conditional_update(
                booking.booking_id, booking.status, apply, expected_version=booking.version
            )
        except ConflictError:
            return None

    # ---- claim / commit ----------------------------------------------------

    def _ensure_unclaimed(self, record: BookingRecord, now: datetime) -> None:
        # A write in the middle of a money movement would bump the version the
        # claimer commits against.
        ttl = timedelta(seconds=self.settings.operation_claim_ttl_seconds)
        if (
            record.pending_operation
            and record.pending_operation_at is not None
            and now - record.pending_operation_at < ttl
        ):
            raise ConflictError(detail=f"Booking has {record.pending_operation} in progress")

    async def _claim(self, booking: BookingRecord, operation: str, now: datetime) -> BookingRecord:
        def mark(record: BookingRecord) -> None:
            self._ensure_unclaimed(record, now)
            record.pending_operation = operation
            record.pending_operation_at = now

        return await self.store.conditional_update(
            booking.booking_id, booking.status, mark, expected_version=booking.version
        )

    async def _commit(
        self, claimed: BookingRecord, apply: Callable[[BookingRecord], None], now: datetime
    ) -> BookingRecord:
        def finish(record: BookingRecord) -> None:
            apply(record)
            record.pending_operation = None
            record.pending_operation_at = None
            record.updated_at = now

        return await self.store.conditional_update(
            claimed.booking_id, claimed.status, finish, expected_version=claimed.version
        )

    async def _release_claim(self, claimed: BookingRecord, now: datetime) -> None:
        def clear(record: BookingRecord) -> None:
            record.pending_operation = None
            record.pending_operation_at = None
            record.updated_at = now

        try:
            await self.store.conditional_update(
                claimed.booking_id, claimed.status, clear, expected_version=claimed.version
            )
        except ConflictError:
            logger.warning(
                "booking_claim_release_conflict",
                extra={"extra": {"booking_id": claimed.booking_id, "operation": claimed.pending_operation}},
            )

    async def _with_claim(self, claimed: BookingRecord, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except Exception:
            await self._release_claim(claimed, self.clock())
            raise

    # ---- payments ----------------------------------------------------------

    def _key(
        self, purpose: str, booking_id: str, amount_cents: int | None = None, *, extra: dict | None = None
    ) -> str:
        return make_idempotency_key(
            purpose,
            booking_id=booking_id,
            amount_cents=amount_cents,
            currency=self.settings.pricing_currency,
            extra=extra,
        )

    async def _payment(
        self,
        operation: str,
        booking_id: str,
        call: Callable[[], Awaitable[T]],
        *,
        error: type[DomainError],
        amount_cents: int = 0,
    ) -> T:
        with payment_span(
            self.tracer, operation, booking_id, amount_cents=amount_cents, currency=self.settings.pricing_currency
        ):
            try:
                result = await call()
            except PaymentGatewayError as exc:
                metrics.record_payment_operation(operation, "failure")
                logger.warning(
                    "payment_operation_failed",
                    extra={
                        "extra": {
                            "booking_id": booking_id,
                            "operation": operation,
                            "amount_cents": amount_cents,
                            "code": exc.code,
                        }
                    },
                )
                raise error(
                    detail=f"Payment {operation} failed: {exc}",
                    errors=[{"code": exc.code}] if exc.code else None,
                ) from exc
        metrics.record_payment_operation(operation, "success", amount_cents)
        return result

    async def _release_authorization(self, booking: BookingRecord) -> None:
        await self._payment(
            "release",
            booking.booking_id,
            lambda: self.gateway.release(
                booking.payment_ref,
                idempotency_key=self._key("booking_release", booking.booking_id, extra={"intent": booking.payment_ref}),
            ),
            error=PaymentRefundFailed,
        )

    async def _release_quietly(self, booking_id: str, intent_ref: str) -> None:
        try:
            await self._payment(
                "release",
                booking_id,
                lambda: self.gateway.release(
                    intent_ref, idempotency_key=self._key("booking_release", booking_id, extra={"intent": intent_ref})
                ),
                error=PaymentRefundFailed,
            )
        except PaymentRefundFailed:
            logger.error("authorization_release_failed", extra={"extra": {"booking_id": booking_id}})

    async def _refund_quietly(self, booking_id: str, intent_ref: str, amount_cents: int) -> None:
        try:
            await self._payment(
                "refund",
                booking_id,
                lambda: self.gateway.refund(
                    intent_ref,
                    amount_cents,
                    idempotency_key=self._key(
                        "compensating_refund", booking_id, amount_cents, extra={"intent": intent_ref}
                    ),
                ),
                error=PaymentRefundFailed,
                amount_cents=amount_cents,
            )
        except PaymentRefundFailed:
            logger.error(
                "compensating_refund_failed",
                extra={"extra": {"booking_id": booking_id, "amount_cents": amount_cents}},
            )

    async def _refund_or_settle(
        self, claimed: BookingRecord, amount_cents: int, purpose: str, now: datetime
    ) -> list[tuple[int, int]]:
        """Refund ``amount_cents`` across captured charges, newest first.

        Returns ``(charge index, cents)`` pairs for the caller's commit. When a
        refund fails part way, the refunds that did go through are written to
        the ledger before the error is raised so a retry only refunds the rest.
        """
        applied: list[tuple[int, int]] = []
        remaining = amount_cents
        for index in range(len(claimed.charges) - 1, -1, -1):
            if remaining <= 0:
                break
            entry = claimed.charges[index]
            portion = min(remaining, entry.refundable_cents)
            if portion <= 0:
                continue
            try:
                await self._payment(
                    "refund",
                    claimed.booking_id,
                    lambda: self.gateway.refund(
                        entry.intent_ref,
                        portion,
                        idempotency_key=self._key(
                            f"{purpose}_refund",
                            claimed.booking_id,
                            portion,
                            extra={"intent": entry.intent_ref, "refunded_before": entry.refunded_cents},
                        ),
                    ),
                    error=PaymentRefundFailed,
                    amount_cents=portion,
                )
            except Exception:
                if applied:
                    await self._commit(claimed, lambda record: _apply_refunds(record, applied), now)
                else:
                    await self._release_claim(claimed, now)
                raise
            applied.append((index, portion))
            remaining -= portion
        return applied

    # ---- observability -----------------------------------------------------

    def _record(self, event: str, booking: BookingRecord, **extra: Any) -> None:
        metrics.record_booking_transition(event, booking.status.value)
        record_booking_event(event, booking.booking_id, booking.status.value, booking.version)
        logger.info(
            f"booking_{event}",
            extra={
                "extra": {
                    "booking_id": booking.booking_id,
                    "status": booking.status.value,
                    "version": booking.version,
                    **extra,
                }
            },
        )

    async def _notify(
        self, recipients: Iterable[str], notification_type: str, booking: BookingRecord, **payload: Any
    ) -> None:
        body = {
            "booking_id": booking.booking_id,
            "spot_id": booking.spot_id,
            "status": booking.status.value,
            "start_at": booking.start_at.isoformat(),
            "end_at": booking.end_at.isoformat(),
        }
        body.update({key: _payload_value(value) for key, value in payload.items()})
        for user_id in recipients:
            try:
                await self.notifier.notify(user_id, notification_type, body)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "notification_failed",
                    extra={
                        "extra": {
                            "booking_id": booking.booking_id,
                            "type": notification_type,
                            "reason": type(exc).__name__,
                        }
                    },
                )


def _apply_extension(
    record: BookingRecord, new_end_at: datetime, cost_cents: int, intent_ref: str, now: datetime
) -> None:
    record.end_at = new_end_at
    record.total_hours = hours_between(record.start_at, new_end_at).quantize(HOURS_QUANTUM)
    record.extension_charges_cents += cost_cents
    record.total_amount_cents += cost_cents
    record.charges.append(
        ChargeEntry(kind=ChargeKind.extension, intent_ref=intent_ref, amount_cents=cost_cents, created_at=now)
    )


def _apply_refunds(record: BookingRecord, applied: list[tuple[int, int]]) -> None:
    for index, cents in applied:
        record.charges[index].refunded_cents += cents
