from datetime import timedelta

import pytest

from spotbook.domain.bookings.overstay import OverstayAction
from spotbook.domain.bookings.service import (
    EFFECT_COMPLETED,
    EFFECT_NOOP,
    EFFECT_OVERSTAY_ACTION_SET,
    EFFECT_OVERSTAY_DETECTED,
    EFFECT_TOW_CANCELED,
)
from spotbook.domain.bookings.statuses import BookingStatus, ChargeKind
from spotbook.domain.errors import IllegalTransition, PaymentCaptureFailed
from spotbook.infra import notifications


@pytest.fixture()
async def active_booking(engine, make_terms):
    return (await engine.create(make_terms(instant_book=True))).booking


async def _overstay_with_action(engine, clock, booking, action):
    clock.set(booking.end_at + timedelta(minutes=5))
    await engine.detect_overstay(booking.booking_id)
    clock.set(booking.end_at + timedelta(minutes=16))
    return await engine.set_overstay_action(booking.booking_id, action)


@pytest.mark.anyio
async def test_detect_overstay_opens_grace_period(engine, clock, notifier, active_booking):
    clock.set(active_booking.end_at + timedelta(minutes=5))

    effect = await engine.detect_overstay(active_booking.booking_id)

    assert effect.kind == EFFECT_OVERSTAY_DETECTED
    assert effect.booking.overstay_detected_at == clock()
    assert effect.booking.overstay_grace_end == clock() + timedelta(minutes=10)
    assert sorted(notifier.recipients(notifications.OVERSTAY_DETECTED)) == ["host-1", "renter-1"]

    again = await engine.detect_overstay(active_booking.booking_id)
    assert again.kind == EFFECT_NOOP
    assert notifier.types().count(notifications.OVERSTAY_DETECTED) == 2


@pytest.mark.anyio
async def test_detect_overstay_before_end_is_rejected(engine, active_booking):
    with pytest.raises(IllegalTransition):
        await engine.detect_overstay(active_booking.booking_id)


@pytest.mark.anyio
async def test_overstay_action_waits_for_grace_to_end(engine, clock, active_booking):
    with pytest.raises(IllegalTransition):
        await engine.set_overstay_action(active_booking.booking_id, OverstayAction.charging)

    clock.set(active_booking.end_at + timedelta(minutes=5))
    await engine.detect_overstay(active_booking.booking_id)
    clock.set(active_booking.end_at + timedelta(minutes=10))

    with pytest.raises(IllegalTransition):
        await engine.set_overstay_action(active_booking.booking_id, OverstayAction.charging)


@pytest.mark.anyio
async def test_charging_accrues_until_departure(engine, clock, gateway, notifier, active_booking):
    effect = await _overstay_with_action(engine, clock, active_booking, OverstayAction.charging)

    assert effect.kind == EFFECT_OVERSTAY_ACTION_SET
    assert effect.booking.overstay_action is OverstayAction.charging
    assert notifier.recipients(notifications.OVERSTAY_CHARGING_STARTED) == ["renter-1"]

    with pytest.raises(IllegalTransition):
        await engine.set_overstay_action(active_booking.booking_id, OverstayAction.towing)

    grace_end = effect.booking.overstay_grace_end
    clock.set(grace_end + timedelta(minutes=30))
    assert engine.current_overstay_charge(effect.booking) == 1250

    clock.set(grace_end + timedelta(minutes=20))
    completed = await engine.confirm_departure(active_booking.booking_id)

    assert completed.kind == EFFECT_COMPLETED
    assert completed.amount_cents == 834
    assert completed.booking.status is BookingStatus.completed
    assert completed.booking.overstay_charge_cents == 834
    assert completed.booking.departed_at == clock()
    assert completed.booking.overstay_action is None
    assert completed.booking.charges[-1].kind is ChargeKind.overstay
    assert completed.booking.total_amount_cents == active_booking.total_amount_cents
    assert [call.amount_cents for call in gateway.calls_for("charge")] == [834]


@pytest.mark.anyio
async def test_towing_request_can_be_withdrawn(engine, clock, notifier, active_booking):
    await _overstay_with_action(engine, clock, active_booking, "towing")
    assert sorted(notifier.recipients(notifications.OVERSTAY_TOW_REQUESTED)) == ["host-1", "renter-1"]

    with pytest.raises(IllegalTransition):
        await engine.auto_complete(active_booking.booking_id)

    effect = await engine.cancel_tow_request(active_booking.booking_id)
    assert effect.kind == EFFECT_TOW_CANCELED
    assert effect.booking.overstay_action is None
    assert effect.booking.overstay_detected_at is not None

    with pytest.raises(IllegalTransition):
        await engine.cancel_tow_request(active_booking.booking_id)


@pytest.mark.anyio
async def test_clean_departure_charges_nothing(engine, clock, gateway, active_booking):
    clock.set(active_booking.end_at - timedelta(minutes=5))

    effect = await engine.confirm_departure(active_booking.booking_id)

    assert effect.amount_cents == 0
    assert effect.booking.status is BookingStatus.completed
    assert effect.booking.overstay_charge_cents == 0
    assert gateway.calls_for("charge") == []


@pytest.mark.anyio
async def test_auto_complete_clean_booking(engine, clock, active_booking):
    clock.set(active_booking.end_at + timedelta(minutes=10))
    with pytest.raises(IllegalTransition):
        await engine.auto_complete(active_booking.booking_id)

    clock.set(active_booking.end_at + timedelta(minutes=16))
    effect = await engine.auto_complete(active_booking.booking_id)

    assert effect.booking.status is BookingStatus.completed
    assert effect.booking.departed_at is None
    assert effect.amount_cents == 0


@pytest.mark.anyio
async def test_auto_complete_settles_charging_overstay(engine, clock, gateway, active_booking):
    await _overstay_with_action(engine, clock, active_booking, OverstayAction.charging)

    clock.set(active_booking.end_at + timedelta(minutes=30))
    with pytest.raises(IllegalTransition):
        await engine.auto_complete(active_booking.booking_id)

    clock.set(active_booking.end_at + timedelta(minutes=31))
    effect = await engine.auto_complete(active_booking.booking_id)

    assert effect.amount_cents == 667
    assert effect.booking.overstay_charge_cents == 667
    assert [call.amount_cents for call in gateway.calls_for("charge")] == [667]


@pytest.mark.anyio
async def test_overstay_settlement_failure_keeps_booking_active(engine, clock, gateway, active_booking):
    await _overstay_with_action(engine, clock, active_booking, OverstayAction.charging)
    gateway.fail_charges = True
    clock.set(active_booking.end_at + timedelta(minutes=40))

    with pytest.raises(PaymentCaptureFailed):
        await engine.confirm_departure(active_booking.booking_id)

    current = await engine.get(active_booking.booking_id)
    assert current.status is BookingStatus.active
    assert current.overstay_action is OverstayAction.charging
    assert current.pending_operation is None
