from datetime import datetime, timedelta, timezone

from spotbook.domain.bookings import cancellation, overstay
from spotbook.domain.bookings.overstay import OverstayAction, OverstayPhase
from spotbook.domain.bookings.statuses import BookingStatus

CREATED = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
START = CREATED + timedelta(hours=2)
END = START + timedelta(hours=4)


def test_cancel_within_grace_is_refundable():
    decision = cancellation.decide(CREATED, START, CREATED + timedelta(minutes=5))

    assert decision.refundable is True
    assert decision.reason == cancellation.REASON_GRACE_PERIOD


def test_cancel_well_before_start_is_refundable():
    decision = cancellation.decide(CREATED, START, CREATED + timedelta(minutes=15))

    assert decision.refundable is True
    assert decision.reason == cancellation.REASON_BEFORE_CUTOFF


def test_cutoff_boundary_is_inclusive():
    decision = cancellation.decide(CREATED, START, START - timedelta(minutes=60))

    assert decision.refundable is True


def test_cancel_inside_cutoff_is_not_refundable():
    decision = cancellation.decide(CREATED, START, START - timedelta(minutes=50))

    assert decision.refundable is False
    assert decision.reason == cancellation.REASON_AFTER_CUTOFF


def test_grace_wins_over_cutoff_for_last_minute_bookings():
    created = START - timedelta(minutes=30)
    decision = cancellation.decide(created, START, created + timedelta(minutes=5))

    assert decision.refundable is True
    assert decision.reason == cancellation.REASON_GRACE_PERIOD


def test_windows_can_be_overridden():
    decision = cancellation.decide(
        CREATED,
        START,
        CREATED + timedelta(minutes=15),
        grace=timedelta(minutes=30),
        cutoff=timedelta(minutes=60),
    )

    assert decision.reason == cancellation.REASON_GRACE_PERIOD


def test_overstay_phase_before_and_after_grace():
    assert overstay.phase(END, END) is OverstayPhase.none
    assert overstay.phase(END, END + timedelta(minutes=5)) is OverstayPhase.grace
    assert overstay.phase(END, END + timedelta(minutes=10)) is OverstayPhase.actionable


def test_overstay_phase_uses_recorded_grace_end():
    grace_end = END + timedelta(minutes=25)

    assert overstay.phase(END, END + timedelta(minutes=20), grace_end=grace_end) is OverstayPhase.grace
    assert overstay.phase(END, grace_end, grace_end=grace_end) is OverstayPhase.actionable


def test_accrued_charge_only_for_charging():
    grace_end = END + timedelta(minutes=10)
    later = grace_end + timedelta(minutes=30)

    assert overstay.accrued_charge(None, grace_end, later) == 0
    assert overstay.accrued_charge(OverstayAction.towing, grace_end, later) == 0
    assert overstay.accrued_charge(OverstayAction.charging, None, later) == 0
    assert overstay.accrued_charge("charging", grace_end, later, rate_cents_per_hour=2500) == 1250


def test_legacy_paid_status_reads_as_active():
    assert BookingStatus.parse("paid") is BookingStatus.active
    assert BookingStatus.parse(" HELD ") is BookingStatus.held
    assert BookingStatus.canceled.is_terminal
    assert not BookingStatus.active.is_terminal
