from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from spotbook.domain.pricing.policy import overstay_accrual
from spotbook.settings import settings


class OverstayPhase(str, Enum):
    none = "none"
    grace = "grace"
    actionable = "actionable"


class OverstayAction(str, Enum):
    charging = "charging"
    towing = "towing"


def grace_window() -> timedelta:
    return timedelta(minutes=settings.overstay_grace_minutes)


def phase(
    end_at: datetime,
    now: datetime,
    *,
    grace_end: datetime | None = None,
    grace: timedelta | None = None,
) -> OverstayPhase:
    """Classify ``now`` relative to a booking's end.

    ``grace_end`` is the recorded grace deadline once an overstay has been
    detected; before detection the deadline is projected from ``end_at``.
    """
    if now <= end_at:
        return OverstayPhase.none
    deadline = grace_end or end_at + (grace if grace is not None else grace_window())
    if now < deadline:
        return OverstayPhase.grace
    return OverstayPhase.actionable


def accrued_charge(
    action: OverstayAction | str | None,
    grace_end: datetime | None,
    now: datetime,
    *,
    rate_cents_per_hour: int | None = None,
) -> int:
    if action is None or grace_end is None:
        return 0
    if OverstayAction(action) is not OverstayAction.charging:
        return 0
    return overstay_accrual(grace_end, now, rate_cents_per_hour)
