from dataclasses import dataclass
from datetime import datetime, timedelta

from spotbook.settings import settings

REASON_GRACE_PERIOD = "within grace period"
REASON_BEFORE_CUTOFF = "more than 1 hour before start"
REASON_AFTER_CUTOFF = "less than 1 hour before start"


@dataclass(frozen=True)
class CancellationDecision:
    refundable: bool
    reason: str


def decide(
    created_at: datetime,
    start_at: datetime,
    now: datetime,
    *,
    grace: timedelta | None = None,
    cutoff: timedelta | None = None,
) -> CancellationDecision:
    grace_window = grace if grace is not None else timedelta(minutes=settings.cancellation_grace_minutes)
    cutoff_window = (
        cutoff if cutoff is not None else timedelta(minutes=settings.cancellation_full_refund_cutoff_minutes)
    )
    # Grace is checked first and wins even inside the pre-start cutoff.
    if now <= created_at + grace_window:
        return CancellationDecision(refundable=True, reason=REASON_GRACE_PERIOD)
    if now <= start_at - cutoff_window:
        return CancellationDecision(refundable=True, reason=REASON_BEFORE_CUTOFF)
    return CancellationDecision(refundable=False, reason=REASON_AFTER_CUTOFF)
