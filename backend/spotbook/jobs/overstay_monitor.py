from __future__ import annotations

import logging
from datetime import datetime, timedelta

from spotbook.domain.bookings.overstay import OverstayAction
from spotbook.domain.bookings.schemas import BookingRecord
from spotbook.domain.bookings.service import EFFECT_OVERSTAY_DETECTED, BookingEngine
from spotbook.domain.errors import DomainError
from spotbook.jobs.sweep import sweep

logger = logging.getLogger(__name__)

# Bookings that ended longer ago than this are never flagged as overstays;
# stale rows are closed by auto-completion instead.
DETECTION_LOOKBACK = timedelta(hours=24)


def _end_at(booking: BookingRecord) -> datetime:
    return booking.end_at


async def _handle_ended(engine: BookingEngine, booking: BookingRecord, current: datetime) -> str | None:
    policy = engine.settings
    if booking.overstay_detected_at is None:
        if booking.end_at > current - DETECTION_LOOKBACK:
            effect = await engine.detect_overstay(booking.booking_id)
            return "detected" if effect.kind == EFFECT_OVERSTAY_DETECTED else None
        if current > booking.end_at + timedelta(minutes=policy.auto_complete_after_minutes):
            await engine.auto_complete(booking.booking_id)
            return "completed"
        return None

    if booking.overstay_action is OverstayAction.charging:
        if current > booking.end_at + timedelta(minutes=policy.overstay_auto_complete_after_minutes):
            await engine.auto_complete(booking.booking_id)
            return "completed"
        return "notified" if await engine.send_overstay_charge_update(booking.booking_id) else None

    if current > booking.end_at + timedelta(minutes=policy.overstay_unresolved_complete_after_minutes):
        await engine.auto_complete(booking.booking_id)
        return "completed"
    if booking.overstay_action is None:
        return "notified" if await engine.send_grace_ended_notices(booking.booking_id) else None
    return None


async def run_overstay_monitor(
    engine: BookingEngine, *, now: datetime | None = None, limit: int | None = None
) -> dict[str, int]:
    """Warn bookings about to end, then detect, prompt, and close the ones that ended."""
    current = now or engine.clock()
    batch_size = limit or engine.settings.job_batch_size
    warning = timedelta(minutes=engine.settings.ending_soon_warning_minutes)
    resolve_before = current - timedelta(minutes=engine.settings.overstay_unresolved_complete_after_minutes)
    result = {"warned": 0, "detected": 0, "notified": 0, "completed": 0, "failed": 0}

    async def ending_soon(**page):
        return await engine.store.list_ending_between(current, current + warning, **page)

    async def ended(**page):
        return await engine.store.list_overstay_candidates(current, resolve_before=resolve_before, **page)

    async for booking in sweep(ending_soon, _end_at, batch_size):
        try:
            if await engine.send_ending_soon_warning(booking.booking_id):
                result["warned"] += 1
        except DomainError as exc:
            result["failed"] += 1
            logger.warning(
                "ending_soon_warning_failed",
                extra={"extra": {"booking_id": booking.booking_id, "reason": type(exc).__name__}},
            )

    async for booking in sweep(ended, _end_at, batch_size):
        try:
            outcome = await _handle_ended(engine, booking, current)
        except DomainError as exc:
            result["failed"] += 1
            logger.warning(
                "overstay_monitor_failed",
                extra={"extra": {"booking_id": booking.booking_id, "reason": type(exc).__name__}},
            )
            continue
        if outcome is not None:
            result[outcome] += 1
    return result
