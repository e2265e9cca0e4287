from __future__ import annotations

import logging
from datetime import datetime, timedelta

from spotbook.domain.bookings.service import EFFECT_EXPIRED, BookingEngine
from spotbook.domain.errors import DomainError
from spotbook.jobs.sweep import sweep

logger = logging.getLogger(__name__)


def _created_at(booking):
    return booking.created_at


async def expire_held_bookings(
    engine: BookingEngine, *, now: datetime | None = None, limit: int | None = None
) -> dict[str, int]:
    """Expire every held booking whose approval window has elapsed.

    Several runners may sweep at once; ``BookingEngine.expire`` guarantees the
    authorization is released a single time per booking.
    """
    current = now or engine.clock()
    window = timedelta(minutes=engine.settings.approval_window_minutes)
    result = {"expired": 0, "skipped": 0, "failed": 0}

    async def fetch(**page):
        return await engine.store.list_held_due(current - window, **page)

    async for booking in sweep(fetch, _created_at, limit or engine.settings.job_batch_size):
        try:
            effect = await engine.expire(booking.booking_id)
        except DomainError as exc:
            result["failed"] += 1
            logger.warning(
                "booking_expiry_failed",
                extra={"extra": {"booking_id": booking.booking_id, "reason": type(exc).__name__}},
            )
            continue
        if effect.kind == EFFECT_EXPIRED:
            result["expired"] += 1
        else:
            result["skipped"] += 1
    return result


async def send_approval_reminders(
    engine: BookingEngine, *, now: datetime | None = None, limit: int | None = None
) -> dict[str, int]:
    current = now or engine.clock()
    reminder_after = timedelta(minutes=engine.settings.approval_reminder_after_minutes)
    window = timedelta(minutes=engine.settings.approval_window_minutes)
    result = {"sent": 0, "skipped": 0}

    async def fetch(**page):
        return await engine.store.list_held_due(
            current - reminder_after,
            created_after=current - window,
            unreminded_only=True,
            **page,
        )

    async for booking in sweep(fetch, _created_at, limit or engine.settings.job_batch_size):
        if await engine.send_approval_reminder(booking.booking_id):
            result["sent"] += 1
        else:
            result["skipped"] += 1
    return result
