from __future__ import annotations

from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, List

from spotbook.domain.bookings.schemas import BookingRecord
from spotbook.domain.bookings.store import SweepCursor

PageFetcher = Callable[..., Awaitable[List[BookingRecord]]]


async def sweep(
    fetch: PageFetcher,
    sort_key: Callable[[BookingRecord], datetime],
    batch_size: int,
) -> AsyncIterator[BookingRecord]:
    """Walk every row ``fetch`` matches, one keyset page at a time.

    ``fetch`` is called with ``after`` and ``limit``. Rows that stay matched
    because they could not be handled do not hold back the rest of the sweep.
    """
    cursor: SweepCursor | None = None
    while True:
        page = await fetch(after=cursor, limit=batch_size)
        for record in page:
            yield record
        if len(page) < batch_size:
            return
        last = page[-1]
        cursor = (sort_key(last), last.booking_id)
