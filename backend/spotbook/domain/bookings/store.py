from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Protocol

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spotbook.domain.bookings import db_models
from spotbook.domain.bookings.overstay import OverstayAction
from spotbook.domain.bookings.schemas import BookingRecord, ExtensionAttemptRecord
from spotbook.domain.bookings.statuses import BookingStatus, ExtensionAttemptStatus
from spotbook.domain.errors import BookingNotFound, ConflictError, DomainError

BookingMutator = Callable[[BookingRecord], None]
# (sort timestamp, booking_id) of the last row a sweep has seen.
SweepCursor = tuple[datetime, str]

_BOOKING_COLUMNS = tuple(column.name for column in db_models.Booking.__table__.columns)
_ATTEMPT_COLUMNS = tuple(column.name for column in db_models.BookingExtensionAttempt.__table__.columns)


class BookingStore(Protocol):
    async def create(self, record: BookingRecord) -> BookingRecord: ...

    async def get(self, booking_id: str) -> Optional[BookingRecord]: ...

    async def conditional_update(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        mutator: BookingMutator,
        *,
        expected_version: int | None = None,
    ) -> BookingRecord:
        """Apply ``mutator`` to a copy of the booking and persist it atomically.

        The write only lands when the stored status (and version, when given)
        still match. Otherwise ``ConflictError`` is raised and nothing changes.
        Exceptions raised by the mutator abort the write as well. Every
        successful write bumps ``version``.
        """
        ...

    async def list_by_status(self, status: BookingStatus, *, limit: int | None = None) -> List[BookingRecord]: ...

    async def list_held_due(
        self,
        created_before: datetime,
        *,
        created_after: datetime | None = None,
        unreminded_only: bool = False,
        after: SweepCursor | None = None,
        limit: int | None = None,
    ) -> List[BookingRecord]:
        """Held bookings created in the window, oldest first, keyed by ``(created_at, booking_id)``."""
        ...

    async def list_overstay_candidates(
        self,
        now: datetime,
        *,
        resolve_before: datetime,
        after: SweepCursor | None = None,
        limit: int | None = None,
    ) -> List[BookingRecord]:
        """Ended active bookings the overstay monitor can still act on.

        That is: overstays not yet detected, grace periods that ended without a
        host decision or notice, charging overstays, and anything that ended
        before ``resolve_before``. Ordered by ``(end_at, booking_id)``.
        """
        ...

    async def list_ending_between(
        self,
        start: datetime,
        end: datetime,
        *,
        after: SweepCursor | None = None,
        limit: int | None = None,
    ) -> List[BookingRecord]:
        """Active bookings ending in ``(start, end]`` that have not been warned yet."""
        ...

    async def save_attempt(self, attempt: ExtensionAttemptRecord) -> ExtensionAttemptRecord: ...

    async def get_attempt(self, attempt_id: str) -> Optional[ExtensionAttemptRecord]: ...

    async def update_attempt(self, attempt: ExtensionAttemptRecord) -> ExtensionAttemptRecord: ...

    async def list_attempts(
        self, booking_id: str, *, status: ExtensionAttemptStatus | None = None
    ) -> List[ExtensionAttemptRecord]: ...


def _is_held_due(
    record: BookingRecord,
    created_before: datetime,
    created_after: datetime | None,
    unreminded_only: bool,
) -> bool:
    if record.status != BookingStatus.held or record.created_at >= created_before:
        return False
    if created_after is not None and record.created_at <= created_after:
        return False
    return not (unreminded_only and record.approval_reminder_sent_at is not None)


def _is_overstay_candidate(record: BookingRecord, now: datetime, resolve_before: datetime) -> bool:
    if record.status != BookingStatus.active or record.end_at >= now:
        return False
    if record.overstay_detected_at is None or record.end_at < resolve_before:
        return True
    if record.overstay_action is OverstayAction.charging:
        return True
    return (
        record.overstay_action is None
        and record.grace_ended_notified_at is None
        and record.overstay_grace_end is not None
        and record.overstay_grace_end <= now
    )


def _is_ending_between(record: BookingRecord, start: datetime, end: datetime) -> bool:
    return (
        record.status == BookingStatus.active
        and start < record.end_at <= end
        and record.ending_soon_notified_at is None
        and record.overstay_detected_at is None
    )


def _page(
    records: Iterable[BookingRecord],
    sort_key: Callable[[BookingRecord], datetime],
    after: SweepCursor | None,
    limit: int | None,
) -> List[BookingRecord]:
    ordered = sorted(records, key=lambda record: (sort_key(record), record.booking_id))
    if after is not None:
        ordered = [record for record in ordered if (sort_key(record), record.booking_id) > after]
    if limit is not None:
        ordered = ordered[:limit]
    return [record.model_copy(deep=True) for record in ordered]


def _check_expectations(
    record: BookingRecord, expected_status: BookingStatus, expected_version: int | None
) -> None:
    if record.status != expected_status:
        raise ConflictError(
            detail=f"Booking {record.booking_id} is {record.status.value}, expected {expected_status.value}"
        )
    if expected_version is not None and record.version != expected_version:
        raise ConflictError(
            detail=f"Booking {record.booking_id} changed concurrently (version {record.version})"
        )


class InMemoryBookingStore(BookingStore):
    def __init__(self) -> None:
        self._bookings: Dict[str, BookingRecord] = {}
        self._attempts: Dict[str, ExtensionAttemptRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: BookingRecord) -> BookingRecord:
        async with self._lock:
            if record.booking_id in self._bookings:
                raise ConflictError(detail=f"Booking {record.booking_id} already exists")
            self._bookings[record.booking_id] = record.model_copy(deep=True)
            return record.model_copy(deep=True)

    async def get(self, booking_id: str) -> Optional[BookingRecord]:
        async with self._lock:
            record = self._bookings.get(booking_id)
            return record.model_copy(deep=True) if record else None

    async def conditional_update(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        mutator: BookingMutator,
        *,
        expected_version: int | None = None,
    ) -> BookingRecord:
        async with self._lock:
            current = self._bookings.get(booking_id)
            if current is None:
                raise BookingNotFound(detail=f"Booking {booking_id} not found")
            _check_expectations(current, expected_status, expected_version)
            updated = current.model_copy(deep=True)
            mutator(updated)
            updated.version = current.version + 1
            self._bookings[booking_id] = updated
            return updated.model_copy(deep=True)

    async def list_by_status(self, status: BookingStatus, *, limit: int | None = None) -> List[BookingRecord]:
        async with self._lock:
            matches = sorted(
                (record for record in self._bookings.values() if record.status == status),
                key=lambda record: record.created_at,
            )
            if limit is not None:
                matches = matches[:limit]
            return [record.model_copy(deep=True) for record in matches]

    async def list_held_due(
        self,
        created_before: datetime,
        *,
        created_after: datetime | None = None,
        unreminded_only: bool = False,
        after: SweepCursor | None = None,
        limit: int | None = None,
    ) -> List[BookingRecord]:
        async with self._lock:
            matches = [
                record
                for record in self._bookings.values()
                if _is_held_due(record, created_before, created_after, unreminded_only)
            ]
            return _page(matches, lambda record: record.created_at, after, limit)

    async def list_overstay_candidates(
        self,
        now: datetime,
        *,
        resolve_before: datetime,
        after: SweepCursor | None = None,
        limit: int | None = None,
    ) -> List[BookingRecord]:
        async with self._lock:
            matches = [
                record for record in self._bookings.values() if _is_overstay_candidate(record, now, resolve_before)
            ]
            return _page(matches, lambda record: record.end_at, after, limit)

    async def list_ending_between(
        self,
        start: datetime,
        end: datetime,
        *,
        after: SweepCursor | None = None,
        limit: int | None = None,
    ) -> List[BookingRecord]:
        async with self._lock:
            matches = [record for record in self._bookings.values() if _is_ending_between(record, start, end)]
            return _page(matches, lambda record: record.end_at, after, limit)

    async def save_attempt(self, attempt: ExtensionAttemptRecord) -> ExtensionAttemptRecord:
        async with self._lock:
            self._attempts[attempt.attempt_id] = attempt.model_copy(deep=True)
            return attempt

    async def list_attempts(
        self, booking_id: str, *, status: ExtensionAttemptStatus | None = None
    ) -> List[ExtensionAttemptRecord]:
        async with self._lock:
            matches = sorted(
                (
                    attempt
                    for attempt in self._attempts.values()
                    if attempt.booking_id == booking_id and (status is None or attempt.status == status)
                ),
                key=lambda attempt: attempt.created_at,
            )
            return [attempt.model_copy(deep=True) for attempt in matches]

    async def get_attempt(self, attempt_id: str) -> Optional[ExtensionAttemptRecord]:
        async with self._lock:
            attempt = self._attempts.get(attempt_id)
            return attempt.model_copy(deep=True) if attempt else None

    async def update_attempt(self, attempt: ExtensionAttemptRecord) -> ExtensionAttemptRecord:
        async with self._lock:
            if attempt.attempt_id not in self._attempts:
                raise DomainError(detail=f"Extension attempt {attempt.attempt_id} not found")
            self._attempts[attempt.attempt_id] = attempt.model_copy(deep=True)
            return attempt


def _booking_values(record: BookingRecord) -> dict:
    values = record.model_dump(mode="python")
    values["status"] = record.status.value
    values["guest"] = record.guest.model_dump(mode="json") if record.guest else None
    values["charges"] = [entry.model_dump(mode="json") for entry in record.charges]
    values["overstay_action"] = record.overstay_action.value if record.overstay_action else None
    values["canceled_by"] = record.canceled_by.value if record.canceled_by else None
    if values.get("updated_at") is None:
        values.pop("updated_at", None)
    return {key: value for key, value in values.items() if key in _BOOKING_COLUMNS}


def _booking_record(row: db_models.Booking) -> BookingRecord:
    payload = {column: getattr(row, column) for column in _BOOKING_COLUMNS}
    payload["status"] = BookingStatus.parse(row.status)
    return BookingRecord.model_validate(payload)


def _attempt_values(attempt: ExtensionAttemptRecord) -> dict:
    values = attempt.model_dump(mode="python")
    values["status"] = attempt.status.value
    return {key: value for key, value in values.items() if key in _ATTEMPT_COLUMNS}


def _attempt_record(row: db_models.BookingExtensionAttempt) -> ExtensionAttemptRecord:
    return ExtensionAttemptRecord.model_validate(
        {column: getattr(row, column) for column in _ATTEMPT_COLUMNS}
    )


class SqlBookingStore(BookingStore):
    """Booking store backed by the ``bookings`` table.

    Conditional updates are a single ``UPDATE ... WHERE status = :s AND
    version = :v``; a rowcount other than one means another writer won.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, record: BookingRecord) -> BookingRecord:
        async with self._session_factory() as session:
            session.add(db_models.Booking(**_booking_values(record)))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(detail=f"Booking {record.booking_id} already exists") from exc
        return record

    async def get(self, booking_id: str) -> Optional[BookingRecord]:
        async with self._session_factory() as session:
            row = await session.get(db_models.Booking, booking_id)
            return _booking_record(row) if row else None

    async def conditional_update(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        mutator: BookingMutator,
        *,
        expected_version: int | None = None,
    ) -> BookingRecord:
        async with self._session_factory() as session:
            row = await session.get(db_models.Booking, booking_id)
            if row is None:
                raise BookingNotFound(detail=f"Booking {booking_id} not found")
            current = _booking_record(row)
            _check_expectations(current, expected_status, expected_version)

            updated = current.model_copy(deep=True)
            mutator(updated)
            updated.version = current.version + 1

            values = _booking_values(updated)
            values.pop("booking_id", None)
            values.pop("created_at", None)
            values.pop("updated_at", None)
            stmt = (
                sa.update(db_models.Booking)
                .where(
                    db_models.Booking.booking_id == booking_id,
                    db_models.Booking.status == expected_status.value,
                    db_models.Booking.version == current.version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                raise ConflictError(detail=f"Booking {booking_id} changed concurrently")
            await session.commit()
            return updated

    async def list_by_status(self, status: BookingStatus, *, limit: int | None = None) -> List[BookingRecord]:
        async with self._session_factory() as session:
            stmt = (
                sa.select(db_models.Booking)
                .where(db_models.Booking.status == status.value)
                .order_by(db_models.Booking.created_at)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [_booking_record(row) for row in result.scalars().all()]

    async def _sweep(
        self,
        conditions: list,
        sort_column,
        after: SweepCursor | None,
        limit: int | None,
    ) -> List[BookingRecord]:
        booking = db_models.Booking
        if after is not None:
            sort_after, id_after = after
            conditions.append(
                sa.or_(
                    sort_column > sort_after,
                    sa.and_(sort_column == sort_after, booking.booking_id > id_after),
                )
            )
        stmt = sa.select(booking).where(*conditions).order_by(sort_column, booking.booking_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_booking_record(row) for row in result.scalars().all()]

    async def list_held_due(
        self,
        created_before: datetime,
        *,
        created_after: datetime | None = None,
        unreminded_only: bool = False,
        after: SweepCursor | None = None,
        limit: int | None = None,
    ) -> List[BookingRecord]:
        booking = db_models.Booking
        conditions = [booking.status == BookingStatus.held.value, booking.created_at < created_before]
        if created_after is not None:
            conditions.append(booking.created_at > created_after)
        if unreminded_only:
            conditions.append(booking.approval_reminder_sent_at.is_(None))
        return await self._sweep(conditions, booking.created_at, after, limit)

    async def list_overstay_candidates(
        self,
        now: datetime,
        *,
        resolve_before: datetime,
        after: SweepCursor | None = None,
        limit: int | None = None,
    ) -> List[BookingRecord]:
        booking = db_models.Booking
        conditions = [
            booking.status == BookingStatus.active.value,
            booking.end_at < now,
            sa.or_(
                booking.overstay_detected_at.is_(None),
                booking.end_at < resolve_before,
                booking.overstay_action == OverstayAction.charging.value,
                sa.and_(
                    booking.overstay_action.is_(None),
                    booking.grace_ended_notified_at.is_(None),
                    booking.overstay_grace_end <= now,
                ),
            ),
        ]
        return await self._sweep(conditions, booking.end_at, after, limit)

    async def list_ending_between(
        self,
        start: datetime,
        end: datetime,
        *,
        after: SweepCursor | None = None,
        limit: int | None = None,
    ) -> List[BookingRecord]:
        booking = db_models.Booking
        conditions = [
            booking.status == BookingStatus.active.value,
            booking.end_at > start,
            booking.end_at <= end,
            booking.ending_soon_notified_at.is_(None),
            booking.overstay_detected_at.is_(None),
        ]
        return await self._sweep(conditions, booking.end_at, after, limit)

    async def list_attempts(
        self, booking_id: str, *, status: ExtensionAttemptStatus | None = None
    ) -> List[ExtensionAttemptRecord]:
        attempt = db_models.BookingExtensionAttempt
        stmt = sa.select(attempt).where(attempt.booking_id == booking_id).order_by(attempt.created_at)
        if status is not None:
            stmt = stmt.where(attempt.status == status.value)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_attempt_record(row) for row in result.scalars().all()]

    async def save_attempt(self, attempt: ExtensionAttemptRecord) -> ExtensionAttemptRecord:
        async with self._session_factory() as session:
            session.add(db_models.BookingExtensionAttempt(**_attempt_values(attempt)))
            await session.commit()
        return attempt

    async def get_attempt(self, attempt_id: str) -> Optional[ExtensionAttemptRecord]:
        async with self._session_factory() as session:
            row = await session.get(db_models.BookingExtensionAttempt, attempt_id)
            return _attempt_record(row) if row else None

    async def update_attempt(self, attempt: ExtensionAttemptRecord) -> ExtensionAttemptRecord:
        values = _attempt_values(attempt)
        values.pop("attempt_id", None)
        async with self._session_factory() as session:
            result = await session.execute(
                sa.update(db_models.BookingExtensionAttempt)
                .where(db_models.BookingExtensionAttempt.attempt_id == attempt.attempt_id)
                .values(**values)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise DomainError(detail=f"Extension attempt {attempt.attempt_id} not found")
            await session.commit()
        return attempt
