"""Persistence boundary for the booking engine.

Isolation contract: writers for one ``(tenant_id, provider_id)`` are
serialized by :meth:`StoreTransaction.lock_provider`. The lock is a row in
``provider_locks``; updating it takes a row lock on PostgreSQL that is held
until the transaction ends. On SQLite every transaction is ``BEGIN IMMEDIATE``
(see ``app.core.database``), which serializes all writers. Reading the active
bookings, checking them and inserting the new row therefore happen atomically
with respect to other writers of the same provider.
"""

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional
from uuid import UUID

from sqlalchemy import func, or_, select, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import StoreError
from app.models.booking import (
    Booking,
    BookingEvent,
    BookingModification,
    BookingStatus,
    ProviderLock,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreTransaction:
    """Operations available while a store transaction is open."""

    def __init__(self, session: Session) -> None:
        self.session = session

    @property
    def _dialect(self) -> str:
        return self.session.get_bind().dialect.name

    def lock_provider(self, tenant_id: UUID, provider_id: UUID) -> ProviderLock:
        values = {"tenant_id": tenant_id, "provider_id": provider_id, "version": 0, "max_duration_seconds": 0}
        if self._dialect == "postgresql":
            insert_stmt = postgresql.insert(ProviderLock).values(**values).on_conflict_do_nothing(
                index_elements=["tenant_id", "provider_id"]
            )
        else:
            insert_stmt = sqlite.insert(ProviderLock).values(**values).on_conflict_do_nothing(
                index_elements=["tenant_id", "provider_id"]
            )
        self.session.execute(insert_stmt)
        self.session.execute(
            update(ProviderLock)
            .where(ProviderLock.tenant_id == tenant_id, ProviderLock.provider_id == provider_id)
            .values(version=ProviderLock.version + 1)
        )
        return self.session.execute(
            select(ProviderLock)
            .where(ProviderLock.tenant_id == tenant_id, ProviderLock.provider_id == provider_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

    def conflict_window(
        self,
        lock: ProviderLock,
        start: datetime,
        end: datetime,
        *,
        duration: Optional[timedelta] = None,
    ) -> tuple[datetime, datetime]:
        """Window wide enough to contain every booking that could overlap."""
        longest = timedelta(seconds=lock.max_duration_seconds)
        if duration is not None and duration > longest:
            longest = duration
        return start - longest, end + longest

    def peek_window(self, tenant_id: UUID, provider_id: UUID, start: datetime, end: datetime) -> tuple[datetime, datetime]:
        """Like :meth:`conflict_window` but without locking; for read-only checks."""
        seconds = self.session.execute(
            select(ProviderLock.max_duration_seconds).where(
                ProviderLock.tenant_id == tenant_id, ProviderLock.provider_id == provider_id
            )
        ).scalar_one_or_none()
        longest = max(timedelta(seconds=seconds or 0), end - start)
        return start - longest, end + longest

    def record_duration(self, lock: ProviderLock, duration: timedelta) -> None:
        seconds = math.ceil(duration.total_seconds())
        if seconds > lock.max_duration_seconds:
            lock.max_duration_seconds = seconds

    def get_booking(self, tenant_id: UUID, booking_id: UUID, *, for_update: bool = False) -> Optional[Booking]:
        stmt = select(Booking).where(Booking.id == booking_id, Booking.tenant_id == tenant_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def list_active_for_provider(
        self,
        tenant_id: UUID,
        provider_id: UUID,
        window_start: datetime,
        window_end: datetime,
        *,
        exclude_booking_id: Optional[UUID] = None,
    ) -> List[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.tenant_id == tenant_id)
            .where(Booking.provider_id == provider_id)
            .where(Booking.status.in_(BookingStatus.ACTIVE))
            .where(Booking.end_time > window_start)
            .where(Booking.start_time < window_end)
            .order_by(Booking.start_time.asc())
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)
        return list(self.session.execute(stmt).scalars())

    def count_active_for_customer(self, tenant_id: UUID, customer_email: str) -> int:
        stmt = (
            select(func.count())
            .select_from(Booking)
            .where(Booking.tenant_id == tenant_id)
            .where(func.lower(Booking.customer_email) == customer_email.lower())
            .where(Booking.status.in_(BookingStatus.ACTIVE))
        )
        return int(self.session.execute(stmt).scalar_one())

    def add_booking(self, booking: Booking) -> Booking:
        self.session.add(booking)
        return booking

    def record_modification(
        self,
        booking: Booking,
        modification_type: str,
        *,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        previous_data: Optional[Dict[str, Any]] = None,
        new_data: Optional[Dict[str, Any]] = None,
    ) -> BookingModification:
        entry = BookingModification(
            booking_id=booking.id,
            tenant_id=booking.tenant_id,
            modification_type=modification_type,
            actor=actor,
            reason=reason,
            previous_data=previous_data,
            new_data=new_data,
            created_at=_utcnow(),
        )
        booking.history.append(entry)
        return entry

    def enqueue_event(self, booking: Booking, event_type: str, payload: Dict[str, Any]) -> BookingEvent:
        event = BookingEvent(
            booking_id=booking.id,
            tenant_id=booking.tenant_id,
            event_type=event_type,
            payload=payload,
            created_at=_utcnow(),
            attempts=0,
        )
        self.session.add(event)
        return event

    def flush(self) -> None:
        self.session.flush()


class BookingStore:
    def __init__(self, session_factory: Callable[[], Session], *, lock_timeout_seconds: float = 5.0) -> None:
        self._session_factory = session_factory
        self._lock_timeout_seconds = lock_timeout_seconds

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Open a transaction; commit on normal exit, roll back on error.

        SQLAlchemy failures, including lock timeouts, surface as
        :class:`StoreError`. Any other exception propagates unchanged after
        the rollback.
        """
        session = self._session_factory()
        try:
            with session.begin():
                self._apply_lock_timeout(session)
                yield StoreTransaction(session)
        except SQLAlchemyError as exc:
            raise StoreError(f"Booking store transaction failed: {exc.__class__.__name__}") from exc
        finally:
            session.close()

    def _apply_lock_timeout(self, session: Session) -> None:
        if session.get_bind().dialect.name == "postgresql":
            timeout_ms = int(self._lock_timeout_seconds * 1000)
            session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))

    def get_booking(self, tenant_id: UUID, booking_id: UUID) -> Optional[Booking]:
        with self.transaction() as tx:
            return tx.get_booking(tenant_id, booking_id)

    def pending_events(self, limit: int = 100, *, due_at: Optional[datetime] = None) -> List[BookingEvent]:
        """Undelivered events, least-tried first, then oldest.

        With ``due_at`` only rows whose retry backoff has elapsed are returned.
        Dead-lettered rows are never returned.
        """
        with self.transaction() as tx:
            stmt = (
                select(BookingEvent)
                .where(BookingEvent.dispatched_at.is_(None))
                .where(BookingEvent.dead_lettered_at.is_(None))
            )
            if due_at is not None:
                stmt = stmt.where(
                    or_(BookingEvent.next_attempt_at.is_(None), BookingEvent.next_attempt_at <= due_at)
                )
            stmt = stmt.order_by(BookingEvent.attempts.asc(), BookingEvent.created_at.asc()).limit(limit)
            return list(tx.session.execute(stmt).scalars())

    def dead_lettered_events(self, limit: int = 100) -> List[BookingEvent]:
        with self.transaction() as tx:
            stmt = (
                select(BookingEvent)
                .where(BookingEvent.dead_lettered_at.is_not(None))
                .order_by(BookingEvent.dead_lettered_at.asc())
                .limit(limit)
            )
            return list(tx.session.execute(stmt).scalars())

    def mark_event_dispatched(self, event_id: UUID) -> None:
        with self.transaction() as tx:
            tx.session.execute(
                update(BookingEvent)
                .where(BookingEvent.id == event_id)
                .values(
                    dispatched_at=_utcnow(),
                    attempts=BookingEvent.attempts + 1,
                    last_error=None,
                    next_attempt_at=None,
                )
            )

    def record_dispatch_failure(
        self,
        event_id: UUID,
        error: str,
        *,
        retry_at: Optional[datetime] = None,
        dead_letter: bool = False,
    ) -> None:
        """Count a failed delivery; schedule the retry or park the row for good."""
        values: Dict[str, Any] = {
            "attempts": BookingEvent.attempts + 1,
            "last_error": error[:1000],
            "next_attempt_at": retry_at,
        }
        if dead_letter:
            values["dead_lettered_at"] = _utcnow()
        with self.transaction() as tx:
            tx.session.execute(update(BookingEvent).where(BookingEvent.id == event_id).values(**values))
