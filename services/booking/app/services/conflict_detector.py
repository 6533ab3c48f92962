"""Overlap detection over a provider's active bookings.

The store supplies the candidate set, already narrowed to a window around the
requested interval; the functions here only compare intervals.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from shared import BookingPolicy

from app.models.booking import Booking, BookingStatus
from app.services.time_policy import as_utc, intervals_overlap


@dataclass(frozen=True)
class ConflictResult:
    has_conflict: bool
    conflicting: Optional[Booking] = None


@dataclass(frozen=True)
class SuggestedSlot:
    start_time: datetime
    end_time: datetime

    def model_dump(self) -> dict:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
        }


def _candidates(bookings: Iterable[Booking], exclude_booking_id: Optional[UUID]) -> Iterable[Booking]:
    for booking in bookings:
        if booking.status not in BookingStatus.ACTIVE:
            continue
        if exclude_booking_id is not None and booking.id == exclude_booking_id:
            continue
        yield booking


def find_first_conflict(
    start: datetime,
    end: datetime,
    bookings: Iterable[Booking],
    *,
    exclude_booking_id: Optional[UUID] = None,
) -> ConflictResult:
    start, end = as_utc(start), as_utc(end)
    for booking in _candidates(bookings, exclude_booking_id):
        if intervals_overlap(start, end, booking.start_time, booking.end_time):
            return ConflictResult(True, booking)
    return ConflictResult(False)


def find_all_conflicts(
    start: datetime,
    end: datetime,
    bookings: Iterable[Booking],
    *,
    exclude_booking_id: Optional[UUID] = None,
) -> List[Booking]:
    start, end = as_utc(start), as_utc(end)
    return [
        booking
        for booking in _candidates(bookings, exclude_booking_id)
        if intervals_overlap(start, end, booking.start_time, booking.end_time)
    ]


def suggest_free_slots(
    start: datetime,
    end: datetime,
    bookings: Sequence[Booking],
    policy: BookingPolicy,
    *,
    exclude_booking_id: Optional[UUID] = None,
    limit: Optional[int] = None,
) -> List[SuggestedSlot]:
    """Propose same-length intervals after ``start`` that collide with nothing.

    Each blocked candidate is pushed past the end of the booking blocking it,
    plus the policy buffer.
    """
    limit = policy.max_suggestions if limit is None else limit
    if limit <= 0:
        return []

    start, end = as_utc(start), as_utc(end)
    duration = end - start
    buffer = timedelta(minutes=policy.suggestion_buffer_minutes)
    active = sorted(_candidates(bookings, exclude_booking_id), key=lambda b: b.start_time)

    suggestions: List[SuggestedSlot] = []
    cursor = start
    # Each iteration either records a slot or jumps past one booking.
    for _ in range(len(active) + limit):
        blocker = find_first_conflict(cursor, cursor + duration, active).conflicting
        if blocker is None:
            suggestions.append(SuggestedSlot(cursor, cursor + duration))
            if len(suggestions) >= limit:
                break
            cursor = cursor + duration + buffer
        else:
            cursor = blocker.end_time + buffer
    return suggestions
