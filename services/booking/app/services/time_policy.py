"""Pure temporal rules for bookings. Nothing here touches the store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from shared import BookingPolicy


class TimeViolation(str, Enum):
    INVALID_ORDER = "invalid_order"
    TOO_SOON = "too_soon"
    TOO_FAR = "too_far"


VIOLATION_MESSAGES = {
    TimeViolation.INVALID_ORDER: "end_time must be after start_time",
    TimeViolation.TOO_SOON: "Booking must be at least {min_advance_minutes} minutes in advance",
    TimeViolation.TOO_FAR: "Booking cannot be more than {max_horizon_days} days in advance",
}


def as_utc(value: datetime) -> datetime:
    """Return ``value`` in UTC, treating naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def check_booking_window(
    now: datetime,
    start: datetime,
    end: datetime,
    policy: BookingPolicy,
) -> Optional[TimeViolation]:
    now, start, end = as_utc(now), as_utc(start), as_utc(end)

    if end <= start:
        return TimeViolation.INVALID_ORDER
    if start < now + timedelta(minutes=policy.min_advance_minutes):
        return TimeViolation.TOO_SOON
    if start > now + timedelta(days=policy.max_horizon_days):
        return TimeViolation.TOO_FAR
    return None


def describe_violation(violation: TimeViolation, policy: BookingPolicy) -> str:
    return VIOLATION_MESSAGES[violation].format(
        min_advance_minutes=policy.min_advance_minutes,
        max_horizon_days=policy.max_horizon_days,
    )


def is_refund_eligible(now: datetime, start: datetime, policy: BookingPolicy) -> bool:
    """True when the booking starts more than the cancellation window away."""
    return as_utc(start) - as_utc(now) > timedelta(hours=policy.cancellation_window_hours)


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open overlap test: touching intervals do not overlap."""
    return b_start < a_end and b_end > a_start
