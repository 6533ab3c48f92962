import random
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from app.models.booking import Booking, BookingStatus
from app.services.conflict_detector import (
    find_all_conflicts,
    find_first_conflict,
    suggest_free_slots,
)
from app.services.time_policy import intervals_overlap
from shared import BookingPolicy

DAY = datetime(2030, 1, 2, 0, 0, tzinfo=timezone.utc)


def _at(hour: int, minute: int = 0) -> datetime:
    return DAY + timedelta(hours=hour, minutes=minute)


def _booking(start: datetime, end: datetime, status: str = BookingStatus.CONFIRMED) -> Booking:
    return Booking(id=uuid4(), start_time=start, end_time=end, status=status)


def test_overlapping_booking_is_reported():
    existing = _booking(_at(10), _at(11))
    result = find_first_conflict(_at(10, 30), _at(11, 30), [existing])
    assert result.has_conflict is True
    assert result.conflicting is existing


def test_adjacent_booking_is_not_a_conflict():
    existing = _booking(_at(10), _at(11))
    assert find_first_conflict(_at(11), _at(12), [existing]).has_conflict is False
    assert find_first_conflict(_at(9), _at(10), [existing]).has_conflict is False


def test_inactive_bookings_never_conflict():
    bookings = [
        _booking(_at(10), _at(11), BookingStatus.CANCELLED),
        _booking(_at(10), _at(11), BookingStatus.COMPLETED),
        _booking(_at(10), _at(11), BookingStatus.NO_SHOW),
    ]
    assert find_first_conflict(_at(10), _at(11), bookings).has_conflict is False


def test_pending_bookings_block_the_slot():
    existing = _booking(_at(10), _at(11), BookingStatus.PENDING)
    assert find_first_conflict(_at(10), _at(11), [existing]).has_conflict is True


def test_excluded_booking_is_ignored():
    existing = _booking(_at(10), _at(11))
    result = find_first_conflict(_at(10), _at(11), [existing], exclude_booking_id=existing.id)
    assert result.has_conflict is False


def test_find_all_conflicts_lists_every_overlap():
    first = _booking(_at(9), _at(10, 30))
    second = _booking(_at(11), _at(12))
    outside = _booking(_at(13), _at(14))
    conflicts = find_all_conflicts(_at(10), _at(11, 30), [first, second, outside])
    assert conflicts == [first, second]


def test_suggestions_skip_past_blocking_bookings():
    policy = BookingPolicy(suggestion_buffer_minutes=15, max_suggestions=3)
    bookings = [_booking(_at(10), _at(11)), _booking(_at(11, 30), _at(12, 30))]

    slots = suggest_free_slots(_at(10), _at(11), bookings, policy)

    assert [(slot.start_time, slot.end_time) for slot in slots] == [
        (_at(12, 45), _at(13, 45)),
        (_at(14), _at(15)),
        (_at(15, 15), _at(16, 15)),
    ]
    for slot in slots:
        assert find_first_conflict(slot.start_time, slot.end_time, bookings).has_conflict is False


def test_suggestions_respect_limit():
    policy = BookingPolicy(max_suggestions=5)
    slots = suggest_free_slots(_at(10), _at(11), [_booking(_at(10), _at(11))], policy, limit=2)
    assert len(slots) == 2


def test_suggested_slot_serializes_to_iso_strings():
    slot = suggest_free_slots(_at(10), _at(11), [], BookingPolicy(), limit=1)[0]
    assert slot.model_dump() == {
        "start_time": _at(10).isoformat(),
        "end_time": _at(11).isoformat(),
    }


def test_accepted_bookings_never_overlap():
    """Greedily accept random intervals; the accepted set must be pairwise disjoint."""
    rng = random.Random(20300102)
    accepted = []
    for _ in range(400):
        start = _at(0) + timedelta(minutes=15 * rng.randrange(0, 96))
        end = start + timedelta(minutes=15 * rng.randrange(1, 9))
        if not find_first_conflict(start, end, accepted).has_conflict:
            accepted.append(_booking(start, end))

    assert accepted
    for index, left in enumerate(accepted):
        assert left.start_time < left.end_time
        for right in accepted[index + 1:]:
            assert not intervals_overlap(left.start_time, left.end_time, right.start_time, right.end_time)
