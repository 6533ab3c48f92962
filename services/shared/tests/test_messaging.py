import json
from datetime import datetime, timezone
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
import redis

from shared.messaging import DomainEvent, EventPublisher, PublishError


def _event(**overrides) -> DomainEvent:
    values = {
        "type": "booking.created",
        "booking_id": uuid4(),
        "tenant_id": uuid4(),
        "payload": {"start_time": "2030-01-02T10:00:00+00:00", "status": "confirmed"},
        "timestamp": datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return DomainEvent(**values)


def test_stream_fields_are_flat_strings():
    event = _event()
    fields = event.to_stream_fields()

    assert fields["event_id"] == str(event.event_id)
    assert fields["event_type"] == "booking.created"
    assert fields["booking_id"] == str(event.booking_id)
    assert fields["tenant_id"] == str(event.tenant_id)
    assert fields["timestamp"] == "2030-01-01T09:00:00+00:00"
    assert json.loads(fields["payload"]) == event.payload
    assert all(isinstance(value, str) for value in fields.values())


def test_each_event_gets_its_own_id():
    assert _event().event_id != _event().event_id


def test_publish_appends_to_stream():
    client = MagicMock()
    publisher = EventPublisher("redis://unused", "booking-events", maxlen=500, client=client)
    event = _event()

    publisher.publish(event)

    client.xadd.assert_called_once_with(
        "booking-events",
        event.to_stream_fields(),
        maxlen=500,
        approximate=True,
    )
    assert publisher.stream_name == "booking-events"


def test_unbounded_stream_is_not_trimmed():
    client = MagicMock()
    EventPublisher("redis://unused", "booking-events", maxlen=None, client=client).publish(_event())
    assert client.xadd.call_args.kwargs["approximate"] is False


def test_redis_failure_becomes_publish_error():
    client = MagicMock()
    client.xadd.side_effect = redis.ConnectionError("connection refused")
    publisher = EventPublisher("redis://unused", "booking-events", client=client)

    with pytest.raises(PublishError) as exc_info:
        publisher.publish(_event())

    assert isinstance(exc_info.value.__cause__, redis.ConnectionError)


def test_close_swallows_redis_errors():
    client = MagicMock()
    client.close.side_effect = redis.ConnectionError("gone")
    EventPublisher("redis://unused", "booking-events", client=client).close()
    client.close.assert_called_once()
