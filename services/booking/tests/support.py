"""Helpers shared by the booking service tests."""

from datetime import datetime, timedelta, timezone
from typing import List
from uuid import uuid4

from shared import DomainEvent, PublishError

FIXED_NOW = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


class RecordingPublisher:
    """In-memory publisher; flip ``fail`` to simulate a broker outage."""

    def __init__(self) -> None:
        self.events: List[DomainEvent] = []
        self.fail = False
        self.closed = False

    def publish(self, event: DomainEvent) -> None:
        if self.fail:
            raise PublishError("broker unavailable")
        self.events.append(event)

    def close(self) -> None:
        self.closed = True

    @property
    def types(self) -> List[str]:
        return [event.type for event in self.events]


def booking_payload(start: datetime, duration_minutes: int = 60, **overrides) -> dict:
    payload = {
        "customer_name": "Ana Souza",
        "customer_email": "ana@example.com",
        "customer_phone": "+5581999990000",
        "service_id": str(uuid4()),
        "provider_id": str(uuid4()),
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(minutes=duration_minutes)).isoformat(),
    }
    payload.update(overrides)
    return payload
