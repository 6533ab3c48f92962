"""Event publisher backed by Redis Streams."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol
from uuid import UUID, uuid4

import redis

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """Raised when an event could not be handed to the broker."""


@dataclass(frozen=True)
class DomainEvent:
    """Envelope delivered to downstream consumers."""

    type: str
    booking_id: UUID
    tenant_id: UUID
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: UUID = field(default_factory=uuid4)

    def to_stream_fields(self) -> Dict[str, str]:
        return {
            "event_id": str(self.event_id),
            "event_type": self.type,
            "booking_id": str(self.booking_id),
            "tenant_id": str(self.tenant_id),
            "timestamp": self.timestamp.isoformat(),
            "payload": json.dumps(self.payload, default=str),
        }


class Publisher(Protocol):
    def publish(self, event: DomainEvent) -> None: ...


class EventPublisher:
    """Publish domain events to a Redis Stream.

    Failures are raised as :class:`PublishError`; the caller decides whether
    the failure matters. The booking engine logs it and leaves the event in
    the outbox for the dispatcher.
    """

    def __init__(
        self,
        redis_url: str,
        stream_name: str,
        *,
        maxlen: Optional[int] = 1000,
        client: Optional[redis.Redis] = None,
    ) -> None:
        self._stream_name = stream_name
        self._maxlen = maxlen
        self._client = client or redis.Redis.from_url(redis_url)

    @property
    def stream_name(self) -> str:
        return self._stream_name

    def publish(self, event: DomainEvent) -> None:
        """Append ``event`` to the configured stream."""

        try:
            self._client.xadd(
                self._stream_name,
                event.to_stream_fields(),
                maxlen=self._maxlen,
                approximate=True if self._maxlen else False,
            )
        except redis.RedisError as exc:
            raise PublishError(
                f"Failed to publish event '{event.type}' to stream '{self._stream_name}'"
            ) from exc
        logger.debug("Published %s for booking %s", event.type, event.booking_id)

    def close(self) -> None:
        try:
            self._client.close()
        except redis.RedisError:
            logger.warning("Error closing Redis client for stream '%s'", self._stream_name, exc_info=True)
