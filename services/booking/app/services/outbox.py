"""Outbox delivery for booking lifecycle events.

Events are written to ``booking_events`` inside the booking transaction. The
engine tries to publish each one right after commit; whatever is still
undelivered (publisher down, process crash between commit and publish) is
picked up here. Delivery is at-least-once: consumers deduplicate on
``event_id``. Failed rows are retried with exponential backoff and
dead-lettered after ``max_attempts`` deliveries.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from shared import DomainEvent, Publisher

from app.core.errors import StoreError
from app.models.booking import BookingEvent
from app.services.booking_store import BookingStore

logger = logging.getLogger(__name__)


def to_domain_event(row: BookingEvent) -> DomainEvent:
    return DomainEvent(
        type=row.event_type,
        booking_id=row.booking_id,
        tenant_id=row.tenant_id,
        payload=dict(row.payload or {}),
        timestamp=row.created_at,
        event_id=row.id,
    )


@dataclass(frozen=True)
class DispatchReport:
    dispatched: int = 0
    failed: int = 0
    dead_lettered: int = 0


class OutboxDispatcher:
    def __init__(
        self,
        store: BookingStore,
        publisher: Publisher,
        *,
        batch_size: int = 100,
        interval_seconds: float = 5.0,
        max_attempts: int = 10,
        backoff_seconds: float = 5.0,
        max_backoff_seconds: float = 600.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._batch_size = batch_size
        self._interval_seconds = interval_seconds
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._running = False

    def retry_delay(self, attempts: int) -> timedelta:
        """Exponential backoff after ``attempts`` failed deliveries."""
        seconds = self._backoff_seconds * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(seconds, self._max_backoff_seconds))

    def dispatch_batch(self) -> DispatchReport:
        """Deliver up to one batch of due events, least-tried first."""
        now = self._clock()
        dispatched = failed = dead_lettered = 0
        for row in self._store.pending_events(self._batch_size, due_at=now):
            try:
                self._publisher.publish(to_domain_event(row))
            except Exception as exc:  # noqa: BLE001 - publisher is an external collaborator
                failed += 1
                attempts = row.attempts + 1
                if attempts >= self._max_attempts:
                    dead_lettered += 1
                    logger.error(
                        "Outbox event %s (%s) dead-lettered after %d attempts: %s",
                        row.id,
                        row.event_type,
                        attempts,
                        exc,
                    )
                    self._store.record_dispatch_failure(row.id, str(exc), dead_letter=True)
                else:
                    logger.warning("Outbox delivery failed for event %s (%s): %s", row.id, row.event_type, exc)
                    self._store.record_dispatch_failure(
                        row.id, str(exc), retry_at=now + self.retry_delay(attempts)
                    )
                continue
            self._store.mark_event_dispatched(row.id)
            dispatched += 1

        if dispatched or failed:
            logger.info(
                "Outbox batch finished: dispatched=%d failed=%d dead_lettered=%d",
                dispatched,
                failed,
                dead_lettered,
            )
        return DispatchReport(dispatched=dispatched, failed=failed, dead_lettered=dead_lettered)

    async def run(self, *, max_batches: Optional[int] = None) -> None:
        """Poll the outbox until :meth:`stop` is called."""
        if self._running:
            logger.warning("Outbox dispatcher already running")
            return

        self._running = True
        batches = 0
        try:
            while self._running:
                try:
                    await asyncio.to_thread(self.dispatch_batch)
                except StoreError as exc:
                    logger.error("Outbox dispatcher could not reach the store: %s", exc)
                batches += 1
                if max_batches is not None and batches >= max_batches:
                    break
                await asyncio.sleep(self._interval_seconds)
        except asyncio.CancelledError:
            logger.info("Outbox dispatcher cancelled")
            raise
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False
