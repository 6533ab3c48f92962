from __future__ import annotations

import threading
from dataclasses import dataclass, fields


@dataclass(frozen=True)
class MetricsSnapshot:
    bookings_created: int = 0
    bookings_modified: int = 0
    bookings_cancelled: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    validation_failures: int = 0
    events_publish_failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


class BookingMetrics:
    """Process-local counters owned by one engine instance."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters = {item.name: 0 for item in fields(MetricsSnapshot)}

    def increment(self, name: str, amount: int = 1) -> None:
        if name not in self._counters:
            raise KeyError(f"Unknown booking metric: {name}")
        with self._lock:
            self._counters[name] += amount

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(**self._counters)
