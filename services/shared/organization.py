"""Per-tenant booking policy settings."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Callable, Mapping
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
_INITIAL_STATUSES = {STATUS_PENDING, STATUS_CONFIRMED}


@dataclass(frozen=True)
class BookingPolicy:
    min_advance_minutes: int = 30
    max_horizon_days: int = 365
    cancellation_window_hours: int = 24
    max_reschedules_per_booking: int = 3
    max_concurrent_bookings: int = 10
    initial_status: str = STATUS_CONFIRMED
    suggestion_buffer_minutes: int = 15
    max_suggestions: int = 5

    def __post_init__(self) -> None:
        if self.initial_status not in _INITIAL_STATUSES:
            raise ValueError(f"initial_status must be one of {sorted(_INITIAL_STATUSES)}")
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, int) and value < 0:
                raise ValueError(f"{item.name} must not be negative")


PolicyProvider = Callable[[UUID], BookingPolicy]


def _env_defaults() -> dict[str, Any]:
    return {
        "min_advance_minutes": int(os.getenv("DEFAULT_MIN_ADVANCE_MINUTES", "30")),
        "max_horizon_days": int(os.getenv("DEFAULT_MAX_HORIZON_DAYS", "365")),
        "cancellation_window_hours": int(os.getenv("DEFAULT_CANCELLATION_HOURS", "24")),
        "max_reschedules_per_booking": int(os.getenv("DEFAULT_MAX_RESCHEDULES", "3")),
        "max_concurrent_bookings": int(os.getenv("DEFAULT_MAX_CONCURRENT_BOOKINGS", "10")),
        "initial_status": os.getenv("DEFAULT_INITIAL_STATUS", STATUS_CONFIRMED),
        "suggestion_buffer_minutes": int(os.getenv("DEFAULT_SUGGESTION_BUFFER_MINUTES", "15")),
        "max_suggestions": int(os.getenv("DEFAULT_MAX_SUGGESTIONS", "5")),
    }


def build_policy(payload: Mapping[str, Any] | None = None) -> BookingPolicy:
    """Merge ``payload`` over the environment defaults, ignoring unknown keys."""
    values = _env_defaults()
    known = {item.name for item in fields(BookingPolicy)}
    for key, value in (payload or {}).items():
        if key in known and value is not None:
            values[key] = value if key == "initial_status" else int(value)
    return BookingPolicy(**values)


def default_policy_provider(tenant_id: UUID) -> BookingPolicy:
    base_url = os.getenv("TENANT_SERVICE_URL")
    if base_url:
        url = f"{base_url.rstrip('/')}/tenants/{tenant_id}/booking-policy"
        try:
            response = httpx.get(url, timeout=2.0)
            response.raise_for_status()
            return build_policy(response.json())
        except (httpx.HTTPError, ValueError):
            logger.warning("Falling back to default booking policy for tenant %s", tenant_id, exc_info=True)
    return build_policy()


def resolve_policy_provider(app_state) -> PolicyProvider:
    provider = getattr(app_state, "policy_provider", None)
    if provider is None:
        provider = default_policy_provider
        setattr(app_state, "policy_provider", provider)
    return provider
