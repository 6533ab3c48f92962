"""Shared utilities used by the booking service."""

from .config import ServiceConfig, load_service_config
from .messaging import DomainEvent, EventPublisher, PublishError, Publisher
from .organization import (
    BookingPolicy,
    PolicyProvider,
    build_policy,
    default_policy_provider,
    resolve_policy_provider,
)
from .startup import ensure_schema

__all__ = [
    "ServiceConfig",
    "load_service_config",
    "DomainEvent",
    "EventPublisher",
    "PublishError",
    "Publisher",
    "BookingPolicy",
    "PolicyProvider",
    "build_policy",
    "default_policy_provider",
    "resolve_policy_provider",
    "ensure_schema",
]
