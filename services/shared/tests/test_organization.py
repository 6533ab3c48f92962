import os
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

import httpx
import pytest

from shared.organization import (
    BookingPolicy,
    build_policy,
    default_policy_provider,
    resolve_policy_provider,
)


def test_defaults_match_documented_values():
    policy = BookingPolicy()
    assert policy.min_advance_minutes == 30
    assert policy.max_horizon_days == 365
    assert policy.cancellation_window_hours == 24
    assert policy.max_reschedules_per_booking == 3
    assert policy.max_concurrent_bookings == 10
    assert policy.initial_status == "confirmed"


def test_invalid_initial_status_is_rejected():
    with pytest.raises(ValueError):
        BookingPolicy(initial_status="completed")


def test_negative_values_are_rejected():
    with pytest.raises(ValueError, match="max_concurrent_bookings"):
        BookingPolicy(max_concurrent_bookings=-1)


def test_build_policy_merges_payload_over_env_defaults():
    with patch.dict(os.environ, {"DEFAULT_MIN_ADVANCE_MINUTES": "60"}):
        policy = build_policy({"max_reschedules_per_booking": "5", "unknown_key": 1, "max_horizon_days": None})

    assert policy.min_advance_minutes == 60
    assert policy.max_reschedules_per_booking == 5
    assert policy.max_horizon_days == 365


def test_provider_uses_defaults_without_tenant_service():
    with patch.dict(os.environ, {}, clear=True):
        assert default_policy_provider(uuid4()) == BookingPolicy()


def test_provider_reads_tenant_policy():
    tenant_id = uuid4()
    response = MagicMock()
    response.json.return_value = {"initial_status": "pending", "cancellation_window_hours": 48}

    with patch.dict(os.environ, {"TENANT_SERVICE_URL": "http://tenant:8000/"}, clear=True):
        with patch("shared.organization.httpx.get", return_value=response) as get:
            policy = default_policy_provider(tenant_id)

    get.assert_called_once_with(f"http://tenant:8000/tenants/{tenant_id}/booking-policy", timeout=2.0)
    assert policy.initial_status == "pending"
    assert policy.cancellation_window_hours == 48


def test_provider_falls_back_when_tenant_service_fails():
    with patch.dict(os.environ, {"TENANT_SERVICE_URL": "http://tenant:8000"}, clear=True):
        with patch("shared.organization.httpx.get", side_effect=httpx.ConnectError("down")):
            assert default_policy_provider(uuid4()) == BookingPolicy()


def test_resolve_prefers_state_override():
    custom = lambda _tenant_id: BookingPolicy(max_suggestions=1)  # noqa: E731
    assert resolve_policy_provider(SimpleNamespace(policy_provider=custom)) is custom

    state = SimpleNamespace()
    assert resolve_policy_provider(state) is default_policy_provider
    assert state.policy_provider is default_policy_provider
