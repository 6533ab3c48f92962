"""Configuration helpers for the booking service."""

from __future__ import annotations

from dataclasses import dataclass
import os
import warnings
from typing import Dict, Optional

# Development-only defaults. Production deployments must set every variable.
_DEFAULT_DATABASE_URLS: Dict[str, str] = {
    "booking": "postgresql://user:password@db_booking:5432/bookingdb",
}

_DEFAULT_REDIS_URL = "redis://redis:6379/0"
_DEFAULT_EVENT_STREAM = "booking-events"
_DEFAULT_HOST = "0.0.0.0"
_DEFAULT_PORT = 8000
_DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0
_DEFAULT_OUTBOX_INTERVAL_SECONDS = 5.0

_INSECURE_PASSWORDS = {"password", "123456", "admin", "root", "test", ""}


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    lock_timeout_seconds: float = _DEFAULT_LOCK_TIMEOUT_SECONDS


@dataclass(frozen=True)
class RedisConfig:
    url: str
    stream: str


@dataclass(frozen=True)
class OutboxConfig:
    interval_seconds: float
    batch_size: int
    max_attempts: int = 10
    backoff_seconds: float = 5.0


@dataclass(frozen=True)
class ServiceConfig:
    name: str
    host: str
    port: int
    database: DatabaseConfig
    redis: RedisConfig
    outbox: OutboxConfig


def _environment() -> str:
    return os.getenv("ENVIRONMENT", os.getenv("ENV", "development")).lower()


def _lookup_database_url(service_name: str) -> str:
    """Lookup the database URL from the environment with a development fallback."""
    service_env = f"{service_name.upper()}_DATABASE_URL"
    db_url = (
        os.getenv(service_env)
        or os.getenv("DATABASE_URL")
        or _DEFAULT_DATABASE_URLS.get(service_name, "")
    )

    if db_url and db_url in _DEFAULT_DATABASE_URLS.values():
        if _environment() in ("production", "prod"):
            raise ValueError(
                f"Default database URLs cannot be used in production. "
                f"Set {service_env} or DATABASE_URL."
            )
        warnings.warn(
            f"Using the default database URL for {service_name}. "
            f"Set {service_env} or DATABASE_URL outside development.",
            UserWarning,
            stacklevel=2,
        )

    return db_url


def _validate_no_insecure_password(password: Optional[str], context: str = "") -> None:
    if password and password.lower() in _INSECURE_PASSWORDS:
        if _environment() in ("production", "prod"):
            raise ValueError(f"Insecure password detected in {context}.")
        warnings.warn(
            f"Insecure password detected in {context}.",
            UserWarning,
            stacklevel=3,
        )


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = float(raw)
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def load_service_config(service_name: str) -> ServiceConfig:
    """Aggregate configuration for a service from environment variables.

    Raises:
        ValueError: if no database URL is configured, a numeric setting is
            invalid, or insecure defaults are used in production.
    """

    normalized_name = service_name.lower()
    db_url = _lookup_database_url(normalized_name)
    if not db_url:
        raise ValueError(
            f"DATABASE_URL not configured for service '{normalized_name}'. "
            f"Set DATABASE_URL or {normalized_name.upper()}_DATABASE_URL."
        )

    if ":" in db_url and "@" in db_url:
        try:
            auth_part = db_url.split("@")[0].split("://")[1]
            if ":" in auth_part:
                password = auth_part.split(":")[1]
                _validate_no_insecure_password(password, f"DATABASE_URL for {service_name}")
        except IndexError:
            pass

    host = os.getenv("APP_HOST", _DEFAULT_HOST)
    port = int(os.getenv("APP_PORT", str(_DEFAULT_PORT)))

    redis_url = os.getenv("REDIS_URL", _DEFAULT_REDIS_URL)
    stream_name = os.getenv("EVENT_STREAM", _DEFAULT_EVENT_STREAM)

    return ServiceConfig(
        name=normalized_name,
        host=host,
        port=port,
        database=DatabaseConfig(
            url=db_url,
            lock_timeout_seconds=_float_env("LOCK_TIMEOUT_SECONDS", _DEFAULT_LOCK_TIMEOUT_SECONDS),
        ),
        redis=RedisConfig(url=redis_url, stream=stream_name),
        outbox=OutboxConfig(
            interval_seconds=_float_env("OUTBOX_INTERVAL_SECONDS", _DEFAULT_OUTBOX_INTERVAL_SECONDS),
            batch_size=int(os.getenv("OUTBOX_BATCH_SIZE", "100")),
            max_attempts=int(os.getenv("OUTBOX_MAX_ATTEMPTS", "10")),
            backoff_seconds=_float_env("OUTBOX_BACKOFF_SECONDS", 5.0),
        ),
    )
