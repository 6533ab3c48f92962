"""Liveness and readiness endpoints for FastAPI services."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import redis
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


def check_database_health(engine: Optional[Engine]) -> bool:
    if engine is None:
        return False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return True
    except SQLAlchemyError as exc:
        logger.warning("Database health check failed: %s", exc)
        return False


def check_redis_health(redis_url: Optional[str]) -> Optional[bool]:
    """``None`` when Redis is not configured, otherwise whether it answers PING."""
    if not redis_url:
        return None
    client = redis.Redis.from_url(redis_url, socket_connect_timeout=1.0, socket_timeout=1.0)
    try:
        client.ping()
        return True
    except redis.RedisError as exc:
        logger.warning("Redis health check failed: %s", exc)
        return False
    finally:
        client.close()


def create_health_router(
    service_name: str,
    database_engine: Optional[Engine] = None,
    redis_url: Optional[str] = None,
) -> APIRouter:
    router = APIRouter(tags=["Health"])

    @router.get("/health", status_code=status.HTTP_200_OK)
    def health():
        """Always 200 while the process is up; dependencies are checked by /ready."""
        return {
            "status": "ok",
            "service": service_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @router.get("/ready")
    def ready():
        checks = {
            "database": check_database_health(database_engine),
            "redis": check_redis_health(redis_url),
        }
        # Redis is optional: only an unreachable configured instance fails readiness.
        healthy = checks["database"] and checks["redis"] is not False
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "ready" if healthy else "not_ready",
                "service": service_name,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "checks": checks,
            },
        )

    return router
