"""Structured logging helpers for the booking service."""

from __future__ import annotations

import logging
import os
import sys
import time
from typing import Iterable, Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
import structlog


TENANT_HEADER = "X-Tenant-ID"
ACTOR_HEADER = "X-Actor-ID"
_REQUEST_ID_HEADER = "X-Request-ID"
_TRACE_ID_HEADER = "X-Trace-ID"

# Probe endpoints hit every few seconds by the orchestrator.
_QUIET_PATHS = frozenset({"/health", "/ready", "/metrics"})


def _level_from_env(default: int) -> int:
    name = os.getenv("LOG_LEVEL")
    if not name:
        return default
    level = logging.getLevelName(name.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"LOG_LEVEL must be a logging level name, got {name!r}")
    return level


def configure_logging(service_name: str, level: int = logging.INFO) -> structlog.stdlib.BoundLogger:
    """Configure structlog to emit JSON logs; ``LOG_LEVEL`` overrides ``level``."""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=_level_from_env(level),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger().bind(service=service_name)


class RequestContextLogMiddleware(BaseHTTPMiddleware):
    """Bind tenant, actor and request ids to every log line of a request.

    Each request ends with one ``request_completed`` entry carrying the status
    and duration; 4xx responses log at warning, 5xx at error. Probe endpoints
    are not logged unless they fail.
    """

    def __init__(
        self,
        app,
        *,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        quiet_paths: Iterable[str] = _QUIET_PATHS,
    ) -> None:
        super().__init__(app)
        self._logger = logger or structlog.get_logger()
        self._quiet_paths = frozenset(quiet_paths)

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(_REQUEST_ID_HEADER) or str(uuid4())
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            trace_id=request.headers.get(_TRACE_ID_HEADER) or request_id,
            tenant_id=request.headers.get(TENANT_HEADER),
            actor_id=request.headers.get(ACTOR_HEADER),
            path=request.url.path,
            method=request.method,
        )
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            self._logger.exception("request_failed", duration_ms=_elapsed_ms(started))
            raise
        else:
            self._log_completion(request, response.status_code, _elapsed_ms(started))
            response.headers[_REQUEST_ID_HEADER] = request_id
            return response
        finally:
            structlog.contextvars.clear_contextvars()

    def _log_completion(self, request: Request, status_code: int, duration_ms: float) -> None:
        if status_code >= 500:
            log = self._logger.error
        elif status_code >= 400:
            log = self._logger.warning
        elif request.url.path in self._quiet_paths:
            return
        else:
            log = self._logger.info
        log("request_completed", status_code=status_code, duration_ms=duration_ms)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
