"""Trace spans and business metrics, written to structlog.

The sink is fire-and-forget: anything that goes wrong while recording is
logged at debug level and dropped, so it can never fail a booking operation.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Protocol

import structlog

logger = structlog.get_logger(__name__)


class Span:
    def __init__(self, name: str, tags: Dict[str, Any]) -> None:
        self.name = name
        self.tags = dict(tags)
        self.status = "success"
        self.started = time.perf_counter()

    def set_tag(self, key: str, value: Any) -> None:
        self.tags[key] = value

    def log(self, level: str, message: str, **fields: Any) -> None:
        try:
            getattr(logger, level)(message, span=self.name, **self.tags, **fields)
        except Exception:  # noqa: BLE001
            logger.debug("span_log_dropped", span=self.name)


class Observability(Protocol):
    def span(self, name: str, **tags: Any): ...

    def record_metric(self, name: str, value: float = 1, **labels: Any) -> None: ...


class StructlogObservability:
    @contextmanager
    def span(self, name: str, **tags: Any) -> Iterator[Span]:
        span = Span(name, tags)
        try:
            yield span
        except BaseException:
            span.status = "error"
            raise
        finally:
            self._finish(span)

    def _finish(self, span: Span) -> None:
        try:
            duration_ms = round((time.perf_counter() - span.started) * 1000, 3)
            logger.info("span_finished", span=span.name, status=span.status, duration_ms=duration_ms, **span.tags)
        except Exception:  # noqa: BLE001
            logger.debug("span_dropped", span=span.name)

    def record_metric(self, name: str, value: float = 1, **labels: Any) -> None:
        try:
            logger.info("business_metric", metric=name, value=value, **{k: str(v) for k, v in labels.items()})
        except Exception:  # noqa: BLE001
            logger.debug("metric_dropped", metric=name)
