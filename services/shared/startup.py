"""Startup helpers for FastAPI services."""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.sql.schema import MetaData

logger = logging.getLogger(__name__)


async def ensure_schema(
    *,
    service_name: str,
    metadata: MetaData,
    engine: Engine,
    retries: int = 10,
    wait_seconds: float = 2.0,
) -> None:
    """Create missing tables, waiting for the database to come up.

    Raises the last ``OperationalError`` once ``retries`` attempts failed.
    """
    for attempt in range(retries):
        try:
            await asyncio.to_thread(metadata.create_all, bind=engine)
            return
        except OperationalError as exc:
            if attempt == retries - 1:
                logger.error("[%s] database unavailable after %d attempts", service_name, retries)
                raise
            logger.warning(
                "[%s] database unavailable, retrying in %ss (attempt %d): %s",
                service_name,
                wait_seconds,
                attempt + 1,
                exc,
            )
            await asyncio.sleep(wait_seconds)
