from unittest.mock import MagicMock

import pytest
from sqlalchemy import Column, Integer, MetaData, Table, create_engine, inspect
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from shared.startup import ensure_schema


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _metadata() -> MetaData:
    metadata = MetaData()
    Table("things", metadata, Column("id", Integer, primary_key=True))
    return metadata


@pytest.mark.anyio
async def test_creates_missing_tables():
    engine = create_engine("sqlite:///:memory:", poolclass=StaticPool, connect_args={"check_same_thread": False})

    await ensure_schema(service_name="booking", metadata=_metadata(), engine=engine)

    assert inspect(engine).has_table("things")


@pytest.mark.anyio
async def test_retries_until_database_answers():
    metadata = MagicMock()
    metadata.create_all.side_effect = [OperationalError("SELECT 1", {}, Exception("down")), None]

    await ensure_schema(service_name="booking", metadata=metadata, engine=MagicMock(), wait_seconds=0)

    assert metadata.create_all.call_count == 2


@pytest.mark.anyio
async def test_gives_up_after_retries():
    metadata = MagicMock()
    metadata.create_all.side_effect = OperationalError("SELECT 1", {}, Exception("down"))

    with pytest.raises(OperationalError):
        await ensure_schema(service_name="booking", metadata=metadata, engine=MagicMock(), retries=3, wait_seconds=0)

    assert metadata.create_all.call_count == 3
