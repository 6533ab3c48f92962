import os
import sys
from pathlib import Path
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

SERVICE_DIR = Path(__file__).resolve().parents[1]
ROOT_DIR = SERVICE_DIR.parent.parent

service_path = str(SERVICE_DIR)
shared_path = str(ROOT_DIR / "services")
for path in (service_path, shared_path):
    if path in sys.path:
        sys.path.remove(path)
    sys.path.insert(0, path)

for module_name in list(sys.modules):
    if module_name == "app" or module_name.startswith("app."):
        sys.modules.pop(module_name)

os.environ.setdefault("BOOKING_DATABASE_URL", f"sqlite:///{SERVICE_DIR / 'test_booking.db'}")
os.environ.setdefault("EVENT_STREAM", "test-stream")
os.environ["REDIS_URL"] = ""

from app.main import app  # noqa: E402
from app.core.database import Base, SessionLocal, engine  # noqa: E402
from app.services.booking_engine import BookingEngine  # noqa: E402
from app.services.booking_store import BookingStore  # noqa: E402
from shared import BookingPolicy  # noqa: E402
from support import RecordingPublisher, fixed_clock  # noqa: E402


@pytest.fixture(autouse=True)
def prepare_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def policy():
    return BookingPolicy()


@pytest.fixture
def store():
    return BookingStore(SessionLocal, lock_timeout_seconds=5.0)


@pytest.fixture
def booking_engine(store, publisher, policy):
    instance = BookingEngine(store, publisher=publisher, policy=policy, clock=fixed_clock)
    instance.initialize()
    yield instance
    instance.shutdown()


@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def provider_id():
    return uuid4()


@pytest.fixture
def client(publisher):
    app.state.event_publisher = publisher
    app.state.policy_provider = lambda _tenant_id: BookingPolicy()
    app.state.clock = fixed_clock

    with TestClient(app) as test_client:
        yield test_client
