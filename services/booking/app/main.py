import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from app.core.database import Base, SessionLocal, engine
from app.core.errors import BookingEngineError, ErrorCode
from app.routers import bookings
from app.services.booking_engine import BookingEngine
from app.services.booking_store import BookingStore
from app.services.outbox import OutboxDispatcher
from shared import EventPublisher, ensure_schema, load_service_config, resolve_policy_provider
from shared.health import create_health_router
from shared.logging import RequestContextLogMiddleware, configure_logging

logger = configure_logging("booking")

tags_metadata = [
    {
        "name": "Bookings",
        "description": "Create, reschedule, cancel and inspect bookings; detect scheduling conflicts.",
    }
]

_CONFIG = load_service_config("booking")
_ROOT_PATH = os.getenv("APP_ROOT_PATH", "")
_EVENT_PUBLISHER = EventPublisher(_CONFIG.redis.url, _CONFIG.redis.stream) if _CONFIG.redis.url else None


def build_booking_engine(app: FastAPI, session_factory: Optional[sessionmaker] = None) -> BookingEngine:
    """Wire the engine from whatever collaborators are on ``app.state``."""
    store = BookingStore(
        session_factory or SessionLocal,
        lock_timeout_seconds=_CONFIG.database.lock_timeout_seconds,
    )
    app.state.booking_store = store
    return BookingEngine(
        store,
        publisher=getattr(app.state, "event_publisher", None),
        policy_provider=resolve_policy_provider(app.state),
        clock=getattr(app.state, "clock", None),
    )


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    logger.info("booking_service_starting")
    await ensure_schema(service_name="booking", metadata=Base.metadata, engine=engine)

    booking_engine = build_booking_engine(app)
    booking_engine.initialize()
    app.state.booking_engine = booking_engine

    dispatcher_task: Optional[asyncio.Task] = None
    publisher = getattr(app.state, "event_publisher", None)
    if publisher is not None:
        dispatcher = OutboxDispatcher(
            app.state.booking_store,
            publisher,
            batch_size=_CONFIG.outbox.batch_size,
            interval_seconds=_CONFIG.outbox.interval_seconds,
            max_attempts=_CONFIG.outbox.max_attempts,
            backoff_seconds=_CONFIG.outbox.backoff_seconds,
        )
        dispatcher_task = asyncio.create_task(dispatcher.run())
        logger.info("outbox_dispatcher_started", stream=_CONFIG.redis.stream)

    try:
        yield
    finally:
        if dispatcher_task is not None:
            dispatcher_task.cancel()
            try:
                await dispatcher_task
            except asyncio.CancelledError:
                pass
        booking_engine.shutdown()
        logger.info("booking_service_stopped")


app = FastAPI(
    title="Booking Service",
    version="0.1.0",
    description="Multi-tenant appointment booking: availability, conflicts and lifecycle events.",
    openapi_tags=tags_metadata,
    root_path=_ROOT_PATH,
    lifespan=app_lifespan,
)

app.add_middleware(RequestContextLogMiddleware)

app.state.config = _CONFIG
app.state.event_publisher = _EVENT_PUBLISHER


@app.exception_handler(BookingEngineError)
async def booking_error_handler(request: Request, exc: BookingEngineError):
    if exc.status_code >= 500:
        logger.error("booking_operation_failed", error=exc.code, message=exc.message, exc_info=exc.cause)
    else:
        logger.info("booking_operation_rejected", error=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    violations = [
        {
            "field": ".".join(str(part) for part in error["loc"]),
            "message": error["msg"],
            "kind": error["type"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "error": ErrorCode.VALIDATION_FAILED,
            "message": "Invalid request",
            "details": {"violations": violations},
        },
    )


def custom_openapi_schema():
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    schema["openapi"] = "3.0.3"
    app.openapi_schema = schema
    return app.openapi_schema


app.openapi = custom_openapi_schema

app.include_router(bookings.router)
app.include_router(create_health_router("booking", database_engine=engine, redis_url=_CONFIG.redis.url))


@app.get("/metrics", tags=["Health"])
def metrics(request: Request):
    return request.app.state.booking_engine.get_metrics().as_dict()


@app.get("/")
def root():
    return {
        "service": "booking",
        "status": "ok",
        "docs_url": "/docs",
        "config": {
            "redis_stream": _CONFIG.redis.stream,
        },
    }
