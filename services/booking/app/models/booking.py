import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops the offset, so values are stored as naive UTC there and
    re-tagged with UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    ALL = {PENDING, CONFIRMED, COMPLETED, CANCELLED, NO_SHOW}
    ACTIVE = {PENDING, CONFIRMED}
    TERMINAL = {COMPLETED, CANCELLED, NO_SHOW}


class ModificationType:
    CREATED = "created"
    TIME_CHANGED = "time_changed"
    PROVIDER_CHANGED = "provider_changed"
    SERVICE_CHANGED = "service_changed"
    DETAILS_CHANGED = "details_changed"
    CANCELLED = "cancelled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_provider_interval", "tenant_id", "provider_id", "start_time", "end_time"),
        Index("ix_bookings_customer_status", "tenant_id", "customer_email", "status"),
        CheckConstraint("start_time < end_time", name="chk_booking_times"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'completed', 'cancelled', 'no_show')",
            name="chk_booking_status",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False, index=True)
    service_id = Column(Uuid, nullable=False)
    provider_id = Column(Uuid, nullable=False, index=True)

    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(320), nullable=False)
    customer_phone = Column(String(20), nullable=False)

    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.CONFIRMED)

    notes = Column(Text, nullable=True)
    special_requests = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)
    reschedule_count = Column(Integer, nullable=False, default=0)
    confirmed_at = Column(UTCDateTime, nullable=True)

    cancellation_reason = Column(String(50), nullable=True)
    cancellation_notes = Column(Text, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    refund_requested = Column(Boolean, nullable=False, default=False)
    refund_eligible = Column(Boolean, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow, server_default=func.now())

    history = relationship(
        "BookingModification",
        order_by="BookingModification.created_at",
        lazy="selectin",
        back_populates="booking",
    )

    @property
    def is_active(self) -> bool:
        return self.status in BookingStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in BookingStatus.TERMINAL

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, provider={self.provider_id}, "
            f"{self.start_time}..{self.end_time}, status={self.status})>"
        )


class BookingModification(Base):
    __tablename__ = "booking_modifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id = Column(Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(Uuid, nullable=False, index=True)
    modification_type = Column(String(30), nullable=False)
    actor = Column(String(255), nullable=True)
    reason = Column(Text, nullable=True)
    previous_data = Column(JSONType, nullable=True)
    new_data = Column(JSONType, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)

    booking = relationship("Booking", back_populates="history")


class BookingEvent(Base):
    """Outbox row, written in the same transaction as the booking change."""

    __tablename__ = "booking_events"
    __table_args__ = (
        Index("ix_booking_events_pending", "dispatched_at", "dead_lettered_at", "attempts", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id = Column(Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(Uuid, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    dispatched_at = Column(UTCDateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(UTCDateTime, nullable=True)
    dead_lettered_at = Column(UTCDateTime, nullable=True)


class ProviderLock(Base):
    """Serialization point for writers of one provider's calendar."""

    __tablename__ = "provider_locks"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_id", name="uq_provider_locks_tenant_provider"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Uuid, nullable=False)
    provider_id = Column(Uuid, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    max_duration_seconds = Column(Integer, nullable=False, default=0)
