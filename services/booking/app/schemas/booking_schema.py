from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are interpreted as UTC; aware ones are converted."""
    if value is None:
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_CLEARABLE_FIELDS = {"notes", "special_requests"}


class CancellationReason(str, Enum):
    CUSTOMER_REQUEST = "customer_request"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    EMERGENCY = "emergency"
    OTHER = "other"


class CreateBookingRequest(BaseModel):
    """Payload for a new booking."""
    model_config = ConfigDict(str_strip_whitespace=True)

    customer_name: str = Field(min_length=1, max_length=255, examples=["Ana Souza"])
    customer_email: EmailStr = Field(examples=["ana@example.com"])
    customer_phone: str = Field(min_length=10, max_length=20, examples=["+5581999990000"])
    service_id: UUID = Field(examples=["550e8400-e29b-41d4-a716-446655440000"])
    provider_id: UUID = Field(examples=["660e8400-e29b-41d4-a716-446655440001"])
    start_time: datetime = Field(description="ISO 8601; values without an offset are read as UTC", examples=["2030-01-15T10:00:00Z"])
    end_time: datetime = Field(description="ISO 8601; values without an offset are read as UTC", examples=["2030-01-15T11:00:00Z"])
    notes: Optional[str] = Field(default=None, max_length=1000)
    metadata: Optional[Dict[str, Any]] = None
    special_requests: Optional[str] = Field(default=None, max_length=500)

    @field_validator("start_time", "end_time")
    @classmethod
    def ensure_timezone_aware(cls, value: datetime) -> datetime:
        return _ensure_utc(value)


class ModifyBookingRequest(BaseModel):
    """Partial change to an existing booking. At least one field must change."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    booking_id: UUID
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    service_id: Optional[UUID] = None
    provider_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    special_requests: Optional[str] = Field(default=None, max_length=500)
    reason: str = Field(min_length=1, max_length=255)

    @field_validator("start_time", "end_time")
    @classmethod
    def ensure_timezone_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)

    @model_validator(mode="after")
    def require_change(self):
        if not self.changes():
            raise ValueError("at least one of start_time, end_time, service_id, provider_id, notes, special_requests is required")
        return self

    def changes(self) -> Dict[str, Any]:
        """Fields the caller set. Only notes and special_requests may be cleared."""
        requested = self.model_dump(exclude_unset=True, exclude={"booking_id", "reason"})
        return {
            key: value
            for key, value in requested.items()
            if value is not None or key in _CLEARABLE_FIELDS
        }


class CancelBookingRequest(BaseModel):
    booking_id: UUID
    reason: CancellationReason
    notes: Optional[str] = Field(default=None, max_length=500)
    refund_requested: bool = False


class StatusUpdateRequest(BaseModel):
    status: str = Field(pattern="^(confirmed|completed|no_show)$")
    reason: Optional[str] = Field(default=None, max_length=255)


class BookingModificationOut(BaseModel):
    modification_type: str
    actor: Optional[str]
    reason: Optional[str]
    previous_data: Optional[Dict[str, Any]]
    new_data: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingOut(BaseModel):
    id: UUID
    tenant_id: UUID
    service_id: UUID
    provider_id: UUID
    customer_name: str
    customer_email: str
    customer_phone: str
    start_time: datetime
    end_time: datetime
    status: str
    notes: Optional[str]
    special_requests: Optional[str]
    metadata: Dict[str, Any] = Field(validation_alias="metadata_")
    reschedule_count: int
    confirmed_at: Optional[datetime]
    cancellation_reason: Optional[str]
    cancellation_notes: Optional[str]
    cancelled_at: Optional[datetime]
    refund_requested: bool
    refund_eligible: Optional[bool]
    created_at: datetime
    updated_at: datetime
    history: List[BookingModificationOut] = []

    model_config = ConfigDict(from_attributes=True)


class CancellationOut(BaseModel):
    booking: BookingOut
    refund_eligible: bool
    outside_refund_window: bool


class BookingConflict(BaseModel):
    booking_id: UUID
    start_time: datetime
    end_time: datetime
    status: str


class ConflictReport(BaseModel):
    has_conflict: bool
    conflicts: List[BookingConflict]
