from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Header, Query, Request, status

from shared.logging import ACTOR_HEADER, TENANT_HEADER
from app.schemas.booking_schema import (
    BookingConflict,
    BookingOut,
    CancellationOut,
    ConflictReport,
    StatusUpdateRequest,
)
from app.services.booking_engine import BookingEngine

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def get_engine(request: Request) -> BookingEngine:
    return request.app.state.booking_engine


def get_tenant_id(tenant_id: str = Header(..., alias=TENANT_HEADER)) -> str:
    return tenant_id


def get_actor(actor: Optional[str] = Header(None, alias=ACTOR_HEADER)) -> Optional[str]:
    return actor


@router.post("", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def create_booking(
    payload: Dict[str, Any] = Body(...),
    auto_resolve_conflicts: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    actor: Optional[str] = Depends(get_actor),
    engine: BookingEngine = Depends(get_engine),
):
    booking = engine.create_booking(
        tenant_id,
        payload,
        actor=actor,
        auto_resolve_conflicts=auto_resolve_conflicts,
    )
    return BookingOut.model_validate(booking)


# Declared before /{booking_id} so "conflicts" is not parsed as an id.
@router.get("/conflicts", response_model=ConflictReport)
def list_conflicts(
    provider_id: UUID = Query(...),
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    exclude_booking_id: Optional[UUID] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    engine: BookingEngine = Depends(get_engine),
):
    conflicts = engine.find_conflicts(
        tenant_id,
        provider_id,
        start_time,
        end_time,
        exclude_booking_id=exclude_booking_id,
    )
    return ConflictReport(
        has_conflict=bool(conflicts),
        conflicts=[
            BookingConflict(
                booking_id=item.id,
                start_time=item.start_time,
                end_time=item.end_time,
                status=item.status,
            )
            for item in conflicts
        ],
    )


@router.get("/{booking_id}", response_model=BookingOut)
def get_booking(
    booking_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    engine: BookingEngine = Depends(get_engine),
):
    return BookingOut.model_validate(engine.get_booking(tenant_id, booking_id))


@router.patch("/{booking_id}", response_model=BookingOut)
def modify_booking(
    booking_id: UUID,
    payload: Dict[str, Any] = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    actor: Optional[str] = Depends(get_actor),
    engine: BookingEngine = Depends(get_engine),
):
    booking = engine.modify_booking(tenant_id, {**payload, "booking_id": booking_id}, actor=actor)
    return BookingOut.model_validate(booking)


@router.post("/{booking_id}/cancel", response_model=CancellationOut)
def cancel_booking(
    booking_id: UUID,
    payload: Dict[str, Any] = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    actor: Optional[str] = Depends(get_actor),
    engine: BookingEngine = Depends(get_engine),
):
    result = engine.cancel_booking(tenant_id, {**payload, "booking_id": booking_id}, actor=actor)
    return CancellationOut(
        booking=BookingOut.model_validate(result.booking),
        refund_eligible=result.refund_eligible,
        outside_refund_window=result.outside_refund_window,
    )


@router.patch("/{booking_id}/status", response_model=BookingOut)
def update_booking_status(
    booking_id: UUID,
    payload: StatusUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Optional[str] = Depends(get_actor),
    engine: BookingEngine = Depends(get_engine),
):
    booking = engine.update_status(
        tenant_id,
        booking_id,
        payload.status,
        actor=actor,
        reason=payload.reason,
    )
    return BookingOut.model_validate(booking)
