"""Booking engine: create, modify, cancel and advance bookings for a tenant.

Every mutating operation runs as one store transaction. Time-policy checks
happen before the store is touched; conflict detection and the insert or
update happen inside the transaction while the provider lock is held, so two
callers can never both book overlapping intervals for the same provider.

Lifecycle events are written to the outbox in the same transaction and
published after commit. A failed publish never fails the operation; the
outbox dispatcher re-delivers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type, TypeVar, Union
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from shared import BookingPolicy, PolicyProvider, Publisher, build_policy

from app.core.errors import (
    BookingEngineError,
    CancellationError,
    CreationError,
    ErrorCode,
    FieldViolation,
    ModificationError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from app.models.booking import Booking, BookingEvent, BookingStatus, ModificationType, ProviderLock
from app.schemas.booking_schema import (
    CancelBookingRequest,
    CreateBookingRequest,
    ModifyBookingRequest,
)
from app.services.booking_store import BookingStore, StoreTransaction
from app.services.conflict_detector import (
    SuggestedSlot,
    find_all_conflicts,
    find_first_conflict,
    suggest_free_slots,
)
from app.services.metrics import BookingMetrics, MetricsSnapshot
from app.services.observability import Observability, StructlogObservability
from app.services.outbox import to_domain_event
from app.services.time_policy import (
    TimeViolation,
    as_utc,
    check_booking_window,
    describe_violation,
    is_refund_eligible,
)

logger = structlog.get_logger(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)

EVENT_CREATED = "booking.created"
EVENT_MODIFIED = "booking.modified"
EVENT_CANCELLED = "booking.cancelled"
EVENT_STATUS_CHANGED = "booking.status_changed"

ALLOWED_TRANSITIONS: Dict[str, set] = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW},
}

# Transitions reachable through update_status; cancellation has its own operation.
_STATUS_UPDATE_TARGETS = {BookingStatus.CONFIRMED, BookingStatus.COMPLETED, BookingStatus.NO_SHOW}

_VIOLATION_FIELDS = {
    TimeViolation.INVALID_ORDER: "end_time",
    TimeViolation.TOO_SOON: "start_time",
    TimeViolation.TOO_FAR: "start_time",
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def _booking_summary(booking: Booking) -> Dict[str, Any]:
    return {
        "booking_id": str(booking.id),
        "start_time": booking.start_time.isoformat(),
        "end_time": booking.end_time.isoformat(),
        "status": booking.status,
    }


@dataclass(frozen=True)
class CancellationResult:
    booking: Booking
    refund_eligible: bool
    outside_refund_window: bool


class BookingEngine:
    def __init__(
        self,
        store: BookingStore,
        *,
        publisher: Optional[Publisher] = None,
        policy_provider: Optional[PolicyProvider] = None,
        policy: Optional[BookingPolicy] = None,
        observability: Optional[Observability] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if policy_provider is None:
            fixed = policy or build_policy()
            policy_provider = lambda _tenant_id: fixed  # noqa: E731
        self._store = store
        self._publisher = publisher
        self._policy_provider = policy_provider
        self._observability = observability or StructlogObservability()
        self._clock = clock or _utcnow
        self._metrics = BookingMetrics()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        logger.info("booking_engine_initialized", publisher=type(self._publisher).__name__)

    def shutdown(self) -> None:
        if not self._initialized:
            return
        self._initialized = False
        close = getattr(self._publisher, "close", None)
        if callable(close):
            try:
                close()
            except Exception:  # noqa: BLE001 - shutdown must not raise
                logger.warning("publisher_close_failed", exc_info=True)
        logger.info("booking_engine_shutdown")

    def get_metrics(self) -> MetricsSnapshot:
        return self._metrics.snapshot()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def create_booking(
        self,
        tenant_id: Union[UUID, str],
        data: Union[CreateBookingRequest, Mapping[str, Any]],
        *,
        actor: Optional[str] = None,
        auto_resolve_conflicts: bool = False,
    ) -> Booking:
        """Validate, check availability and persist a new booking.

        With ``auto_resolve_conflicts`` a conflicting request is booked into
        the first suggested free slot instead of being rejected.
        """
        tenant_id = self._tenant(tenant_id)
        with self._observability.span("booking.create", tenant_id=str(tenant_id)) as span:
            request = self._parse(CreateBookingRequest, data, "create")
            span.set_tag("provider_id", str(request.provider_id))
            policy = self._policy_provider(tenant_id)
            now = self._clock()
            self._check_window(now, request.start_time, request.end_time, policy)

            try:
                with self._store.transaction() as tx:
                    booking, event, resolved = self._insert_booking(
                        tx, tenant_id, request, policy, now, actor, auto_resolve_conflicts
                    )
            except StoreError as exc:
                raise CreationError("Booking could not be created", cause=exc) from exc

            self._metrics.increment("bookings_created")
            if resolved:
                self._metrics.increment("conflicts_resolved")
            span.set_tag("booking_id", str(booking.id))
            logger.info(
                "booking_created",
                tenant_id=str(tenant_id),
                booking_id=str(booking.id),
                provider_id=str(booking.provider_id),
                conflict_resolved=resolved,
            )
            self._observability.record_metric("bookings_created", tenant_id=tenant_id)
            self._publish_committed(event)
            return booking

    def modify_booking(
        self,
        tenant_id: Union[UUID, str],
        data: Union[ModifyBookingRequest, Mapping[str, Any]],
        *,
        actor: Optional[str] = None,
    ) -> Booking:
        tenant_id = self._tenant(tenant_id)
        with self._observability.span("booking.modify", tenant_id=str(tenant_id)) as span:
            request = self._parse(ModifyBookingRequest, data, "modify")
            span.set_tag("booking_id", str(request.booking_id))
            policy = self._policy_provider(tenant_id)
            now = self._clock()
            if request.start_time is not None and request.end_time is not None:
                self._check_window(now, request.start_time, request.end_time, policy)

            try:
                with self._store.transaction() as tx:
                    booking, event = self._apply_modification(tx, tenant_id, request, policy, now, actor)
            except StoreError as exc:
                raise ModificationError("Booking could not be modified", cause=exc) from exc

            self._metrics.increment("bookings_modified")
            logger.info("booking_modified", tenant_id=str(tenant_id), booking_id=str(booking.id))
            self._observability.record_metric("bookings_modified", tenant_id=tenant_id)
            self._publish_committed(event)
            return booking

    def cancel_booking(
        self,
        tenant_id: Union[UUID, str],
        data: Union[CancelBookingRequest, Mapping[str, Any]],
        *,
        actor: Optional[str] = None,
    ) -> CancellationResult:
        tenant_id = self._tenant(tenant_id)
        with self._observability.span("booking.cancel", tenant_id=str(tenant_id)) as span:
            request = self._parse(CancelBookingRequest, data, "cancel")
            span.set_tag("booking_id", str(request.booking_id))
            policy = self._policy_provider(tenant_id)
            now = self._clock()

            try:
                with self._store.transaction() as tx:
                    booking = self._load_for_update(tx, tenant_id, request.booking_id)
                    if booking.is_terminal:
                        raise CancellationError(
                            f"Booking is already {booking.status}",
                            code=ErrorCode.BOOKING_FINALIZED,
                            details={"status": booking.status},
                        )

                    within_window = is_refund_eligible(now, booking.start_time, policy)
                    previous_status = booking.status
                    booking.status = BookingStatus.CANCELLED
                    booking.cancelled_at = now
                    booking.cancellation_reason = request.reason.value
                    booking.cancellation_notes = request.notes
                    booking.refund_requested = request.refund_requested
                    booking.refund_eligible = within_window if request.refund_requested else None
                    booking.updated_at = now

                    tx.record_modification(
                        booking,
                        ModificationType.CANCELLED,
                        actor=actor,
                        reason=request.reason.value,
                        previous_data={"status": previous_status},
                        new_data={
                            "status": BookingStatus.CANCELLED,
                            "refund_requested": request.refund_requested,
                            "refund_eligible": booking.refund_eligible,
                        },
                    )
                    event = tx.enqueue_event(
                        booking,
                        EVENT_CANCELLED,
                        {
                            **_booking_summary(booking),
                            "reason": request.reason.value,
                            "refund_requested": request.refund_requested,
                            "refund_eligible": booking.refund_eligible,
                        },
                    )
            except StoreError as exc:
                raise CancellationError("Booking could not be cancelled", cause=exc) from exc

            self._metrics.increment("bookings_cancelled")
            logger.info(
                "booking_cancelled",
                tenant_id=str(tenant_id),
                booking_id=str(booking.id),
                reason=request.reason.value,
                refund_eligible=booking.refund_eligible,
            )
            self._observability.record_metric("bookings_cancelled", tenant_id=tenant_id, reason=request.reason.value)
            self._publish_committed(event)
            return CancellationResult(
                booking=booking,
                refund_eligible=bool(request.refund_requested and within_window),
                outside_refund_window=bool(request.refund_requested and not within_window),
            )

    def update_status(
        self,
        tenant_id: Union[UUID, str],
        booking_id: Union[UUID, str],
        status: str,
        *,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        """Advance a booking along pending -> confirmed -> completed / no_show."""
        tenant_id = self._tenant(tenant_id)
        booking_id = self._booking_id(booking_id)
        if status not in _STATUS_UPDATE_TARGETS:
            self._metrics.increment("validation_failures")
            raise ValidationError(
                "Invalid status update",
                [FieldViolation("status", f"status must be one of {sorted(_STATUS_UPDATE_TARGETS)}")],
            )

        with self._observability.span("booking.update_status", tenant_id=str(tenant_id), status=status):
            now = self._clock()
            try:
                with self._store.transaction() as tx:
                    booking = self._load_for_update(tx, tenant_id, booking_id)
                    if booking.is_terminal:
                        raise ModificationError(
                            f"Booking is already {booking.status}",
                            code=ErrorCode.BOOKING_FINALIZED,
                            details={"status": booking.status},
                        )
                    if not can_transition(booking.status, status):
                        raise ModificationError(
                            f"Cannot move booking from {booking.status} to {status}",
                            code=ErrorCode.INVALID_TRANSITION,
                            details={"from": booking.status, "to": status},
                        )

                    previous_status = booking.status
                    booking.status = status
                    if status == BookingStatus.CONFIRMED:
                        booking.confirmed_at = now
                    booking.updated_at = now
                    tx.record_modification(
                        booking,
                        status,
                        actor=actor,
                        reason=reason,
                        previous_data={"status": previous_status},
                        new_data={"status": status},
                    )
                    event = tx.enqueue_event(
                        booking,
                        EVENT_STATUS_CHANGED,
                        {**_booking_summary(booking), "previous_status": previous_status},
                    )
            except StoreError as exc:
                raise ModificationError("Booking status could not be updated", cause=exc) from exc

            logger.info("booking_status_changed", booking_id=str(booking.id), status=status)
            self._publish_committed(event)
            return booking

    def get_booking(self, tenant_id: Union[UUID, str], booking_id: Union[UUID, str]) -> Booking:
        tenant_id = self._tenant(tenant_id)
        booking_id = self._booking_id(booking_id)
        try:
            booking = self._store.get_booking(tenant_id, booking_id)
        except StoreError as exc:
            raise BookingEngineError(
                "Booking store unavailable", code=ErrorCode.STORE_UNAVAILABLE, cause=exc
            ) from exc
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found", details={"booking_id": str(booking_id)})
        return booking

    def find_conflicts(
        self,
        tenant_id: Union[UUID, str],
        provider_id: Union[UUID, str],
        start_time: datetime,
        end_time: datetime,
        *,
        exclude_booking_id: Optional[UUID] = None,
    ) -> List[Booking]:
        """Every active booking of ``provider_id`` overlapping the interval."""
        tenant_id = self._tenant(tenant_id)
        provider_id = self._uuid(provider_id, "provider_id")
        start_time, end_time = as_utc(start_time), as_utc(end_time)
        if end_time <= start_time:
            self._metrics.increment("validation_failures")
            raise ValidationError(
                "Invalid interval",
                [FieldViolation("end_time", "end_time must be after start_time", TimeViolation.INVALID_ORDER.value)],
            )
        try:
            with self._store.transaction() as tx:
                window = tx.peek_window(tenant_id, provider_id, start_time, end_time)
                candidates = tx.list_active_for_provider(
                    tenant_id, provider_id, *window, exclude_booking_id=exclude_booking_id
                )
        except StoreError as exc:
            raise BookingEngineError(
                "Booking store unavailable", code=ErrorCode.STORE_UNAVAILABLE, cause=exc
            ) from exc
        return find_all_conflicts(start_time, end_time, candidates, exclude_booking_id=exclude_booking_id)

    # ------------------------------------------------------------------
    # Transaction bodies
    # ------------------------------------------------------------------
    def _insert_booking(
        self,
        tx: StoreTransaction,
        tenant_id: UUID,
        request: CreateBookingRequest,
        policy: BookingPolicy,
        now: datetime,
        actor: Optional[str],
        auto_resolve: bool,
    ) -> Tuple[Booking, BookingEvent, bool]:
        start, end = request.start_time, request.end_time
        lock = tx.lock_provider(tenant_id, request.provider_id)
        window = tx.conflict_window(lock, start, end, duration=end - start)
        active = tx.list_active_for_provider(tenant_id, request.provider_id, *window)

        resolved = False
        result = find_first_conflict(start, end, active)
        if result.has_conflict:
            self._metrics.increment("conflicts_detected")
            slot = None
            if auto_resolve:
                slot = self._first_bookable_slot(tx, lock, tenant_id, request.provider_id, start, end, active, policy, now)
            if slot is None:
                raise self._conflict_error(CreationError, result.conflicting, start, end, active, policy, now)
            logger.info(
                "booking_conflict_resolved",
                requested_start=start.isoformat(),
                resolved_start=slot.start_time.isoformat(),
            )
            start, end = slot.start_time, slot.end_time
            resolved = True

        active_for_customer = tx.count_active_for_customer(tenant_id, request.customer_email)
        if active_for_customer >= policy.max_concurrent_bookings:
            raise CreationError(
                "Customer has reached the maximum number of active bookings",
                code=ErrorCode.CONCURRENCY_LIMIT,
                details={"limit": policy.max_concurrent_bookings, "active": active_for_customer},
            )

        booking = Booking(
            id=uuid4(),
            tenant_id=tenant_id,
            service_id=request.service_id,
            provider_id=request.provider_id,
            customer_name=request.customer_name,
            customer_email=str(request.customer_email),
            customer_phone=request.customer_phone,
            start_time=start,
            end_time=end,
            status=policy.initial_status,
            confirmed_at=now if policy.initial_status == BookingStatus.CONFIRMED else None,
            notes=request.notes,
            special_requests=request.special_requests,
            metadata_=dict(request.metadata or {}),
            reschedule_count=0,
            refund_requested=False,
            created_at=now,
            updated_at=now,
            history=[],
        )
        tx.add_booking(booking)
        tx.record_duration(lock, end - start)
        tx.flush()

        tx.record_modification(
            booking,
            ModificationType.CREATED,
            actor=actor,
            new_data={
                "start_time": start.isoformat(),
                "end_time": end.isoformat(),
                "status": booking.status,
                "conflict_resolved": resolved,
            },
        )
        event = tx.enqueue_event(
            booking,
            EVENT_CREATED,
            {
                **_booking_summary(booking),
                "provider_id": str(booking.provider_id),
                "service_id": str(booking.service_id),
                "customer_email": booking.customer_email,
                "conflict_resolved": resolved,
            },
        )
        return booking, event, resolved

    def _apply_modification(
        self,
        tx: StoreTransaction,
        tenant_id: UUID,
        request: ModifyBookingRequest,
        policy: BookingPolicy,
        now: datetime,
        actor: Optional[str],
    ) -> Tuple[Booking, BookingEvent]:
        changes = request.changes()
        booking = self._load_for_update(tx, tenant_id, request.booking_id)
        if booking.is_terminal:
            raise ModificationError(
                f"Booking is already {booking.status}",
                code=ErrorCode.BOOKING_FINALIZED,
                details={"status": booking.status},
            )

        new_start = changes.get("start_time", booking.start_time)
        new_end = changes.get("end_time", booking.end_time)
        new_provider = changes.get("provider_id", booking.provider_id)
        interval_changed = new_start != booking.start_time or new_end != booking.end_time
        provider_changed = new_provider != booking.provider_id

        if interval_changed and booking.reschedule_count >= policy.max_reschedules_per_booking:
            raise ModificationError(
                "Booking has reached the maximum number of reschedules",
                code=ErrorCode.RESCHEDULE_LIMIT,
                details={"limit": policy.max_reschedules_per_booking},
            )

        if interval_changed or provider_changed:
            self._check_window(now, new_start, new_end, policy)
            lock = tx.lock_provider(tenant_id, new_provider)
            window = tx.conflict_window(lock, new_start, new_end, duration=new_end - new_start)
            active = tx.list_active_for_provider(
                tenant_id, new_provider, *window, exclude_booking_id=booking.id
            )
            result = find_first_conflict(new_start, new_end, active, exclude_booking_id=booking.id)
            if result.has_conflict:
                self._metrics.increment("conflicts_detected")
                raise self._conflict_error(
                    ModificationError, result.conflicting, new_start, new_end, active, policy, now
                )
            tx.record_duration(lock, new_end - new_start)

        previous_data = {field: _jsonable(getattr(booking, field)) for field in changes}
        for field, value in changes.items():
            setattr(booking, field, value)
        if interval_changed:
            booking.reschedule_count += 1
        booking.updated_at = now

        if interval_changed:
            modification_type = ModificationType.TIME_CHANGED
        elif provider_changed:
            modification_type = ModificationType.PROVIDER_CHANGED
        elif "service_id" in changes:
            modification_type = ModificationType.SERVICE_CHANGED
        else:
            modification_type = ModificationType.DETAILS_CHANGED

        new_data = {field: _jsonable(value) for field, value in changes.items()}
        tx.record_modification(
            booking,
            modification_type,
            actor=actor,
            reason=request.reason,
            previous_data=previous_data,
            new_data=new_data,
        )
        event = tx.enqueue_event(
            booking,
            EVENT_MODIFIED,
            {
                **_booking_summary(booking),
                "modification_type": modification_type,
                "changes": new_data,
                "reschedule_count": booking.reschedule_count,
            },
        )
        return booking, event

    def _first_bookable_slot(
        self,
        tx: StoreTransaction,
        lock: ProviderLock,
        tenant_id: UUID,
        provider_id: UUID,
        start: datetime,
        end: datetime,
        active: List[Booking],
        policy: BookingPolicy,
        now: datetime,
    ) -> Optional[SuggestedSlot]:
        # Suggestions are computed from the requested window only; re-check
        # each one against its own window before booking it.
        for slot in suggest_free_slots(start, end, active, policy):
            if check_booking_window(now, slot.start_time, slot.end_time, policy) is not None:
                continue
            window = tx.conflict_window(lock, slot.start_time, slot.end_time, duration=end - start)
            around = tx.list_active_for_provider(tenant_id, provider_id, *window)
            if not find_first_conflict(slot.start_time, slot.end_time, around).has_conflict:
                return slot
        return None

    def _conflict_error(
        self,
        error_cls: Type[BookingEngineError],
        conflicting: Booking,
        start: datetime,
        end: datetime,
        active: List[Booking],
        policy: BookingPolicy,
        now: datetime,
    ) -> BookingEngineError:
        suggestions = [
            slot.model_dump()
            for slot in suggest_free_slots(start, end, active, policy)
            if check_booking_window(now, slot.start_time, slot.end_time, policy) is None
        ]
        logger.info(
            "booking_conflict_detected",
            conflicting_booking_id=str(conflicting.id),
            suggestions=len(suggestions),
        )
        return error_cls(
            "Requested time conflicts with an existing booking",
            code=ErrorCode.TIME_CONFLICT,
            details={"conflicting_booking": _booking_summary(conflicting), "suggested_times": suggestions},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _load_for_update(self, tx: StoreTransaction, tenant_id: UUID, booking_id: UUID) -> Booking:
        booking = tx.get_booking(tenant_id, booking_id, for_update=True)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found", details={"booking_id": str(booking_id)})
        return booking

    def _parse(self, model: Type[RequestT], data: Any, operation: str) -> RequestT:
        if isinstance(data, model):
            return data
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            self._metrics.increment("validation_failures")
            violations = [
                FieldViolation(
                    field=".".join(str(part) for part in error["loc"]) or "request",
                    message=error["msg"],
                    kind=error["type"],
                )
                for error in exc.errors()
            ]
            raise ValidationError(f"Invalid {operation} request", violations) from exc

    def _check_window(self, now: datetime, start: datetime, end: datetime, policy: BookingPolicy) -> None:
        violation = check_booking_window(now, start, end, policy)
        if violation is None:
            return
        self._metrics.increment("validation_failures")
        raise ValidationError(
            describe_violation(violation, policy),
            [FieldViolation(_VIOLATION_FIELDS[violation], describe_violation(violation, policy), violation.value)],
        )

    def _uuid(self, value: Union[UUID, str], field: str) -> UUID:
        if isinstance(value, UUID):
            return value
        try:
            return UUID(str(value))
        except ValueError as exc:
            self._metrics.increment("validation_failures")
            raise ValidationError(f"Invalid {field}", [FieldViolation(field, "must be a valid UUID")]) from exc

    def _tenant(self, value: Union[UUID, str]) -> UUID:
        return self._uuid(value, "tenant_id")

    def _booking_id(self, value: Union[UUID, str]) -> UUID:
        return self._uuid(value, "booking_id")

    def _publish_committed(self, event: BookingEvent) -> None:
        if self._publisher is None:
            return
        try:
            self._publisher.publish(to_domain_event(event))
        except Exception as exc:  # noqa: BLE001 - the booking is already committed
            self._metrics.increment("events_publish_failed")
            logger.warning("event_publish_failed", event_id=str(event.id), event_type=event.event_type, error=str(exc))
            try:
                self._store.record_dispatch_failure(event.id, str(exc))
            except StoreError:
                logger.warning("event_failure_not_recorded", event_id=str(event.id))
            return
        try:
            self._store.mark_event_dispatched(event.id)
        except StoreError:
            # The dispatcher will deliver it again; consumers dedupe on event_id.
            logger.warning("event_dispatch_not_recorded", event_id=str(event.id))
