"""Error taxonomy raised by the booking engine.

Every error carries a stable ``code`` and an HTTP-style ``status_code`` so the
calling layer can render a response without inspecting internals. The wrapped
``cause`` is kept for logs only and never rendered.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional


class ErrorCode:
    VALIDATION_FAILED = "validation_failed"
    BOOKING_NOT_FOUND = "booking_not_found"
    TIME_CONFLICT = "time_conflict"
    CONCURRENCY_LIMIT = "concurrency_limit_reached"
    BOOKING_FINALIZED = "booking_finalized"
    RESCHEDULE_LIMIT = "reschedule_limit_reached"
    INVALID_TRANSITION = "invalid_status_transition"
    STORE_UNAVAILABLE = "store_unavailable"
    INTERNAL = "internal_error"


STATUS_BY_CODE: Dict[str, int] = {
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.BOOKING_NOT_FOUND: 404,
    ErrorCode.TIME_CONFLICT: 409,
    ErrorCode.CONCURRENCY_LIMIT: 422,
    ErrorCode.BOOKING_FINALIZED: 422,
    ErrorCode.RESCHEDULE_LIMIT: 422,
    ErrorCode.INVALID_TRANSITION: 422,
    ErrorCode.STORE_UNAVAILABLE: 500,
    ErrorCode.INTERNAL: 500,
}


@dataclass(frozen=True)
class FieldViolation:
    field: str
    message: str
    kind: str = "invalid"


class BookingEngineError(Exception):
    default_code = ErrorCode.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.cause = cause
        self.details = details or {}
        if cause is not None:
            self.__cause__ = cause

    @property
    def status_code(self) -> int:
        return STATUS_BY_CODE.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BookingEngineError):
    """Input failed shape or time-policy checks. Never touches the store."""

    default_code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, violations: List[FieldViolation]) -> None:
        super().__init__(message, details={"violations": [asdict(v) for v in violations]})
        self.violations = list(violations)

    @property
    def fields(self) -> List[str]:
        return [violation.field for violation in self.violations]


class CreationError(BookingEngineError):
    default_code = ErrorCode.STORE_UNAVAILABLE


class ModificationError(BookingEngineError):
    default_code = ErrorCode.STORE_UNAVAILABLE


class CancellationError(BookingEngineError):
    default_code = ErrorCode.STORE_UNAVAILABLE


class NotFoundError(BookingEngineError):
    default_code = ErrorCode.BOOKING_NOT_FOUND


class StoreError(Exception):
    """Raised by the booking store when the database call itself failed."""
