"""Error taxonomy of the booking engine.

Every rejection carries a machine-readable ``kind`` and a human-readable
``reason`` so callers can decide between retrying (``SlotUnavailable``,
``StorageError``) and correcting their input (``ValidationError``).
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BookingError(Exception):
    kind: str = "BookingError"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, reason: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "reason": self.reason, "retryable": self.retryable}
        if self.details:
            payload["details"] = self.details
        return payload

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.reason!r})"


class ValidationError(BookingError):
    kind = "ValidationError"
    status_code = 422


class PatientNotFound(BookingError):
    kind = "PatientNotFound"
    status_code = 404


class DoctorNotFound(BookingError):
    kind = "DoctorNotFound"
    status_code = 404


class AppointmentNotFound(BookingError):
    kind = "AppointmentNotFound"
    status_code = 404


class SlotUnavailable(BookingError):
    kind = "SlotUnavailable"
    status_code = 409
    # Caller should re-query availability and pick another slot
    retryable = True


class IllegalTransition(BookingError):
    kind = "IllegalTransition"
    status_code = 409


class PermissionDenied(BookingError):
    kind = "PermissionDenied"
    status_code = 403


class CancellationRejected(BookingError):
    kind = "CancellationRejected"
    status_code = 422


class PaymentRequired(BookingError):
    kind = "PaymentRequired"
    status_code = 402


class AlreadyPaid(BookingError):
    kind = "AlreadyPaid"
    status_code = 409


class StorageError(BookingError):
    kind = "StorageError"
    status_code = 503
    retryable = True


class ConcurrentModification(StorageError):
    kind = "ConcurrentModification"


class LedgerContention(StorageError):
    """Raised when a doctor-day ledger changed between read and commit."""

    kind = "LedgerContention"


class PaymentServiceError(BookingError):
    kind = "PaymentServiceError"
    status_code = 502
    retryable = True
