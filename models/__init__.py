from .appointment import (
    Appointment,
    AppointmentStatus,
    PaymentStatus,
    PaymentMethod,
    CheckInMethod,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
)
from .directory import AvailabilityTemplate, DayAvailability, DoctorProfile, UserProfile, UserRole
from .ledger import DoctorDayLedger, SlotClaim
from .refund import RefundOutboxEntry, RefundRequest

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "PaymentStatus",
    "PaymentMethod",
    "CheckInMethod",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "AvailabilityTemplate",
    "DayAvailability",
    "DoctorProfile",
    "UserProfile",
    "UserRole",
    "DoctorDayLedger",
    "SlotClaim",
    "RefundOutboxEntry",
    "RefundRequest",
]
