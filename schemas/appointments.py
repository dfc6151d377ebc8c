from __future__ import annotations

from datetime import date as Date, datetime, time as Time
from decimal import Decimal
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, Field, StringConstraints, field_validator

from models.appointment import (
    Appointment,
    AppointmentPriority,
    AppointmentStatus,
    AppointmentType,
    Cancellation,
    CheckIn,
    CheckInMethod,
    PaymentDetails,
    PaymentMethod,
    PaymentStatus,
    RescheduleEntry,
)
from services.scheduling.slots import Slot


ReasonText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=5, max_length=500)]
CancelReason = Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=500)]
Identifier = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]
SymptomText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]


class _WallClock(BaseModel):
    """Shared ``HH:MM`` handling for requests that carry a start time."""

    @field_validator("time", mode="before", check_fields=False)
    @classmethod
    def _minute_resolution(cls, value: Any) -> Any:
        if isinstance(value, str) and len(value.split(":")) != 2:
            raise ValueError("time must be formatted as HH:MM")
        if isinstance(value, Time) and (value.second or value.microsecond):
            raise ValueError("time must have minute resolution")
        return value


# ---------------- Requests ----------------

class BookAppointmentRequest(_WallClock):
    patient_id: Identifier
    doctor_id: Identifier
    date: Date
    time: Time
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    reason_for_visit: ReasonText
    appointment_type: AppointmentType = AppointmentType.consultation
    priority: AppointmentPriority = AppointmentPriority.normal
    symptoms: List[SymptomText] = Field(default_factory=list, max_length=20)


class SlotQuery(BaseModel):
    date: Date
    duration_minutes: Optional[int] = Field(default=None, gt=0)


class ConfirmPaymentRequest(BaseModel):
    method: PaymentMethod = PaymentMethod.card
    transaction_id: Optional[str] = None
    actor_id: Optional[str] = None


class PayLaterRequest(BaseModel):
    actor_id: Optional[str] = None


class HospitalPaymentRequest(BaseModel):
    actor_id: Identifier
    method: PaymentMethod = PaymentMethod.cash
    transaction_id: Optional[str] = None


class RescheduleRequest(_WallClock):
    actor_id: Identifier
    date: Date
    time: Time


class CancelRequest(BaseModel):
    actor_id: Identifier
    reason: CancelReason


class CheckInRequest(BaseModel):
    actor_id: Identifier
    method: CheckInMethod = CheckInMethod.manual


class ActorRequest(BaseModel):
    actor_id: Identifier


# ---------------- Responses ----------------

class AppointmentOut(BaseModel):
    id: str
    patient_id: str
    doctor_id: str
    date: Date
    time: str
    end_time: str
    duration_minutes: int
    reason_for_visit: str
    appointment_type: AppointmentType
    priority: AppointmentPriority
    symptoms: List[str] = Field(default_factory=list)
    status: AppointmentStatus
    payment_status: PaymentStatus
    consultation_fee: Decimal
    payment: Optional[PaymentDetails] = None
    cancellation: Optional[Cancellation] = None
    check_in: Optional[CheckIn] = None
    reschedule_history: List[RescheduleEntry] = Field(default_factory=list)
    version: int
    created_at: datetime
    updated_at: datetime
    actions: List[str] = Field(default_factory=list)

    @classmethod
    def from_appointment(cls, appointment: Appointment, actions: Optional[List[str]] = None) -> "AppointmentOut":
        end = appointment.end_minute
        return cls(
            **appointment.model_dump(exclude={"time"}),
            time=appointment.time.strftime("%H:%M"),
            end_time=f"{end // 60:02d}:{end % 60:02d}",
            actions=actions or [],
        )


class SlotOut(BaseModel):
    time: str
    end_time: str
    available: bool

    @classmethod
    def from_slot(cls, slot: Slot) -> "SlotOut":
        start, end = slot.window.label().split("-")
        return cls(time=start, end_time=end, available=slot.available)


class SlotsResponse(BaseModel):
    doctor_id: str
    date: Date
    duration_minutes: int
    slots: List[SlotOut]


class CancellationPreviewOut(BaseModel):
    appointment_id: str
    eligible: bool
    refund_amount: Decimal
    reason: Optional[str] = None
    hours_until: float
