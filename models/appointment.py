from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .base import MongoModel, new_object_id, utcnow


class AppointmentStatus(str, Enum):
    pending_payment = "pending-payment"
    scheduled = "scheduled"
    confirmed = "confirmed"
    in_progress = "in-progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no-show"
    rescheduled = "rescheduled"


# Statuses that still occupy the doctor's calendar
ACTIVE_STATUSES = frozenset(
    {
        AppointmentStatus.pending_payment,
        AppointmentStatus.scheduled,
        AppointmentStatus.confirmed,
        AppointmentStatus.in_progress,
        AppointmentStatus.rescheduled,
    }
)
TERMINAL_STATUSES = frozenset(
    {
        AppointmentStatus.completed,
        AppointmentStatus.cancelled,
        AppointmentStatus.no_show,
    }
)


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    pay_at_hospital = "pay-at-hospital"
    refunded = "refunded"
    partially_refunded = "partially-refunded"


class AppointmentType(str, Enum):
    consultation = "consultation"
    follow_up = "follow-up"
    check_up = "check-up"
    emergency = "emergency"
    routine = "routine"


class AppointmentPriority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class PaymentMethod(str, Enum):
    card = "card"
    cash = "cash"
    insurance = "insurance"
    online = "online"
    upi = "upi"
    wallet = "wallet"
    government_fund = "government-fund"
    pay_later = "pay-later"


class PaymentLocation(str, Enum):
    online = "online"
    hospital = "hospital"


class CheckInMethod(str, Enum):
    qr_code = "qr-code"
    manual = "manual"
    digital_card = "digital-card"


class PaymentDetails(BaseModel):
    method: PaymentMethod
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    paid_at: Optional[datetime] = None
    location: Optional[PaymentLocation] = None
    processed_by: Optional[str] = None
    due_at: Optional[datetime] = None
    note: Optional[str] = None


class Cancellation(BaseModel):
    reason: str
    cancelled_by: str
    cancelled_at: datetime
    refund_amount: Decimal = Decimal("0")


class CheckIn(BaseModel):
    time: datetime
    method: CheckInMethod = CheckInMethod.manual
    verified_by: Optional[str] = None


class RescheduleEntry(BaseModel):
    previous_date: date
    previous_time: time
    rescheduled_at: datetime
    rescheduled_by: str


class Appointment(MongoModel):
    id: str = Field(default_factory=new_object_id, alias="_id")
    patient_id: str
    doctor_id: str
    date: date
    time: time
    duration_minutes: int = 30
    reason_for_visit: str
    appointment_type: AppointmentType = AppointmentType.consultation
    priority: AppointmentPriority = AppointmentPriority.normal
    symptoms: List[str] = Field(default_factory=list)
    status: AppointmentStatus = AppointmentStatus.pending_payment
    payment_status: PaymentStatus = PaymentStatus.pending
    consultation_fee: Decimal = Field(ge=0)
    payment: Optional[PaymentDetails] = None
    cancellation: Optional[Cancellation] = None
    check_in: Optional[CheckIn] = None
    reschedule_history: List[RescheduleEntry] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def start_minute(self) -> int:
        return self.time.hour * 60 + self.time.minute

    @property
    def end_minute(self) -> int:
        return self.start_minute + self.duration_minutes

    def starts_at(self, tz: tzinfo) -> datetime:
        return datetime.combine(self.date, self.time, tzinfo=tz)

    def ends_at(self, tz: tzinfo) -> datetime:
        return self.starts_at(tz) + timedelta(minutes=self.duration_minutes)
