from __future__ import annotations

from datetime import date, time
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

from .base import MongoModel


class UserRole(str, Enum):
    patient = "patient"
    doctor = "doctor"
    staff = "staff"
    admin = "admin"
    # Internal callers such as payment webhooks and maintenance jobs
    system = "system"


WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class DayAvailability(BaseModel):
    enabled: bool = False
    start_time: time = time(9, 0)
    end_time: time = time(17, 0)

    @model_validator(mode="after")
    def _check_window(self) -> "DayAvailability":
        if self.enabled and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class BlockedPeriod(BaseModel):
    """Time the doctor has taken off the calendar on one date."""

    date: date
    start_time: time
    end_time: time
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_window(self) -> "BlockedPeriod":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AvailabilityTemplate(BaseModel):
    days: Dict[str, DayAvailability] = Field(default_factory=dict)
    blocked: List[BlockedPeriod] = Field(default_factory=list)

    def for_date(self, day: date) -> DayAvailability:
        return self.days.get(WEEKDAYS[day.weekday()], DayAvailability())

    def blocked_on(self, day: date) -> List[BlockedPeriod]:
        return [period for period in self.blocked if period.date == day]

    @classmethod
    def weekdays(cls, start: time, end: time, *, include_weekend: bool = False) -> "AvailabilityTemplate":
        names = WEEKDAYS if include_weekend else WEEKDAYS[:5]
        return cls(days={name: DayAvailability(enabled=True, start_time=start, end_time=end) for name in names})


class UserProfile(MongoModel):
    id: str = Field(alias="_id")
    role: UserRole
    is_active: bool = True
    name: Optional[str] = None
    email: Optional[EmailStr] = None


class DoctorProfile(UserProfile):
    role: UserRole = UserRole.doctor
    consultation_fee: Decimal = Field(default=Decimal("0"), ge=0)
    availability: AvailabilityTemplate = Field(default_factory=AvailabilityTemplate)
