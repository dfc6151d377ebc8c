from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .base import MongoModel, utcnow


def ledger_key(doctor_id: str, day: date) -> str:
    return f"{doctor_id}:{day.isoformat()}"


class SlotClaim(BaseModel):
    appointment_id: str
    start_minute: int
    end_minute: int
    claimed_at: datetime


class DoctorDayLedger(MongoModel):
    """Windows held by a doctor's active appointments on one day.

    ``version`` is 0 until the ledger is first persisted; every commit bumps it.
    """

    id: str = Field(alias="_id")
    doctor_id: str
    date: date
    version: int = 0
    claims: List[SlotClaim] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def empty(cls, doctor_id: str, day: date) -> "DoctorDayLedger":
        return cls(_id=ledger_key(doctor_id, day), doctor_id=doctor_id, date=day)

    def claim_for(self, appointment_id: str) -> Optional[SlotClaim]:
        for claim in self.claims:
            if claim.appointment_id == appointment_id:
                return claim
        return None

    def add_claim(self, appointment_id: str, start_minute: int, end_minute: int, now: datetime) -> SlotClaim:
        self.release(appointment_id)
        claim = SlotClaim(
            appointment_id=appointment_id,
            start_minute=start_minute,
            end_minute=end_minute,
            claimed_at=now,
        )
        self.claims.append(claim)
        return claim

    def release(self, appointment_id: str) -> bool:
        before = len(self.claims)
        self.claims = [c for c in self.claims if c.appointment_id != appointment_id]
        return len(self.claims) != before
