from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import date, datetime
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from core.errors import LedgerContention, StorageError
from models.appointment import Appointment, AppointmentStatus
from models.base import utcnow
from models.ledger import DoctorDayLedger, ledger_key
from repositories.appointments import AppointmentStore


class InMemoryAppointmentStore(AppointmentStore):
    """Process-local store for tests and single-worker deployments.

    Documents are kept in their Mongo form so every read returns a fresh copy.
    By default each doctor-day is serialized with an ``asyncio.Lock``; with
    ``optimistic=True`` the lock is skipped and the ledger relies on version
    checks alone, yielding to the event loop on every read like a real driver.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow, optimistic: bool = False) -> None:
        super().__init__(clock=clock)
        self.optimistic = optimistic
        self._appointments: Dict[str, Dict[str, Any]] = {}
        self._ledgers: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _serialize(self, doctor_id: str, day: date) -> AsyncContextManager[Any]:
        if self.optimistic:
            return super()._serialize(doctor_id, day)
        return self._locks[ledger_key(doctor_id, day)]

    async def _yield(self) -> None:
        if self.optimistic:
            await asyncio.sleep(0)

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        await self._yield()
        doc = self._appointments.get(appointment_id)
        return Appointment.from_mongo(doc) if doc else None

    async def list_for_doctor_day(self, doctor_id: str, day: date, *, active_only: bool = True) -> List[Appointment]:
        await self._yield()
        found = [
            Appointment.from_mongo(doc)
            for doc in self._appointments.values()
            if doc["doctor_id"] == doctor_id and doc["date"] == day.isoformat()
        ]
        if active_only:
            found = [a for a in found if a.is_active]
        return sorted(found, key=lambda a: a.time)

    async def list_for_patient(
        self, patient_id: str, *, status: Optional[AppointmentStatus] = None
    ) -> List[Appointment]:
        found = [Appointment.from_mongo(doc) for doc in self._appointments.values() if doc["patient_id"] == patient_id]
        if status is not None:
            found = [a for a in found if a.status == status]
        return sorted(found, key=lambda a: (a.date, a.time))

    async def list_for_doctor(
        self,
        doctor_id: str,
        *,
        day: Optional[date] = None,
        status: Optional[AppointmentStatus] = None,
    ) -> List[Appointment]:
        found = [Appointment.from_mongo(doc) for doc in self._appointments.values() if doc["doctor_id"] == doctor_id]
        if day is not None:
            found = [a for a in found if a.date == day]
        if status is not None:
            found = [a for a in found if a.status == status]
        return sorted(found, key=lambda a: (a.date, a.time))

    async def insert(self, appointment: Appointment) -> Appointment:
        if appointment.id in self._appointments:
            raise StorageError("Appointment id collision; retry the request")
        self._appointments[appointment.id] = appointment.to_mongo()
        return appointment

    async def _replace(self, appointment: Appointment, expected_version: int) -> bool:
        await self._yield()
        current = self._appointments.get(appointment.id)
        if current is None or current["version"] != expected_version:
            return False
        self._appointments[appointment.id] = appointment.to_mongo()
        return True

    async def _load_ledger(self, doctor_id: str, day: date) -> DoctorDayLedger:
        await self._yield()
        doc = self._ledgers.get(ledger_key(doctor_id, day))
        return DoctorDayLedger.from_mongo(doc) if doc else DoctorDayLedger.empty(doctor_id, day)

    async def _save_ledger(self, ledger: DoctorDayLedger, expected_version: int) -> None:
        current = self._ledgers.get(ledger.id)
        current_version = current["version"] if current else 0
        if current_version != expected_version:
            raise LedgerContention("Doctor-day ledger changed since it was read")
        stored = ledger.model_copy(update={"version": expected_version + 1, "updated_at": self._clock()})
        self._ledgers[ledger.id] = stored.to_mongo()
        ledger.version = expected_version + 1
