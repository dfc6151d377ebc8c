"""Appointment persistence and the per-doctor-day unit of work.

Every write that changes which windows a doctor has occupied goes through
``AppointmentStore.doctor_day``. The unit loads the doctor-day ledger, lets the
caller stage claims/releases and appointment writes, and commits them together:
the ledger first (compare-and-swap on its version), then the staged appointment
records. If a record write fails after the ledger committed, the ledger is
reconciled against the stored record so it never holds a window the record
does not.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from contextlib import asynccontextmanager, nullcontext
from datetime import date, datetime
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from core.errors import ConcurrentModification, LedgerContention, StorageError
from models.appointment import ACTIVE_STATUSES, Appointment, AppointmentStatus
from models.base import utcnow
from models.ledger import DoctorDayLedger, SlotClaim, ledger_key
from repositories.base import BaseRepository, translate_storage_errors
from services.scheduling.windows import TimeWindow


logger = logging.getLogger(__name__)

APPOINTMENTS = "appointments"
DOCTOR_DAYS = "doctor_days"


class DoctorDayUnit:
    """Changes staged against one doctor-day ledger, committed atomically."""

    def __init__(self, ledger: DoctorDayLedger, now: datetime) -> None:
        self.ledger = ledger
        self.expected_version = ledger.version
        self.now = now
        self.ledger_changed = False
        self.inserts: List[Appointment] = []
        self.saves: List[Appointment] = []
        self.saved: Dict[str, Appointment] = {}
        self.touched: set[str] = set()

    @property
    def doctor_id(self) -> str:
        return self.ledger.doctor_id

    @property
    def day(self) -> date:
        return self.ledger.date

    def overlapping(self, window: TimeWindow, exclude: Optional[str] = None) -> List[SlotClaim]:
        return [
            claim
            for claim in self.ledger.claims
            if claim.appointment_id != exclude and window.overlaps(TimeWindow(claim.start_minute, claim.end_minute))
        ]

    def claim(self, appointment_id: str, window: TimeWindow) -> None:
        self.ledger.add_claim(appointment_id, window.start, window.end, self.now)
        self.touched.add(appointment_id)
        self.ledger_changed = True

    def release(self, appointment_id: str) -> bool:
        released = self.ledger.release(appointment_id)
        if released:
            self.touched.add(appointment_id)
            self.ledger_changed = True
        return released

    def insert(self, appointment: Appointment) -> None:
        self.inserts.append(appointment)

    def save(self, appointment: Appointment) -> None:
        self.saves.append(appointment)


class AppointmentStore(abc.ABC):
    """Shared appointment store.

    Subclasses provide record access plus ledger load/compare-and-swap; the
    unit-of-work protocol lives here so both backends commit the same way.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    # ---------------- Records ----------------

    @abc.abstractmethod
    async def get(self, appointment_id: str) -> Optional[Appointment]: ...

    @abc.abstractmethod
    async def list_for_doctor_day(self, doctor_id: str, day: date, *, active_only: bool = True) -> List[Appointment]: ...

    @abc.abstractmethod
    async def list_for_patient(
        self, patient_id: str, *, status: Optional[AppointmentStatus] = None
    ) -> List[Appointment]: ...

    @abc.abstractmethod
    async def list_for_doctor(
        self,
        doctor_id: str,
        *,
        day: Optional[date] = None,
        status: Optional[AppointmentStatus] = None,
    ) -> List[Appointment]: ...

    @abc.abstractmethod
    async def insert(self, appointment: Appointment) -> Appointment: ...

    @abc.abstractmethod
    async def _replace(self, appointment: Appointment, expected_version: int) -> bool: ...

    async def save(self, appointment: Appointment) -> Appointment:
        """Write ``appointment`` if the stored copy still has its version."""
        updated = appointment.model_copy(update={"version": appointment.version + 1, "updated_at": self._clock()})
        if not await self._replace(updated, appointment.version):
            raise ConcurrentModification(
                "Appointment was modified concurrently; reload and retry",
                details={"appointment_id": appointment.id},
            )
        return updated

    # ---------------- Ledger ----------------

    @abc.abstractmethod
    async def _load_ledger(self, doctor_id: str, day: date) -> DoctorDayLedger: ...

    @abc.abstractmethod
    async def _save_ledger(self, ledger: DoctorDayLedger, expected_version: int) -> None:
        """Persist ``ledger`` or raise ``LedgerContention`` if the stored version moved."""

    def _serialize(self, doctor_id: str, day: date) -> AsyncContextManager[Any]:
        return nullcontext()

    async def load_ledger(self, doctor_id: str, day: date) -> DoctorDayLedger:
        return await self._load_ledger(doctor_id, day)

    @asynccontextmanager
    async def doctor_day(self, doctor_id: str, day: date) -> AsyncIterator[DoctorDayUnit]:
        async with self._serialize(doctor_id, day):
            ledger = await self._load_ledger(doctor_id, day)
            unit = DoctorDayUnit(ledger, now=self._clock())
            yield unit
            # An abandoned caller must not interrupt a commit halfway
            await asyncio.shield(self._commit(unit))

    async def _commit(self, unit: DoctorDayUnit) -> None:
        if unit.ledger_changed:
            await self._save_ledger(unit.ledger, unit.expected_version)
        try:
            for appointment in unit.inserts:
                unit.saved[appointment.id] = await self.insert(appointment)
            for appointment in unit.saves:
                unit.saved[appointment.id] = await self.save(appointment)
        except Exception:
            if unit.ledger_changed:
                await self._reconcile(unit.ledger, unit.touched)
            raise

    async def _reconcile(self, ledger: DoctorDayLedger, appointment_ids: set[str]) -> None:
        """Make ``ledger`` agree with the stored records for ``appointment_ids``.

        Runs while the caller still holds the doctor-day, so it works on the
        ledger in hand and only reloads after losing a compare-and-swap.
        """
        records = {appointment_id: await self.get(appointment_id) for appointment_id in appointment_ids}
        for attempt in range(3):
            expected = ledger.version
            now = self._clock()
            for appointment_id, record in records.items():
                ledger.release(appointment_id)
                if record is None or not record.is_active or record.date != ledger.date:
                    continue
                window = TimeWindow(record.start_minute, record.end_minute)
                if any(window.overlaps(TimeWindow(c.start_minute, c.end_minute)) for c in ledger.claims):
                    logger.error(
                        "ledger.reconcile_overlap",
                        extra={"appointment_id": appointment_id, "ledger": ledger.id},
                    )
                ledger.add_claim(appointment_id, window.start, window.end, now)
            try:
                await self._save_ledger(ledger, expected)
                return
            except LedgerContention:
                ledger = await self._load_ledger(ledger.doctor_id, ledger.date)
        logger.error(
            "ledger.reconcile_failed",
            extra={"ledger": ledger.id, "appointment_ids": sorted(appointment_ids)},
        )

    async def release_claim(self, doctor_id: str, day: date, appointment_id: str, *, attempts: int = 3) -> bool:
        for attempt in range(attempts):
            try:
                async with self.doctor_day(doctor_id, day) as unit:
                    released = unit.release(appointment_id)
                return released
            except LedgerContention:
                continue
        # A leftover claim is pruned as stale by the next booking that meets it
        logger.warning(
            "ledger.release_deferred",
            extra={"doctor_id": doctor_id, "date": day.isoformat(), "appointment_id": appointment_id},
        )
        return False

    async def ensure_indexes(self) -> None:
        return None


class MongoAppointmentStore(AppointmentStore):
    """Motor-backed store; the ledger is serialized with optimistic versioning."""

    def __init__(self, db: AsyncIOMotorDatabase, *, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock=clock)
        self.repo = BaseRepository(db)

    async def ensure_indexes(self) -> None:
        async with translate_storage_errors("appointments.create_index"):
            await self.repo.db[APPOINTMENTS].create_index(
                [("doctor_id", ASCENDING), ("date", ASCENDING), ("status", ASCENDING)]
            )
            await self.repo.db[APPOINTMENTS].create_index([("patient_id", ASCENDING), ("date", ASCENDING)])

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        doc = await self.repo.find_one(APPOINTMENTS, {"_id": appointment_id})
        return Appointment.from_mongo(doc) if doc else None

    async def list_for_doctor_day(self, doctor_id: str, day: date, *, active_only: bool = True) -> List[Appointment]:
        query: Dict[str, Any] = {"doctor_id": doctor_id, "date": day.isoformat()}
        if active_only:
            query["status"] = {"$in": [s.value for s in ACTIVE_STATUSES]}
        docs = await self.repo.find_many(APPOINTMENTS, query, sort=[("time", ASCENDING)])
        return [Appointment.from_mongo(d) for d in docs]

    async def list_for_patient(
        self, patient_id: str, *, status: Optional[AppointmentStatus] = None
    ) -> List[Appointment]:
        query: Dict[str, Any] = {"patient_id": patient_id}
        if status is not None:
            query["status"] = status.value
        docs = await self.repo.find_many(APPOINTMENTS, query, sort=[("date", ASCENDING), ("time", ASCENDING)])
        return [Appointment.from_mongo(d) for d in docs]

    async def list_for_doctor(
        self,
        doctor_id: str,
        *,
        day: Optional[date] = None,
        status: Optional[AppointmentStatus] = None,
    ) -> List[Appointment]:
        query: Dict[str, Any] = {"doctor_id": doctor_id}
        if day is not None:
            query["date"] = day.isoformat()
        if status is not None:
            query["status"] = status.value
        docs = await self.repo.find_many(APPOINTMENTS, query, sort=[("date", ASCENDING), ("time", ASCENDING)])
        return [Appointment.from_mongo(d) for d in docs]

    async def insert(self, appointment: Appointment) -> Appointment:
        async with translate_storage_errors("appointments.insert"):
            try:
                await self.repo.insert_one(APPOINTMENTS, appointment.to_mongo(), with_timestamps=False)
            except DuplicateKeyError as exc:
                raise StorageError("Appointment id collision; retry the request") from exc
        return appointment

    async def _replace(self, appointment: Appointment, expected_version: int) -> bool:
        matched = await self.repo.replace_one(
            APPOINTMENTS,
            {"_id": appointment.id, "version": expected_version},
            appointment.to_mongo(),
        )
        return matched > 0

    async def _load_ledger(self, doctor_id: str, day: date) -> DoctorDayLedger:
        doc = await self.repo.find_one(DOCTOR_DAYS, {"_id": ledger_key(doctor_id, day)})
        return DoctorDayLedger.from_mongo(doc) if doc else DoctorDayLedger.empty(doctor_id, day)

    async def _save_ledger(self, ledger: DoctorDayLedger, expected_version: int) -> None:
        now = self._clock()
        if expected_version == 0:
            doc = ledger.model_copy(update={"version": 1, "updated_at": now}).to_mongo()
            async with translate_storage_errors("doctor_days.insert"):
                try:
                    await self.repo.insert_one(DOCTOR_DAYS, doc, with_timestamps=False)
                except DuplicateKeyError as exc:
                    raise LedgerContention("Doctor-day ledger was created concurrently") from exc
        else:
            claims = [claim.model_dump(mode="json") for claim in ledger.claims]
            matched = await self.repo.update_one(
                DOCTOR_DAYS,
                {"_id": ledger.id, "version": expected_version},
                {"$set": {"claims": claims}, "$inc": {"version": 1}},
            )
            if matched == 0:
                raise LedgerContention("Doctor-day ledger changed since it was read")
        ledger.version = expected_version + 1
