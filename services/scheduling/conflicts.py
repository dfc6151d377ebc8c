"""Overlap decisions for a doctor's calendar.

``has_conflict`` is an advisory read for callers that want a quick answer.
Bookings and reschedules use ``run_atomic`` + ``ensure_free`` + ``claim`` so the
check and the write commit together against the doctor-day ledger.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Awaitable, Callable, Optional

from core.errors import LedgerContention, SlotUnavailable, StorageError
from models.base import utcnow
from models.appointment import Appointment
from models.ledger import SlotClaim
from repositories.appointments import AppointmentStore, DoctorDayUnit
from services.scheduling.windows import TimeWindow


logger = logging.getLogger(__name__)


class ConflictGuard:
    def __init__(
        self,
        store: AppointmentStore,
        *,
        retry_attempts: int = 5,
        claim_grace_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.retry_attempts = retry_attempts
        self.claim_grace = timedelta(seconds=claim_grace_seconds)
        self._clock = clock

    async def has_conflict(
        self,
        doctor_id: str,
        day: date,
        start: time,
        duration_minutes: int,
        exclude_appointment_id: Optional[str] = None,
    ) -> bool:
        window = TimeWindow.at(start, duration_minutes)
        for appointment in await self.store.list_for_doctor_day(doctor_id, day, active_only=True):
            if appointment.id == exclude_appointment_id:
                continue
            if window.overlaps(TimeWindow(appointment.start_minute, appointment.end_minute)):
                return True
        return False

    def _is_stale(self, unit: DoctorDayUnit, claim: SlotClaim, record: Optional[Appointment]) -> bool:
        if record is not None and not record.is_active:
            return True
        # A missing or moved record may belong to a commit still in flight
        if self._clock() - claim.claimed_at < self.claim_grace:
            return False
        if record is None:
            return True
        return (
            record.date != unit.day
            or record.start_minute != claim.start_minute
            or record.end_minute != claim.end_minute
        )

    async def ensure_free(self, unit: DoctorDayUnit, window: TimeWindow, exclude: Optional[str] = None) -> None:
        for claim in unit.overlapping(window, exclude):
            record = await self.store.get(claim.appointment_id)
            if not self._is_stale(unit, claim, record):
                self._unavailable(unit, window)
            unit.release(claim.appointment_id)
            logger.warning(
                "ledger.stale_claim_pruned",
                extra={"ledger": unit.ledger.id, "appointment_id": claim.appointment_id},
            )
            if record is None or not record.is_active or record.date != unit.day:
                continue
            # The record is live on this day under another window; hold that one instead
            actual = TimeWindow(record.start_minute, record.end_minute)
            unit.claim(record.id, actual)
            logger.warning(
                "ledger.claim_realigned",
                extra={"ledger": unit.ledger.id, "appointment_id": record.id, "window": actual.label()},
            )
            if actual.overlaps(window):
                self._unavailable(unit, window)

    def _unavailable(self, unit: DoctorDayUnit, window: TimeWindow) -> None:
        raise SlotUnavailable(
            f"Doctor is already booked between {window.label()} on {unit.day.isoformat()}",
            details={"date": unit.day.isoformat(), "time": window.start_time.strftime("%H:%M")},
        )

    def claim(self, unit: DoctorDayUnit, appointment_id: str, window: TimeWindow) -> None:
        unit.claim(appointment_id, window)

    async def run_atomic(
        self,
        doctor_id: str,
        day: date,
        fn: Callable[[DoctorDayUnit], Awaitable[None]],
    ) -> DoctorDayUnit:
        """Run ``fn`` inside a doctor-day unit, retrying on ledger contention.

        ``fn`` may be called more than once and must re-read whatever it
        decides on from storage each time.
        """
        for attempt in range(1, self.retry_attempts + 1):
            try:
                async with self.store.doctor_day(doctor_id, day) as unit:
                    await fn(unit)
                return unit
            except LedgerContention:
                logger.info(
                    "ledger.contention",
                    extra={"doctor_id": doctor_id, "date": day.isoformat(), "attempt": attempt},
                )
        raise StorageError(
            "Doctor calendar is busy; retry the request",
            details={"doctor_id": doctor_id, "date": day.isoformat()},
        )
