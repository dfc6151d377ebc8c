from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo
from typing import Callable, Iterator, List, Optional, Sequence

from core.errors import DoctorNotFound, ValidationError
from models.base import utcnow
from models.directory import AvailabilityTemplate
from repositories.appointments import AppointmentStore
from services.directory import UserDirectory
from services.scheduling.windows import TimeWindow


@dataclass(frozen=True)
class Slot:
    time: time
    duration_minutes: int
    available: bool

    @property
    def window(self) -> TimeWindow:
        return TimeWindow.at(self.time, self.duration_minutes)


class SlotSequence:
    """Slots of one doctor-day, generated lazily from a fixed snapshot.

    Iterating again starts over from the same snapshot, so the sequence can be
    consumed more than once without touching storage.
    """

    def __init__(
        self,
        day: date,
        working: Optional[TimeWindow],
        duration_minutes: int,
        occupied: Sequence[TimeWindow],
        not_before: Optional[int] = None,
    ) -> None:
        self.date = day
        self.working = working
        self.duration_minutes = duration_minutes
        self._occupied = tuple(occupied)
        self._not_before = not_before

    def __iter__(self) -> Iterator[Slot]:
        if self.working is None:
            return
        start = self.working.start
        while start + self.duration_minutes <= self.working.end:
            window = TimeWindow(start, start + self.duration_minutes)
            taken = any(window.overlaps(other) for other in self._occupied)
            started = self._not_before is not None and start <= self._not_before
            yield Slot(time=window.start_time, duration_minutes=self.duration_minutes, available=not (taken or started))
            start += self.duration_minutes

    def available(self) -> List[Slot]:
        return [slot for slot in self if slot.available]

    def __repr__(self) -> str:
        return f"SlotSequence(date={self.date.isoformat()}, duration={self.duration_minutes})"


def working_window(template: AvailabilityTemplate, day: date) -> Optional[TimeWindow]:
    hours = template.for_date(day)
    if not hours.enabled:
        return None
    return TimeWindow.between(hours.start_time, hours.end_time)


def blocked_windows(template: AvailabilityTemplate, day: date) -> List[TimeWindow]:
    return [TimeWindow.between(period.start_time, period.end_time) for period in template.blocked_on(day)]


class SlotCalendar:
    def __init__(
        self,
        store: AppointmentStore,
        directory: UserDirectory,
        *,
        tz: tzinfo,
        granularity_minutes: int = 15,
        min_duration_minutes: int = 15,
        max_duration_minutes: int = 120,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.directory = directory
        self.tz = tz
        self.granularity_minutes = granularity_minutes
        self.min_duration_minutes = min_duration_minutes
        self.max_duration_minutes = max_duration_minutes
        self._clock = clock

    def local_now(self) -> datetime:
        return self._clock().astimezone(self.tz)

    async def compute_slots(self, doctor_id: str, day: date, duration_minutes: int) -> SlotSequence:
        if (
            duration_minutes < self.min_duration_minutes
            or duration_minutes > self.max_duration_minutes
            or duration_minutes % self.granularity_minutes
        ):
            raise ValidationError(
                f"duration_minutes must be between {self.min_duration_minutes} and "
                f"{self.max_duration_minutes} in steps of {self.granularity_minutes}",
                details={"duration_minutes": duration_minutes},
            )
        now = self.local_now()
        if day < now.date():
            raise ValidationError("date must not be in the past", details={"date": day.isoformat()})
        doctor = await self.directory.get_doctor(doctor_id)
        if doctor is None:
            raise DoctorNotFound(f"Doctor '{doctor_id}' not found")

        working = working_window(doctor.availability, day)
        if working is None:
            return SlotSequence(day, None, duration_minutes, ())
        booked = await self.store.list_for_doctor_day(doctor_id, day, active_only=True)
        occupied = [TimeWindow(a.start_minute, a.end_minute) for a in booked]
        occupied.extend(blocked_windows(doctor.availability, day))
        # The slot starting this minute has already begun
        not_before = now.hour * 60 + now.minute if day == now.date() else None
        return SlotSequence(day, working, duration_minutes, occupied, not_before)
