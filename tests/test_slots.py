"""Tests for SlotCalendar slot generation."""

from datetime import date, time
from decimal import Decimal

import pytest

from core.errors import DoctorNotFound, SlotUnavailable, ValidationError
from models.directory import AvailabilityTemplate, BlockedPeriod, DoctorProfile
from tests.conftest import MONDAY, SATURDAY, TUESDAY, booking


class TestComputeSlots:
    @pytest.mark.asyncio
    async def test_full_day_of_thirty_minute_slots(self, service):
        """A free Tuesday 09:00-17:00 yields sixteen available slots."""
        slots = list(await service.get_available_slots("doc-1", TUESDAY, 30))
        assert len(slots) == 16
        assert slots[0].time == time(9, 0)
        assert slots[-1].time == time(16, 30)
        assert all(s.available for s in slots)

    @pytest.mark.asyncio
    async def test_trailing_window_past_end_is_not_produced(self, service):
        slots = list(await service.get_available_slots("doc-1", TUESDAY, 45))
        assert len(slots) == 10
        assert slots[-1].time == time(15, 45)

    @pytest.mark.asyncio
    async def test_disabled_weekday_is_empty(self, service):
        assert list(await service.get_available_slots("doc-1", SATURDAY, 30)) == []

    @pytest.mark.asyncio
    async def test_booked_window_is_unavailable(self, service):
        await service.book_appointment(**booking(time="10:15", duration_minutes=30))
        slots = {s.time: s.available for s in await service.get_available_slots("doc-1", TUESDAY, 30)}
        # 10:15-10:45 touches both the 10:00 and the 10:30 slots
        assert slots[time(10, 0)] is False
        assert slots[time(10, 30)] is False
        assert slots[time(9, 30)] is True
        assert slots[time(11, 0)] is True

    @pytest.mark.asyncio
    async def test_cancelled_appointment_frees_its_window(self, service):
        created = await service.book_appointment(**booking())
        await service.cancel(created.id, "pat-1", "No longer needed")
        slots = {s.time: s.available for s in await service.get_available_slots("doc-1", TUESDAY, 30)}
        assert slots[time(10, 0)] is True

    @pytest.mark.asyncio
    async def test_started_slots_today_are_unavailable(self, service, clock):
        clock.advance(hours=4, minutes=10)  # Monday 10:10
        slots = {s.time: s.available for s in await service.get_available_slots("doc-1", MONDAY, 30)}
        assert slots[time(9, 30)] is False
        assert slots[time(10, 0)] is False
        assert slots[time(10, 30)] is True

    @pytest.mark.asyncio
    async def test_slot_starting_right_now_is_unavailable(self, service, clock):
        clock.advance(hours=4)  # Monday 10:00 exactly
        slots = {s.time: s.available for s in await service.get_available_slots("doc-1", MONDAY, 30)}
        assert slots[time(10, 0)] is False
        assert slots[time(10, 30)] is True

    @pytest.mark.asyncio
    async def test_sequence_is_restartable(self, service):
        sequence = await service.get_available_slots("doc-1", TUESDAY, 60)
        first = list(sequence)
        second = list(sequence)
        assert first == second
        assert len(first) == 8
        assert sequence.available() == first

    @pytest.mark.asyncio
    async def test_default_duration_applies(self, service):
        sequence = await service.get_available_slots("doc-1", TUESDAY)
        assert sequence.duration_minutes == 30

    @pytest.mark.asyncio
    async def test_past_date_is_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.get_available_slots("doc-1", date(2026, 10, 18), 30)

    @pytest.mark.asyncio
    async def test_duration_off_the_grid_is_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.get_available_slots("doc-1", TUESDAY, 20)

    @pytest.mark.asyncio
    async def test_malformed_date_is_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.get_available_slots("doc-1", "20-10-2026", 30)

    @pytest.mark.asyncio
    async def test_unknown_doctor(self, service):
        with pytest.raises(DoctorNotFound):
            await service.get_available_slots("nobody", TUESDAY, 30)

    @pytest.mark.parametrize("duration", [10, 135, 180])
    @pytest.mark.asyncio
    async def test_duration_outside_booking_bounds_is_rejected(self, service, duration):
        with pytest.raises(ValidationError):
            await service.get_available_slots("doc-1", TUESDAY, duration)


@pytest.fixture
def blocked_doctor(directory):
    availability = AvailabilityTemplate.weekdays(time(9, 0), time(17, 0))
    availability.blocked.append(
        BlockedPeriod(date=TUESDAY, start_time=time(12, 0), end_time=time(13, 30), reason="Ward round")
    )
    return directory.add(
        DoctorProfile(id="doc-blocked", consultation_fee=Decimal("50"), availability=availability)
    )


class TestBlockedPeriods:
    @pytest.mark.asyncio
    async def test_blocked_time_is_not_offered(self, service, blocked_doctor):
        slots = {s.time: s.available for s in await service.get_available_slots("doc-blocked", TUESDAY, 30)}
        assert slots[time(11, 30)] is True
        assert slots[time(12, 0)] is False
        assert slots[time(13, 0)] is False
        assert slots[time(13, 30)] is True

    @pytest.mark.asyncio
    async def test_block_only_applies_to_its_date(self, service, blocked_doctor):
        slots = {s.time: s.available for s in await service.get_available_slots("doc-blocked", MONDAY, 30)}
        assert slots[time(12, 0)] is True

    @pytest.mark.asyncio
    async def test_booking_into_blocked_time_is_refused(self, service, blocked_doctor, store):
        with pytest.raises(SlotUnavailable) as excinfo:
            await service.book_appointment(**booking(doctor_id="doc-blocked", time="13:15"))
        assert excinfo.value.details["blocked_reason"] == "Ward round"
        assert await store.list_for_doctor("doc-blocked") == []

    @pytest.mark.asyncio
    async def test_booking_next_to_blocked_time_is_accepted(self, service, blocked_doctor):
        created = await service.book_appointment(**booking(doctor_id="doc-blocked", time="11:30"))
        assert created.time == time(11, 30)

    def test_block_must_end_after_it_starts(self):
        with pytest.raises(ValueError):
            BlockedPeriod(date=TUESDAY, start_time=time(13, 0), end_time=time(12, 0))
