"""Shared fixtures: a fixed clock, an in-memory directory and a wired service."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict

import pytest

from models.directory import AvailabilityTemplate, DoctorProfile, UserProfile, UserRole
from repositories.memory import InMemoryAppointmentStore
from repositories.refunds import InMemoryRefundOutbox
from services.directory import InMemoryUserDirectory
from services.notifications import LogNotifier
from services.payments import RecordingPaymentGateway
from services.scheduling.booking import BookingRules, BookingService


# Monday 06:00 UTC; the clinic runs on UTC in tests
NOW = datetime(2026, 10, 19, 6, 0, tzinfo=timezone.utc)
MONDAY = date(2026, 10, 19)
TUESDAY = date(2026, 10, 20)
WEDNESDAY = date(2026, 10, 21)
SATURDAY = date(2026, 10, 24)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def directory() -> InMemoryUserDirectory:
    weekdays = AvailabilityTemplate.weekdays(time(9, 0), time(17, 0))
    return InMemoryUserDirectory(
        [
            UserProfile(id="pat-1", role=UserRole.patient, name="Ana Silva", email="ana@example.com"),
            UserProfile(id="pat-2", role=UserRole.patient, name="Ben Okafor", email="ben@example.com"),
            UserProfile(id="pat-off", role=UserRole.patient, is_active=False),
            UserProfile(id="staff-1", role=UserRole.staff, name="Front Desk"),
            UserProfile(id="admin-1", role=UserRole.admin),
            DoctorProfile(id="doc-1", name="Dr. Perera", consultation_fee=Decimal("50"), availability=weekdays),
            DoctorProfile(id="doc-2", name="Dr. Kim", consultation_fee=Decimal("80"), availability=weekdays),
            DoctorProfile(id="doc-free", name="Dr. Free", consultation_fee=Decimal("0"), availability=weekdays),
            DoctorProfile(id="doc-off", is_active=False, consultation_fee=Decimal("50"), availability=weekdays),
        ]
    )


@pytest.fixture
def store(clock: FakeClock) -> InMemoryAppointmentStore:
    return InMemoryAppointmentStore(clock=clock)


@pytest.fixture
def outbox(clock: FakeClock) -> InMemoryRefundOutbox:
    return InMemoryRefundOutbox(clock=clock)


@pytest.fixture
def payments() -> RecordingPaymentGateway:
    return RecordingPaymentGateway()


@pytest.fixture
def notifier() -> LogNotifier:
    return LogNotifier()


@pytest.fixture
def rules() -> BookingRules:
    return BookingRules()


def make_service(store, outbox, directory, payments, notifier, rules, clock) -> BookingService:
    return BookingService(
        store=store,
        outbox=outbox,
        directory=directory,
        payments=payments,
        notifier=notifier,
        rules=rules,
        clock=clock,
    )


@pytest.fixture
def service(store, outbox, directory, payments, notifier, rules, clock) -> BookingService:
    return make_service(store, outbox, directory, payments, notifier, rules, clock)


def booking(**overrides: Any) -> Dict[str, Any]:
    """Keyword arguments for ``book_appointment`` with sensible defaults."""
    data: Dict[str, Any] = {
        "patient_id": "pat-1",
        "doctor_id": "doc-1",
        "date": TUESDAY,
        "time": "10:00",
        "duration_minutes": 30,
        "reason_for_visit": "Persistent headache",
    }
    data.update(overrides)
    return data
