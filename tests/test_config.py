"""Settings parsing and service wiring."""

from decimal import Decimal

import pytest

from core.config import AppSettings
from repositories.memory import InMemoryAppointmentStore
from services.container import build_booking_service
from services.notifications import EmailNotifier, LogNotifier
from services.payments import HttpPaymentGateway, RecordingPaymentGateway
from services.scheduling.booking import BookingRules


def test_rules_follow_environment(monkeypatch):
    monkeypatch.setenv("CLINIC_TIMEZONE", "Asia/Colombo")
    monkeypatch.setenv("MAX_ADVANCE_DAYS", "30")
    monkeypatch.setenv("CANCELLATION_NOTICE_HOURS", "48")
    monkeypatch.setenv("CANCELLATION_FLAT_FEE", "5.50")
    monkeypatch.setenv("REFUND_MAX_ATTEMPTS", "4")

    rules = BookingRules.from_settings(AppSettings())
    assert rules.timezone == "Asia/Colombo"
    assert rules.max_advance_days == 30
    assert rules.cancellation_notice_hours == 48
    assert rules.cancellation_flat_fee == Decimal("5.50")
    assert rules.refund_max_attempts == 4
    assert rules.granularity_minutes == 15


def test_legacy_database_name(monkeypatch):
    monkeypatch.delenv("MONGO_DB_NAME", raising=False)
    monkeypatch.setenv("DATABASE_NAME", "legacy-db")
    assert AppSettings().database_name == "legacy-db"


def test_defaults_match_booking_rules(monkeypatch):
    for name in ("MAX_ADVANCE_DAYS", "CANCELLATION_NOTICE_HOURS", "CLINIC_TIMEZONE", "REFUND_MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)
    assert BookingRules.from_settings(AppSettings()) == BookingRules()


class TestContainer:
    @pytest.mark.asyncio
    async def test_memory_backend(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "memory")
        monkeypatch.delenv("PAYMENT_SERVICE_URL", raising=False)
        monkeypatch.setenv("NOTIFIER", "log")
        service = await build_booking_service(AppSettings())
        assert isinstance(service.store, InMemoryAppointmentStore)
        assert isinstance(service.payments, RecordingPaymentGateway)
        assert isinstance(service.notifier, LogNotifier)

    @pytest.mark.asyncio
    async def test_http_payments_and_email(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "memory")
        monkeypatch.setenv("PAYMENT_SERVICE_URL", "https://pay.example.com")
        monkeypatch.setenv("NOTIFIER", "email")
        service = await build_booking_service(AppSettings())
        assert isinstance(service.payments, HttpPaymentGateway)
        assert service.payments.base_url == "https://pay.example.com"
        assert isinstance(service.notifier, EmailNotifier)
