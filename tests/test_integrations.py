"""Payment service client and notifier adapters."""

from decimal import Decimal

import pytest
import requests

from core.errors import PaymentServiceError
from models.appointment import PaymentMethod
from models.directory import UserProfile, UserRole
from services.directory import InMemoryUserDirectory
from services.notifications import EmailNotifier, LogNotifier
from services.payments import HttpPaymentGateway, RecordingPaymentGateway


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class TestHttpPaymentGateway:
    @pytest.mark.asyncio
    async def test_charge_sends_idempotency_key(self, monkeypatch):
        calls = []

        def fake_post(url, json=None, headers=None, timeout=None):
            calls.append((url, json, headers, timeout))
            return FakeResponse({"transaction_id": "TX-9", "amount": "50.00"})

        monkeypatch.setattr("services.payments.requests.post", fake_post)
        gateway = HttpPaymentGateway("https://pay.example.com/", api_key="secret", timeout=3)
        record = await gateway.charge_or_record("a1", Decimal("50"), PaymentMethod.card)

        assert record.transaction_id == "TX-9"
        assert record.amount == Decimal("50.00")
        url, body, headers, timeout = calls[0]
        assert url == "https://pay.example.com/payments"
        assert body == {"appointment_id": "a1", "amount": "50", "method": "card"}
        assert headers["Idempotency-Key"] == "a1"
        assert headers["Authorization"] == "Bearer secret"
        assert timeout == 3

    @pytest.mark.asyncio
    async def test_refund_uses_its_own_key(self, monkeypatch):
        seen = {}

        def fake_post(url, json=None, headers=None, timeout=None):
            seen["key"] = headers["Idempotency-Key"]
            return FakeResponse({"id": "rf-1"})

        monkeypatch.setattr("services.payments.requests.post", fake_post)
        record = await HttpPaymentGateway("https://pay.example.com").refund("a1", Decimal("25"), "Feeling better")
        assert seen["key"] == "refund:a1"
        assert record.refund_id == "rf-1"
        assert record.amount == Decimal("25")

    @pytest.mark.asyncio
    async def test_transport_failure_is_payment_service_error(self, monkeypatch):
        def fake_post(url, json=None, headers=None, timeout=None):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr("services.payments.requests.post", fake_post)
        with pytest.raises(PaymentServiceError) as excinfo:
            await HttpPaymentGateway("https://pay.example.com").refund("a1", Decimal("25"), "Feeling better")
        assert excinfo.value.retryable is True

    @pytest.mark.asyncio
    async def test_http_error_status(self, monkeypatch):
        monkeypatch.setattr(
            "services.payments.requests.post",
            lambda url, json=None, headers=None, timeout=None: FakeResponse({}, status_code=503),
        )
        with pytest.raises(PaymentServiceError):
            await HttpPaymentGateway("https://pay.example.com").charge_or_record("a1", Decimal("5"), PaymentMethod.upi)

    @pytest.mark.asyncio
    async def test_malformed_body(self, monkeypatch):
        monkeypatch.setattr(
            "services.payments.requests.post",
            lambda url, json=None, headers=None, timeout=None: FakeResponse(ValueError("not json")),
        )
        with pytest.raises(PaymentServiceError):
            await HttpPaymentGateway("https://pay.example.com").charge_or_record("a1", Decimal("5"), PaymentMethod.upi)


class TestRecordingPaymentGateway:
    @pytest.mark.asyncio
    async def test_charges_are_idempotent_per_appointment(self):
        gateway = RecordingPaymentGateway()
        first = await gateway.charge_or_record("a1", Decimal("50"), PaymentMethod.card)
        second = await gateway.charge_or_record("a1", Decimal("50"), PaymentMethod.card)
        assert first.transaction_id == second.transaction_id
        assert len(gateway.charges) == 1


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.messages = []
        self.logged_in = None
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def starttls(self):
        pass

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        self.messages.append(msg)


@pytest.fixture
def people() -> InMemoryUserDirectory:
    return InMemoryUserDirectory(
        [
            UserProfile(id="pat-1", role=UserRole.patient, name="Ana", email="ana@example.com"),
            UserProfile(id="pat-2", role=UserRole.patient),
        ]
    )


class TestEmailNotifier:
    @pytest.mark.asyncio
    async def test_sends_through_smtp(self, monkeypatch, people):
        FakeSMTP.instances = []
        monkeypatch.setattr("services.notifications.smtplib.SMTP", FakeSMTP)
        notifier = EmailNotifier(people, smtp_user="clinic@example.com", smtp_pass="pw", from_name="City Clinic")
        await notifier.notify("pat-1", "appointment.scheduled", {"date": "2026-10-20", "time": "10:00"})

        smtp = FakeSMTP.instances[0]
        assert smtp.logged_in == ("clinic@example.com", "pw")
        msg = smtp.messages[0]
        assert msg["To"] == "ana@example.com"
        assert msg["Subject"] == "Your appointment is scheduled"
        assert "Time: 10:00" in msg.get_content()

    @pytest.mark.asyncio
    async def test_missing_credentials_skip_sending(self, monkeypatch, people):
        FakeSMTP.instances = []
        monkeypatch.setattr("services.notifications.smtplib.SMTP", FakeSMTP)
        await EmailNotifier(people).notify("pat-1", "appointment.booked", {})
        assert FakeSMTP.instances == []

    @pytest.mark.asyncio
    async def test_user_without_email_is_skipped(self, monkeypatch, people):
        FakeSMTP.instances = []
        monkeypatch.setattr("services.notifications.smtplib.SMTP", FakeSMTP)
        notifier = EmailNotifier(people, smtp_user="clinic@example.com", smtp_pass="pw")
        await notifier.notify("pat-2", "appointment.booked", {})
        await notifier.notify("ghost", "appointment.booked", {})
        assert FakeSMTP.instances == []


class TestLogNotifier:
    @pytest.mark.asyncio
    async def test_records_notifications(self):
        notifier = LogNotifier()
        await notifier.notify("pat-1", "refund.issued", {"amount": "50.00"})
        assert notifier.sent == [("pat-1", "refund.issued", {"amount": "50.00"})]
