"""Tests for the cancellation refund policy."""

from datetime import timedelta, timezone
from decimal import Decimal

import pytest

from models.appointment import Appointment, AppointmentStatus
from models.directory import UserRole
from services.scheduling.cancellation import CancellationPolicy
from tests.conftest import NOW


def appointment_in(hours: float, fee: str = "50", status=AppointmentStatus.scheduled) -> Appointment:
    start = NOW + timedelta(hours=hours)
    return Appointment(
        patient_id="pat-1",
        doctor_id="doc-1",
        date=start.date(),
        time=start.time(),
        reason_for_visit="Follow-up visit",
        status=status,
        consultation_fee=Decimal(fee),
    )


@pytest.fixture
def policy() -> CancellationPolicy:
    return CancellationPolicy(tz=timezone.utc)


class TestEvaluate:
    def test_patient_with_notice_gets_full_refund(self, policy):
        """Scenario C: 30 hours ahead, the patient is refunded in full."""
        decision = policy.evaluate(appointment_in(30), NOW, UserRole.patient)
        assert decision.eligible is True
        assert decision.refund_amount == Decimal("50.00")
        assert decision.hours_until == pytest.approx(30)

    def test_patient_inside_notice_is_sent_to_manual_review(self, policy):
        """Scenario C: 10 hours ahead, a patient cannot self-cancel."""
        decision = policy.evaluate(appointment_in(10), NOW, UserRole.patient)
        assert decision.eligible is False
        assert decision.refund_amount == Decimal("0.00")
        assert "refund request" in decision.reason

    @pytest.mark.parametrize("role", [UserRole.staff, UserRole.admin, UserRole.system])
    def test_clinic_inside_notice_still_refunds(self, policy, role):
        decision = policy.evaluate(appointment_in(10), NOW, role)
        assert decision.eligible is True
        assert decision.refund_amount == Decimal("50.00")

    def test_patient_is_the_default_initiator(self, policy):
        assert policy.evaluate(appointment_in(10), NOW).eligible is False

    def test_past_appointment_is_rejected(self, policy):
        decision = policy.evaluate(appointment_in(-1), NOW, UserRole.staff)
        assert decision.eligible is False
        assert decision.refund_amount == Decimal("0.00")

    @pytest.mark.parametrize(
        "status", [AppointmentStatus.completed, AppointmentStatus.cancelled, AppointmentStatus.no_show]
    )
    def test_terminal_appointment_is_rejected(self, policy, status):
        decision = policy.evaluate(appointment_in(48, status=status), NOW, UserRole.admin)
        assert decision.eligible is False

    def test_flat_fee_is_deducted(self):
        policy = CancellationPolicy(tz=timezone.utc, flat_fee=Decimal("7.50"))
        assert policy.evaluate(appointment_in(30), NOW).refund_amount == Decimal("42.50")

    def test_flat_fee_larger_than_fee_clamps_to_zero(self):
        policy = CancellationPolicy(tz=timezone.utc, flat_fee=Decimal("80"))
        decision = policy.evaluate(appointment_in(30), NOW)
        assert decision.eligible is True
        assert decision.refund_amount == Decimal("0.00")

    def test_late_refund_percent_and_rounding(self):
        policy = CancellationPolicy(tz=timezone.utc, late_refund_percent=Decimal("33"))
        decision = policy.evaluate(appointment_in(5, fee="49.99"), NOW, UserRole.staff)
        assert decision.refund_amount == Decimal("16.50")

    def test_percent_outside_range_is_rejected(self):
        with pytest.raises(ValueError):
            CancellationPolicy(tz=timezone.utc, late_refund_percent=Decimal("120"))

    def test_refund_is_monotonic_and_bounded(self):
        policy = CancellationPolicy(tz=timezone.utc, flat_fee=Decimal("5"), late_refund_percent=Decimal("50"))
        previous = None
        for hours in (72, 48, 24.5, 24, 23.5, 12, 1, 0.25):
            amount = policy.evaluate(appointment_in(hours), NOW, UserRole.staff).refund_amount
            assert Decimal("0") <= amount <= Decimal("50")
            if previous is not None:
                assert amount <= previous
            previous = amount
