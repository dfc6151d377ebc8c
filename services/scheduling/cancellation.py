from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, tzinfo
from decimal import ROUND_HALF_UP, Decimal

from models.appointment import Appointment
from models.directory import UserRole


CENTS = Decimal("0.01")


@dataclass(frozen=True)
class CancellationDecision:
    eligible: bool
    refund_amount: Decimal
    reason: str
    hours_until: float


class CancellationPolicy:
    """Decides whether a cancellation is allowed and how much is refunded.

    With at least ``notice_hours`` of notice the fee minus ``flat_fee`` is
    refunded. Inside the notice period only clinic-initiated cancellations
    go through, refunding ``late_refund_percent`` of that amount; patients
    are sent to the manual refund-request workflow instead.
    """

    def __init__(
        self,
        *,
        tz: tzinfo,
        notice_hours: int = 24,
        flat_fee: Decimal = Decimal("0"),
        late_refund_percent: Decimal = Decimal("100"),
    ) -> None:
        if not Decimal("0") <= Decimal(late_refund_percent) <= Decimal("100"):
            raise ValueError("late_refund_percent must be between 0 and 100")
        self.tz = tz
        self.notice_hours = notice_hours
        self.flat_fee = Decimal(flat_fee)
        self.late_refund_percent = Decimal(late_refund_percent)

    def _clamp(self, amount: Decimal, fee: Decimal) -> Decimal:
        return min(max(amount, Decimal("0")), fee).quantize(CENTS, rounding=ROUND_HALF_UP)

    def evaluate(
        self,
        appointment: Appointment,
        now: datetime,
        initiated_by: UserRole = UserRole.patient,
    ) -> CancellationDecision:
        hours_until = (appointment.starts_at(self.tz) - now).total_seconds() / 3600
        if appointment.is_terminal:
            return CancellationDecision(
                False, Decimal("0.00"), f"Appointment is already {appointment.status.value}", hours_until
            )
        if hours_until <= 0:
            return CancellationDecision(False, Decimal("0.00"), "Appointment has already started", hours_until)

        fee = appointment.consultation_fee
        base = fee - self.flat_fee
        if hours_until >= self.notice_hours:
            return CancellationDecision(True, self._clamp(base, fee), "Cancelled with sufficient notice", hours_until)
        if initiated_by == UserRole.patient:
            return CancellationDecision(
                False,
                Decimal("0.00"),
                f"Cancellations less than {self.notice_hours} hours ahead must go through a refund request "
                "for manual approval",
                hours_until,
            )
        refund = base * self.late_refund_percent / Decimal("100")
        return CancellationDecision(True, self._clamp(refund, fee), "Late cancellation by the clinic", hours_until)
