"""Booking façade: the only writer of appointment status, payment status and slot.

Each operation validates its input and checks every business rule before the
first write. Writes that move an appointment on the calendar go through the
conflict guard's doctor-day unit; the rest are version-checked saves.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar
from zoneinfo import ZoneInfo

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from core.config import AppSettings
from core.errors import (
    AlreadyPaid,
    AppointmentNotFound,
    BookingError,
    CancellationRejected,
    ConcurrentModification,
    DoctorNotFound,
    IllegalTransition,
    PatientNotFound,
    PaymentRequired,
    PermissionDenied,
    SlotUnavailable,
    ValidationError,
)
from models.appointment import (
    Appointment,
    AppointmentPriority,
    AppointmentStatus,
    AppointmentType,
    Cancellation,
    CheckIn,
    CheckInMethod,
    PaymentDetails,
    PaymentLocation,
    PaymentMethod,
    PaymentStatus,
    RescheduleEntry,
)
from models.base import utcnow
from models.directory import DoctorProfile, UserRole
from models.refund import RefundKind, RefundOutboxEntry, RefundRequest
from repositories.appointments import AppointmentStore, DoctorDayUnit
from repositories.refunds import RefundOutbox
from schemas.appointments import (
    ActorRequest,
    BookAppointmentRequest,
    CancelRequest,
    CheckInRequest,
    ConfirmPaymentRequest,
    HospitalPaymentRequest,
    RescheduleRequest,
    SlotQuery,
)
from services.directory import UserDirectory
from services.notifications import Notifier
from services.payments import PaymentGateway, PaymentRecord
from services.scheduling.cancellation import CancellationDecision, CancellationPolicy
from services.scheduling.conflicts import ConflictGuard
from services.scheduling.lifecycle import Action, Actor, ensure_party, ensure_role, settle, transition
from services.scheduling.slots import SlotCalendar, SlotSequence, working_window
from services.scheduling.windows import TimeWindow


logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

SYSTEM_ACTOR = Actor(id="system", role=UserRole.system)


def _awaits_hospital_payment(appointment: Appointment) -> bool:
    return appointment.payment_status == PaymentStatus.pay_at_hospital and appointment.status not in (
        AppointmentStatus.cancelled,
        AppointmentStatus.no_show,
    )


@dataclass(frozen=True)
class BookingRules:
    timezone: str = "UTC"
    granularity_minutes: int = 15
    default_duration_minutes: int = 30
    min_duration_minutes: int = 15
    max_duration_minutes: int = 120
    max_advance_days: int = 90
    cancellation_notice_hours: int = 24
    cancellation_flat_fee: Decimal = Decimal("0")
    late_cancellation_refund_percent: Decimal = Decimal("100")
    conflict_retry_attempts: int = 5
    claim_grace_seconds: int = 60
    refund_max_attempts: int = 10
    refund_retry_base_seconds: int = 30
    refund_retry_batch_size: int = 50

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "BookingRules":
        return cls(
            timezone=settings.clinic_timezone,
            granularity_minutes=settings.slot_granularity_minutes,
            default_duration_minutes=settings.default_duration_minutes,
            min_duration_minutes=settings.min_duration_minutes,
            max_duration_minutes=settings.max_duration_minutes,
            max_advance_days=settings.max_advance_days,
            cancellation_notice_hours=settings.cancellation_notice_hours,
            cancellation_flat_fee=settings.cancellation_flat_fee,
            late_cancellation_refund_percent=settings.late_cancellation_refund_percent,
            conflict_retry_attempts=settings.conflict_retry_attempts,
            claim_grace_seconds=settings.claim_grace_seconds,
            refund_max_attempts=settings.refund_max_attempts,
            refund_retry_base_seconds=settings.refund_retry_base_seconds,
            refund_retry_batch_size=settings.refund_retry_batch_size,
        )


class BookingService:
    def __init__(
        self,
        *,
        store: AppointmentStore,
        outbox: RefundOutbox,
        directory: UserDirectory,
        payments: PaymentGateway,
        notifier: Notifier,
        rules: BookingRules = BookingRules(),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.outbox = outbox
        self.directory = directory
        self.payments = payments
        self.notifier = notifier
        self.rules = rules
        self.tz = ZoneInfo(rules.timezone)
        self._clock = clock
        self.calendar = SlotCalendar(
            store,
            directory,
            tz=self.tz,
            granularity_minutes=rules.granularity_minutes,
            min_duration_minutes=rules.min_duration_minutes,
            max_duration_minutes=rules.max_duration_minutes,
            clock=clock,
        )
        self.guard = ConflictGuard(
            store,
            retry_attempts=rules.conflict_retry_attempts,
            claim_grace_seconds=rules.claim_grace_seconds,
            clock=clock,
        )
        self.policy = CancellationPolicy(
            tz=self.tz,
            notice_hours=rules.cancellation_notice_hours,
            flat_fee=rules.cancellation_flat_fee,
            late_refund_percent=rules.late_cancellation_refund_percent,
        )
        # Cancellation refunds wait this long before the retry job may send them
        self.refund_hold = timedelta(seconds=rules.claim_grace_seconds)

    # ---------------- Helpers ----------------

    def _validate(self, model: Type[M], **data: Any) -> M:
        try:
            return model(**data)
        except PydanticValidationError as exc:
            errors = [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in exc.errors(include_url=False)
            ]
            first = errors[0] if errors else {"field": "", "message": "invalid input"}
            raise ValidationError(f"{first['field']}: {first['message']}", details={"errors": errors}) from exc

    def _check_window(self, day: date, start: time, duration_minutes: int) -> TimeWindow:
        rules = self.rules
        if (
            duration_minutes < rules.min_duration_minutes
            or duration_minutes > rules.max_duration_minutes
            or duration_minutes % rules.granularity_minutes
        ):
            raise ValidationError(
                f"duration_minutes must be between {rules.min_duration_minutes} and "
                f"{rules.max_duration_minutes} in steps of {rules.granularity_minutes}",
                details={"duration_minutes": duration_minutes},
            )
        if start.minute % rules.granularity_minutes:
            raise ValidationError(
                f"time must fall on a {rules.granularity_minutes}-minute boundary",
                details={"time": start.strftime("%H:%M")},
            )
        now = self._clock().astimezone(self.tz)
        if datetime.combine(day, start, tzinfo=self.tz) <= now:
            raise ValidationError("Appointment must be in the future", details={"date": day.isoformat()})
        if day > now.date() + timedelta(days=rules.max_advance_days):
            raise ValidationError(
                f"Appointments can be booked at most {rules.max_advance_days} days ahead",
                details={"date": day.isoformat()},
            )
        return TimeWindow.at(start, duration_minutes)

    async def _active_doctor(self, doctor_id: str) -> DoctorProfile:
        doctor = await self.directory.get_doctor(doctor_id)
        if doctor is None:
            raise DoctorNotFound(f"Doctor '{doctor_id}' not found")
        if not doctor.is_active:
            raise ValidationError("Doctor is not currently accepting appointments", details={"doctor_id": doctor_id})
        return doctor

    def _within_hours(self, doctor: DoctorProfile, day: date, window: TimeWindow) -> None:
        working = working_window(doctor.availability, day)
        if working is None or not working.contains(window):
            raise SlotUnavailable(
                f"{window.label()} on {day.isoformat()} is outside the doctor's working hours",
                details={"date": day.isoformat(), "time": window.start_time.strftime("%H:%M")},
            )
        for period in doctor.availability.blocked_on(day):
            if window.overlaps(TimeWindow.between(period.start_time, period.end_time)):
                raise SlotUnavailable(
                    f"{window.label()} on {day.isoformat()} is blocked on the doctor's calendar",
                    details={
                        "date": day.isoformat(),
                        "time": window.start_time.strftime("%H:%M"),
                        "blocked_reason": period.reason,
                    },
                )

    async def _actor(self, actor_id: Optional[str]) -> Actor:
        if actor_id is None:
            return SYSTEM_ACTOR
        user = await self.directory.get_user(actor_id)
        if user is None or not user.is_active:
            raise PermissionDenied(f"Unknown or inactive user '{actor_id}'")
        return Actor(id=user.id, role=user.role)

    async def _get(self, appointment_id: str) -> Appointment:
        appointment = await self.store.get(appointment_id)
        if appointment is None:
            raise AppointmentNotFound(f"Appointment '{appointment_id}' not found")
        return appointment

    async def _save_payment(self, appointment: Appointment, changes: Dict[str, Any]) -> Appointment:
        try:
            return await self.store.save(appointment.model_copy(update=changes))
        except ConcurrentModification:
            current = await self._get(appointment.id)
            if current.payment_status == PaymentStatus.paid:
                raise AlreadyPaid("Appointment has already been paid") from None
            raise

    async def _record_charge(
        self,
        appointment: Appointment,
        record: PaymentRecord,
        changes: Dict[str, Any],
        accepts: Callable[[Appointment], bool],
    ) -> Appointment:
        """Save a charge the payment service has already taken.

        A lost version check is retried against the fresh record while it can
        still take the payment. Once it cannot (cancelled meanwhile, say) the
        charge is refunded, since no appointment will ever point at it.
        """
        current = appointment
        for _ in range(3):
            try:
                return await self.store.save(current.model_copy(update=changes))
            except ConcurrentModification:
                current = await self._get(appointment.id)
                if current.payment_status == PaymentStatus.paid:
                    raise AlreadyPaid("Appointment has already been paid") from None
                if not accepts(current):
                    break
        else:
            # Still payable; a retry reuses the same idempotent charge
            raise ConcurrentModification(
                "Appointment kept changing while recording the payment",
                details={"appointment_id": appointment.id},
            )

        logger.warning(
            "payment.unrecorded_charge",
            extra={
                "appointment_id": appointment.id,
                "transaction_id": record.transaction_id,
                "status": current.status.value,
            },
        )
        request = RefundRequest(
            appointment_id=appointment.id,
            amount=record.amount,
            reason="Appointment changed while the payment was being recorded",
            computed_at=self._clock(),
            kind=RefundKind.unrecorded_charge,
        )
        entry = await self._queue_refund(request)
        if entry is not None:
            await self._deliver_refund(entry, current)
        raise ConcurrentModification(
            "Appointment changed while the payment was being recorded; the charge is being refunded",
            details={"appointment_id": appointment.id, "status": current.status.value},
        )

    async def _notify(self, user_id: str, event_type: str, appointment: Appointment, **extra: Any) -> None:
        payload = {
            "appointment_id": appointment.id,
            "date": appointment.date.isoformat(),
            "time": appointment.time.strftime("%H:%M"),
            "status": appointment.status.value,
            **extra,
        }
        try:
            await self.notifier.notify(user_id, event_type, payload)
        except Exception as exc:
            logger.warning(
                "notification.failed",
                extra={"user_id": user_id, "event": event_type, "error": str(exc)},
            )

    async def _notify_parties(self, event_type: str, appointment: Appointment, **extra: Any) -> None:
        await self._notify(appointment.patient_id, event_type, appointment, **extra)
        await self._notify(appointment.doctor_id, event_type, appointment, **extra)

    # ---------------- Queries ----------------

    async def get_appointment(self, appointment_id: str) -> Appointment:
        return await self._get(appointment_id)

    async def list_patient_appointments(
        self, patient_id: str, status: Optional[AppointmentStatus] = None
    ) -> List[Appointment]:
        return await self.store.list_for_patient(patient_id, status=status)

    async def list_doctor_appointments(
        self,
        doctor_id: str,
        day: Optional[date] = None,
        status: Optional[AppointmentStatus] = None,
    ) -> List[Appointment]:
        return await self.store.list_for_doctor(doctor_id, day=day, status=status)

    async def get_available_slots(
        self, doctor_id: str, day: date | str, duration_minutes: Optional[int] = None
    ) -> SlotSequence:
        query = self._validate(SlotQuery, date=day, duration_minutes=duration_minutes)
        duration = query.duration_minutes or self.rules.default_duration_minutes
        return await self.calendar.compute_slots(doctor_id, query.date, duration)

    async def actor_role(self, actor_id: Optional[str]) -> UserRole:
        return (await self._actor(actor_id)).role

    # ---------------- Booking ----------------

    async def book_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        date: date | str,
        time: time | str,
        *,
        duration_minutes: Optional[int] = None,
        reason_for_visit: str,
        appointment_type: AppointmentType | str = AppointmentType.consultation,
        priority: AppointmentPriority | str = AppointmentPriority.normal,
        symptoms: Optional[List[str]] = None,
    ) -> Appointment:
        req = self._validate(
            BookAppointmentRequest,
            patient_id=patient_id,
            doctor_id=doctor_id,
            date=date,
            time=time,
            duration_minutes=duration_minutes,
            reason_for_visit=reason_for_visit,
            appointment_type=appointment_type,
            priority=priority,
            symptoms=symptoms or [],
        )
        duration = req.duration_minutes or self.rules.default_duration_minutes
        window = self._check_window(req.date, req.time, duration)

        patient = await self.directory.get_user(req.patient_id)
        if patient is None or patient.role != UserRole.patient:
            raise PatientNotFound(f"Patient '{req.patient_id}' not found")
        if not patient.is_active:
            raise ValidationError("Patient account is inactive", details={"patient_id": req.patient_id})
        doctor = await self._active_doctor(req.doctor_id)
        self._within_hours(doctor, req.date, window)

        now = self._clock()
        appointment = Appointment(
            patient_id=req.patient_id,
            doctor_id=req.doctor_id,
            date=req.date,
            time=req.time,
            duration_minutes=duration,
            reason_for_visit=req.reason_for_visit,
            appointment_type=req.appointment_type,
            priority=req.priority,
            symptoms=req.symptoms,
            status=AppointmentStatus.pending_payment,
            payment_status=PaymentStatus.pending,
            consultation_fee=doctor.consultation_fee,
            created_at=now,
            updated_at=now,
        )

        async def stage(unit: DoctorDayUnit) -> None:
            await self.guard.ensure_free(unit, window)
            self.guard.claim(unit, appointment.id, window)
            unit.insert(appointment)

        unit = await self.guard.run_atomic(req.doctor_id, req.date, stage)
        created = unit.saved[appointment.id]
        logger.info(
            "booking.created",
            extra={
                "appointment_id": created.id,
                "doctor_id": created.doctor_id,
                "patient_id": created.patient_id,
                "date": created.date.isoformat(),
                "window": window.label(),
            },
        )
        await self._notify_parties("appointment.booked", created)
        return created

    # ---------------- Payment ----------------

    async def confirm_payment(
        self,
        appointment_id: str,
        method: PaymentMethod | str = PaymentMethod.card,
        transaction_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Appointment:
        req = self._validate(ConfirmPaymentRequest, method=method, transaction_id=transaction_id, actor_id=actor_id)
        appointment = await self._get(appointment_id)
        actor = await self._actor(req.actor_id)
        ensure_party(appointment, actor)
        if appointment.payment_status == PaymentStatus.paid:
            raise AlreadyPaid("Appointment has already been paid", details={"appointment_id": appointment_id})
        status = transition(appointment.status, Action.confirm_payment, actor)

        record = await self.payments.charge_or_record(appointment.id, appointment.consultation_fee, req.method)
        payment = PaymentDetails(
            method=req.method,
            transaction_id=req.transaction_id or record.transaction_id,
            amount=appointment.consultation_fee,
            paid_at=self._clock(),
            location=PaymentLocation.online,
            processed_by=None if actor.role == UserRole.system else actor.id,
        )
        saved = await self._record_charge(
            appointment,
            record,
            {"status": status, "payment_status": PaymentStatus.paid, "payment": payment},
            accepts=lambda current: current.status == AppointmentStatus.pending_payment,
        )
        logger.info("booking.paid", extra={"appointment_id": saved.id, "method": req.method.value})
        await self._notify(saved.patient_id, "appointment.scheduled", saved)
        return saved

    async def schedule_for_pay_later(self, appointment_id: str, actor_id: Optional[str] = None) -> Appointment:
        appointment = await self._get(appointment_id)
        actor = await self._actor(actor_id)
        ensure_party(appointment, actor)
        if appointment.payment_status == PaymentStatus.paid:
            raise AlreadyPaid("Appointment has already been paid", details={"appointment_id": appointment_id})
        status = transition(appointment.status, Action.pay_later, actor)
        payment = PaymentDetails(
            method=PaymentMethod.pay_later,
            location=PaymentLocation.hospital,
            due_at=appointment.starts_at(self.tz),
            note="Payment due at the hospital before the consultation",
        )
        saved = await self._save_payment(
            appointment, {"status": status, "payment_status": PaymentStatus.pay_at_hospital, "payment": payment}
        )
        logger.info("booking.pay_later", extra={"appointment_id": saved.id})
        await self._notify(saved.patient_id, "appointment.scheduled", saved, payment="pay-at-hospital")
        return saved

    async def record_hospital_payment(
        self,
        appointment_id: str,
        actor_id: str,
        method: PaymentMethod | str = PaymentMethod.cash,
        transaction_id: Optional[str] = None,
    ) -> Appointment:
        req = self._validate(HospitalPaymentRequest, actor_id=actor_id, method=method, transaction_id=transaction_id)
        actor = await self._actor(req.actor_id)
        if actor.role not in (UserRole.staff, UserRole.admin):
            raise PermissionDenied("Only clinic staff may record hospital payments")
        appointment = await self._get(appointment_id)
        if appointment.payment_status == PaymentStatus.paid:
            raise AlreadyPaid("Appointment has already been paid", details={"appointment_id": appointment_id})
        if not _awaits_hospital_payment(appointment):
            raise IllegalTransition(
                "Appointment is not awaiting payment at the hospital",
                details={"status": appointment.status.value, "payment_status": appointment.payment_status.value},
            )

        record = await self.payments.charge_or_record(appointment.id, appointment.consultation_fee, req.method)
        payment = PaymentDetails(
            method=req.method,
            transaction_id=req.transaction_id or record.transaction_id,
            amount=appointment.consultation_fee,
            paid_at=self._clock(),
            location=PaymentLocation.hospital,
            processed_by=actor.id,
        )
        saved = await self._record_charge(
            appointment,
            record,
            {"payment_status": PaymentStatus.paid, "payment": payment},
            accepts=_awaits_hospital_payment,
        )
        logger.info(
            "booking.hospital_payment",
            extra={"appointment_id": saved.id, "method": req.method.value, "processed_by": actor.id},
        )
        return saved

    # ---------------- Calendar moves ----------------

    async def reschedule(
        self,
        appointment_id: str,
        new_date: date | str,
        new_time: time | str,
        actor_id: str,
    ) -> Appointment:
        req = self._validate(RescheduleRequest, actor_id=actor_id, date=new_date, time=new_time)
        appointment = await self._get(appointment_id)
        actor = await self._actor(req.actor_id)
        ensure_party(appointment, actor)
        transition(appointment.status, Action.reschedule, actor)
        if (req.date, req.time) == (appointment.date, appointment.time):
            raise ValidationError("New slot is the same as the current one")
        window = self._check_window(req.date, req.time, appointment.duration_minutes)
        doctor = await self._active_doctor(appointment.doctor_id)
        self._within_hours(doctor, req.date, window)

        async def stage(unit: DoctorDayUnit) -> None:
            current = await self._get(appointment_id)
            status = settle(transition(current.status, Action.reschedule, actor))
            await self.guard.ensure_free(unit, window, exclude=current.id)
            self.guard.claim(unit, current.id, window)
            entry = RescheduleEntry(
                previous_date=current.date,
                previous_time=current.time,
                rescheduled_at=unit.now,
                rescheduled_by=actor.id,
            )
            unit.save(
                current.model_copy(
                    update={
                        "date": req.date,
                        "time": req.time,
                        "status": status,
                        "reschedule_history": [*current.reschedule_history, entry],
                    }
                )
            )

        unit = await self.guard.run_atomic(appointment.doctor_id, req.date, stage)
        saved = unit.saved[appointment_id]
        previous = saved.reschedule_history[-1]
        if previous.previous_date != saved.date:
            await self.store.release_claim(saved.doctor_id, previous.previous_date, saved.id)
        logger.info(
            "booking.rescheduled",
            extra={
                "appointment_id": saved.id,
                "from": f"{previous.previous_date.isoformat()} {previous.previous_time.strftime('%H:%M')}",
                "to": f"{saved.date.isoformat()} {window.label()}",
            },
        )
        await self._notify_parties(
            "appointment.rescheduled",
            saved,
            previous_date=previous.previous_date.isoformat(),
            previous_time=previous.previous_time.strftime("%H:%M"),
        )
        return saved

    async def cancel(self, appointment_id: str, actor_id: str, reason: str) -> Appointment:
        req = self._validate(CancelRequest, actor_id=actor_id, reason=reason)
        appointment = await self._get(appointment_id)
        actor = await self._actor(req.actor_id)
        ensure_party(appointment, actor)
        status = transition(appointment.status, Action.cancel, actor)
        now = self._clock()
        decision = self.policy.evaluate(appointment, now, actor.role)
        if not decision.eligible:
            raise CancellationRejected(
                decision.reason,
                details={"hours_until": round(decision.hours_until, 2)},
            )

        paid = appointment.payment_status == PaymentStatus.paid
        refund_amount = decision.refund_amount if paid else Decimal("0.00")
        cancellation = Cancellation(
            reason=req.reason,
            cancelled_by=actor.id,
            cancelled_at=now,
            refund_amount=refund_amount,
        )
        request = None
        if paid and refund_amount > 0:
            request = RefundRequest(
                appointment_id=appointment.id,
                amount=refund_amount,
                reason=req.reason,
                computed_at=now,
            )
        # Runs to completion even if the caller goes away
        saved, entry = await asyncio.shield(
            self._commit_cancellation(appointment, {"status": status, "cancellation": cancellation}, request)
        )
        logger.info(
            "booking.cancelled",
            extra={
                "appointment_id": saved.id,
                "cancelled_by": actor.id,
                "role": actor.role.value,
                "refund_amount": str(refund_amount),
            },
        )
        if entry is not None:
            saved = await self._deliver_refund(entry, saved)
        await self._notify_parties("appointment.cancelled", saved, refund_amount=str(refund_amount))
        return saved

    async def _commit_cancellation(
        self,
        appointment: Appointment,
        changes: Dict[str, Any],
        request: Optional[RefundRequest],
    ) -> Tuple[Appointment, Optional[RefundOutboxEntry]]:
        entry = None
        if request is not None:
            # Queued before the write so a refund owed by a committed
            # cancellation is never lost; held back until that write is done
            entry = await self.outbox.enqueue(request, next_attempt_at=request.computed_at + self.refund_hold)
        try:
            saved = await self.store.save(appointment.model_copy(update=changes))
        except BookingError:
            if entry is not None:
                await self._void_refund(entry, "Cancellation was not committed")
            raise
        await self.store.release_claim(saved.doctor_id, saved.date, saved.id)
        return saved, entry

    async def evaluate_cancellation(self, appointment_id: str, actor_id: str) -> CancellationDecision:
        """What ``cancel`` would decide for this actor right now, without writing."""
        req = self._validate(ActorRequest, actor_id=actor_id)
        appointment = await self._get(appointment_id)
        actor = await self._actor(req.actor_id)
        ensure_party(appointment, actor)
        ensure_role(Action.cancel, actor)
        decision = self.policy.evaluate(appointment, self._clock(), actor.role)
        if appointment.payment_status != PaymentStatus.paid:
            decision = replace(decision, refund_amount=Decimal("0.00"))
        return decision

    # ---------------- Visit ----------------

    async def check_in(
        self,
        appointment_id: str,
        actor_id: str,
        method: CheckInMethod | str = CheckInMethod.manual,
    ) -> Appointment:
        req = self._validate(CheckInRequest, actor_id=actor_id, method=method)
        appointment = await self._get(appointment_id)
        actor = await self._actor(req.actor_id)
        ensure_party(appointment, actor)
        settled = appointment.payment_status in (PaymentStatus.paid, PaymentStatus.pay_at_hospital)
        if not appointment.is_terminal and not settled and appointment.consultation_fee != 0:
            raise PaymentRequired(
                "Payment is required before check-in",
                details={"payment_status": appointment.payment_status.value},
            )
        status = transition(appointment.status, Action.check_in, actor)
        check_in = CheckIn(time=self._clock(), method=req.method, verified_by=actor.id)
        saved = await self.store.save(appointment.model_copy(update={"status": status, "check_in": check_in}))
        logger.info("booking.checked_in", extra={"appointment_id": saved.id, "method": req.method.value})
        await self._notify(saved.patient_id, "appointment.checked_in", saved)
        return saved

    async def _advance(self, appointment_id: str, actor_id: str, action: Action) -> Appointment:
        appointment = await self._get(appointment_id)
        actor = await self._actor(self._validate(ActorRequest, actor_id=actor_id).actor_id)
        ensure_party(appointment, actor)
        status = transition(appointment.status, action, actor)
        saved = await self.store.save(appointment.model_copy(update={"status": status}))
        if saved.is_terminal:
            await self.store.release_claim(saved.doctor_id, saved.date, saved.id)
        logger.info(
            "booking.status_changed",
            extra={"appointment_id": saved.id, "action": action.value, "status": saved.status.value},
        )
        return saved

    async def start_consultation(self, appointment_id: str, actor_id: str) -> Appointment:
        return await self._advance(appointment_id, actor_id, Action.start)

    async def complete(self, appointment_id: str, actor_id: str) -> Appointment:
        saved = await self._advance(appointment_id, actor_id, Action.complete)
        await self._notify(saved.patient_id, "appointment.completed", saved)
        return saved

    async def mark_no_show(self, appointment_id: str, actor_id: str) -> Appointment:
        saved = await self._advance(appointment_id, actor_id, Action.no_show)
        await self._notify(saved.patient_id, "appointment.no_show", saved)
        return saved

    # ---------------- Refunds ----------------

    async def _queue_refund(self, request: RefundRequest) -> Optional[RefundOutboxEntry]:
        try:
            return await self.outbox.enqueue(request)
        except BookingError as exc:
            logger.error(
                "refund.queue_failed",
                extra={"appointment_id": request.appointment_id, "amount": str(request.amount), "error": str(exc)},
            )
            return None

    async def _void_refund(self, entry: RefundOutboxEntry, error: str) -> None:
        try:
            await self.outbox.mark_abandoned(entry.id, attempts=entry.attempts, error=error)
        except BookingError as exc:
            # The retry job voids it again once it finds the appointment unchanged
            logger.error("refund.void_failed", extra={"entry_id": entry.id, "error": str(exc)})
            return
        logger.warning(
            "refund.voided",
            extra={"entry_id": entry.id, "appointment_id": entry.request.appointment_id, "error": error},
        )

    async def _refund_owed(self, request: RefundRequest) -> bool:
        if request.kind != RefundKind.cancellation:
            return True
        appointment = await self.store.get(request.appointment_id)
        return appointment is not None and appointment.status == AppointmentStatus.cancelled

    async def _attempt_refund(self, entry: RefundOutboxEntry, now: datetime) -> str:
        """One delivery attempt; returns ``sent``, ``retried`` or ``abandoned``."""
        request = entry.request
        attempts = entry.attempts + 1
        try:
            await self.payments.refund(request.appointment_id, request.amount, request.reason)
        except Exception as exc:
            logger.warning(
                "refund.failed",
                extra={"appointment_id": request.appointment_id, "amount": str(request.amount), "error": str(exc)},
            )
            if attempts >= self.rules.refund_max_attempts:
                await self.outbox.mark_abandoned(entry.id, attempts=attempts, error=str(exc))
                logger.error(
                    "refund.abandoned",
                    extra={"entry_id": entry.id, "appointment_id": request.appointment_id, "attempts": attempts},
                )
                return "abandoned"
            delay = timedelta(seconds=self.rules.refund_retry_base_seconds * 2 ** (attempts - 1))
            await self.outbox.mark_retry(entry.id, attempts=attempts, error=str(exc), next_attempt_at=now + delay)
            logger.info(
                "refund.retry_scheduled",
                extra={"entry_id": entry.id, "attempts": attempts, "delay_seconds": delay.total_seconds()},
            )
            return "retried"
        await self.outbox.mark_sent(entry.id, attempts=attempts)
        return "sent"

    async def _settle_refund(self, request: RefundRequest) -> Optional[Appointment]:
        if request.kind != RefundKind.cancellation:
            return None
        try:
            return await self._apply_refund(request.appointment_id, request.amount)
        except BookingError as exc:
            logger.error(
                "refund.status_update_failed",
                extra={"appointment_id": request.appointment_id, "error": str(exc)},
            )
            return None

    async def _deliver_refund(self, entry: RefundOutboxEntry, appointment: Appointment) -> Appointment:
        """First delivery attempt, made right after the write that owes the refund.

        Whatever goes wrong stays in the outbox for ``retry_pending_refunds``;
        it never fails the operation that queued the refund.
        """
        try:
            outcome = await self._attempt_refund(entry, self._clock())
        except BookingError as exc:
            logger.error(
                "refund.delivery_unrecorded",
                extra={"entry_id": entry.id, "appointment_id": entry.request.appointment_id, "error": str(exc)},
            )
            return appointment
        if outcome != "sent":
            return appointment
        return await self._settle_refund(entry.request) or appointment

    async def _apply_refund(self, appointment_id: str, amount: Decimal) -> Appointment:
        for _ in range(3):
            current = await self._get(appointment_id)
            status = PaymentStatus.refunded if amount >= current.consultation_fee else PaymentStatus.partially_refunded
            changes: Dict[str, Any] = {"payment_status": status}
            if current.cancellation is not None:
                changes["cancellation"] = current.cancellation.model_copy(update={"refund_amount": amount})
            try:
                saved = await self.store.save(current.model_copy(update=changes))
            except ConcurrentModification:
                continue
            logger.info(
                "refund.issued",
                extra={"appointment_id": appointment_id, "amount": str(amount), "payment_status": status.value},
            )
            await self._notify(saved.patient_id, "refund.issued", saved, amount=str(amount))
            return saved
        raise ConcurrentModification(
            "Appointment kept changing while recording the refund",
            details={"appointment_id": appointment_id},
        )

    async def retry_pending_refunds(self, limit: Optional[int] = None) -> Dict[str, int]:
        now = self._clock()
        counts = {"sent": 0, "retried": 0, "abandoned": 0, "voided": 0}
        for entry in await self.outbox.due(now, limit or self.rules.refund_retry_batch_size):
            if not await self._refund_owed(entry.request):
                await self._void_refund(entry, "Cancellation was not committed")
                counts["voided"] += 1
                continue
            outcome = await self._attempt_refund(entry, now)
            counts[outcome] += 1
            if outcome == "sent":
                await self._settle_refund(entry.request)
        logger.info("refund.retry_run", extra=counts)
        return counts
