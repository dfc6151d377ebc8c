from __future__ import annotations

from datetime import date as Date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from models.appointment import Appointment, AppointmentStatus
from schemas.appointments import (
    ActorRequest,
    AppointmentOut,
    BookAppointmentRequest,
    CancelRequest,
    CancellationPreviewOut,
    CheckInRequest,
    ConfirmPaymentRequest,
    HospitalPaymentRequest,
    PayLaterRequest,
    RescheduleRequest,
    SlotOut,
    SlotsResponse,
)
from services.scheduling.booking import BookingService
from services.scheduling.lifecycle import Actor, allowed_actions, ensure_party


router = APIRouter(tags=["appointments"])


def get_booking_service(request: Request) -> BookingService:
    return request.app.state.booking_service


def _out(appointment: Appointment) -> AppointmentOut:
    return AppointmentOut.from_appointment(appointment)


@router.get("/doctors/{doctor_id}/slots", response_model=SlotsResponse)
async def get_slots(
    doctor_id: str,
    date: str = Query(..., description="YYYY-MM-DD"),
    duration_minutes: Optional[int] = Query(default=None),
    only_available: bool = Query(default=False),
    service: BookingService = Depends(get_booking_service),
) -> SlotsResponse:
    sequence = await service.get_available_slots(doctor_id, date, duration_minutes)
    slots = sequence.available() if only_available else list(sequence)
    return SlotsResponse(
        doctor_id=doctor_id,
        date=sequence.date,
        duration_minutes=sequence.duration_minutes,
        slots=[SlotOut.from_slot(s) for s in slots],
    )


@router.post("/appointments", response_model=AppointmentOut, status_code=201)
async def book_appointment(
    payload: BookAppointmentRequest,
    service: BookingService = Depends(get_booking_service),
) -> AppointmentOut:
    created = await service.book_appointment(
        payload.patient_id,
        payload.doctor_id,
        payload.date,
        payload.time,
        duration_minutes=payload.duration_minutes,
        reason_for_visit=payload.reason_for_visit,
        appointment_type=payload.appointment_type,
        priority=payload.priority,
        symptoms=payload.symptoms,
    )
    return _out(created)


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
async def get_appointment(
    appointment_id: str,
    actor_id: Optional[str] = Query(default=None),
    service: BookingService = Depends(get_booking_service),
) -> AppointmentOut:
    appointment = await service.get_appointment(appointment_id)
    if actor_id is None:
        return _out(appointment)
    role = await service.actor_role(actor_id)
    ensure_party(appointment, Actor(id=actor_id, role=role))
    actions = [a.value for a in allowed_actions(appointment.status, role)]
    return AppointmentOut.from_appointment(appointment, actions)


@router.get("/patients/{patient_id}/appointments", response_model=List[AppointmentOut])
async def list_patient_appointments(
    patient_id: str,
    status: Optional[AppointmentStatus] = Query(default=None),
    service: BookingService = Depends(get_booking_service),
) -> List[AppointmentOut]:
    return [_out(a) for a in await service.list_patient_appointments(patient_id, status)]


@router.get("/doctors/{doctor_id}/appointments", response_model=List[AppointmentOut])
async def list_doctor_appointments(
    doctor_id: str,
    date: Optional[Date] = Query(default=None),
    status: Optional[AppointmentStatus] = Query(default=None),
    service: BookingService = Depends(get_booking_service),
) -> List[AppointmentOut]:
    return [_out(a) for a in await service.list_doctor_appointments(doctor_id, date, status)]


@router.post("/appointments/{appointment_id}/confirm-payment", response_model=AppointmentOut)
async def confirm_payment(
    appointment_id: str,
    payload: ConfirmPaymentRequest,
    service: BookingService = Depends(get_booking_service),
) -> AppointmentOut:
    return _out(
        await service.confirm_payment(
            appointment_id, payload.method, transaction_id=payload.transaction_id, actor_id=payload.actor_id
        )
    )


@router.post("/appointments/{appointment_id}/pay-later", response_model=AppointmentOut)
async def pay_later(
    appointment_id: str,
    payload: PayLaterRequest,
    service: BookingService = Depends(get_booking_service),
) -> AppointmentOut:
    return _out(await service.schedule_for_pay_later(appointment_id, actor_id=payload.actor_id))


@router.post("/appointments/{appointment_id}/hospital-payment", response_model=AppointmentOut)
async def hospital_payment(
    appointment_id: str,
    payload: HospitalPaymentRequest,
    service: BookingService = Depends(get_booking_service),
) -> AppointmentOut:
    return _out(
        await service.record_hospital_payment(
            appointment_id, payload.actor_id, payload.method, transaction_id=payload.transaction_id
        )
    )


@router.post("/appointments/{appointment_id}/reschedule", response_model=AppointmentOut)
async def reschedule(
    appointment_id: str,
    payload: RescheduleRequest,
    service: BookingService = Depends(get_booking_service),
) -> AppointmentOut:
    return _out(await service.reschedule(appointment_id, payload.date, payload.time, payload.actor_id))


@router.get("/appointments/{appointment_id}/cancellation", response_model=CancellationPreviewOut)
async def preview_cancellation(
    appointment_id: str,
    actor_id: str = Query(...),
    service: BookingService = Depends(get_booking_service),
) -> CancellationPreviewOut:
    decision = await service.evaluate_cancellation(appointment_id, actor_id)
    return CancellationPreviewOut(
        appointment_id=appointment_id,
        eligible=decision.eligible,
        refund_amount=decision.refund_amount,
        reason=decision.reason,
        hours_until=decision.hours_until,
    )


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentOut)
async def cancel(
    appointment_id: str,
    payload: CancelRequest,
    service: BookingService = Depends(get_booking_service),
) -> AppointmentOut:
    return _out(await service.cancel(appointment_id, payload.actor_id, payload.reason))


@router.post("/appointments/{appointment_id}/check-in", response_model=AppointmentOut)
async def check_in(
    appointment_id: str,
    payload: CheckInRequest,
    service: BookingService = Depends(get_booking_service),
) -> AppointmentOut:
    return _out(await service.check_in(appointment_id, payload.actor_id, payload.method))


@router.post("/appointments/{appointment_id}/start", response_model=AppointmentOut)
async def start_consultation(
    appointment_id: str,
    payload: ActorRequest,
    service: BookingService = Depends(get_booking_service),
) -> AppointmentOut:
    return _out(await service.start_consultation(appointment_id, payload.actor_id))


@router.post("/appointments/{appointment_id}/complete", response_model=AppointmentOut)
async def complete(
    appointment_id: str,
    payload: ActorRequest,
    service: BookingService = Depends(get_booking_service),
) -> AppointmentOut:
    return _out(await service.complete(appointment_id, payload.actor_id))


@router.post("/appointments/{appointment_id}/no-show", response_model=AppointmentOut)
async def no_show(
    appointment_id: str,
    payload: ActorRequest,
    service: BookingService = Depends(get_booking_service),
) -> AppointmentOut:
    return _out(await service.mark_no_show(appointment_id, payload.actor_id))
