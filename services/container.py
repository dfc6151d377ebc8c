from __future__ import annotations

import logging
from typing import Optional

from core.config import AppSettings, get_settings
from repositories.appointments import AppointmentStore, MongoAppointmentStore
from repositories.memory import InMemoryAppointmentStore
from repositories.refunds import InMemoryRefundOutbox, MongoRefundOutbox, RefundOutbox
from services.directory import InMemoryUserDirectory, MongoUserDirectory, UserDirectory
from services.notifications import EmailNotifier, LogNotifier, Notifier
from services.payments import HttpPaymentGateway, PaymentGateway, RecordingPaymentGateway
from services.scheduling.booking import BookingRules, BookingService


logger = logging.getLogger(__name__)


async def build_booking_service(settings: Optional[AppSettings] = None) -> BookingService:
    """Wire a ``BookingService`` from settings; the only place backends are chosen."""
    settings = settings or get_settings()

    store: AppointmentStore
    outbox: RefundOutbox
    directory: UserDirectory
    if settings.store_backend == "memory":
        logger.warning("booking.memory_backend", extra={"environment": settings.environment})
        store = InMemoryAppointmentStore()
        outbox = InMemoryRefundOutbox()
        directory = InMemoryUserDirectory()
    else:
        # Imported lazily so the memory backend never opens a Mongo client
        from db.database import get_database

        db = await get_database()
        store = MongoAppointmentStore(db)
        outbox = MongoRefundOutbox(db)
        directory = MongoUserDirectory(db)

    payments: PaymentGateway
    if settings.payment_service_url:
        payments = HttpPaymentGateway(
            settings.payment_service_url,
            api_key=settings.payment_api_key,
            timeout=settings.payment_timeout_seconds,
        )
    else:
        logger.warning("payments.recording_gateway", extra={"environment": settings.environment})
        payments = RecordingPaymentGateway()

    notifier: Notifier
    if settings.notifier == "email":
        notifier = EmailNotifier(
            directory,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_username,
            smtp_pass=settings.smtp_password,
            from_email=settings.smtp_from_email,
            from_name=settings.smtp_from_name,
        )
    else:
        notifier = LogNotifier()

    return BookingService(
        store=store,
        outbox=outbox,
        directory=directory,
        payments=payments,
        notifier=notifier,
        rules=BookingRules.from_settings(settings),
    )


async def ensure_indexes(service: BookingService) -> None:
    await service.store.ensure_indexes()
    await service.outbox.ensure_indexes()
