from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Dict, Optional, Protocol, Tuple

from services.directory import UserDirectory


logger = logging.getLogger(__name__)


SUBJECTS = {
    "appointment.booked": "Your appointment request was received",
    "appointment.scheduled": "Your appointment is scheduled",
    "appointment.rescheduled": "Your appointment was rescheduled",
    "appointment.cancelled": "Your appointment was cancelled",
    "appointment.checked_in": "You are checked in",
    "appointment.completed": "Your consultation is complete",
    "appointment.no_show": "You missed your appointment",
    "refund.issued": "Your refund was issued",
}


class Notifier(Protocol):
    async def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None: ...


class LogNotifier:
    """Writes notifications to the log; used in development and tests."""

    def __init__(self) -> None:
        self.sent: list[Tuple[str, str, Dict[str, Any]]] = []

    async def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        self.sent.append((user_id, event_type, payload))
        logger.info("notification.logged", extra={"user_id": user_id, "event": event_type, **payload})


class EmailNotifier:
    """SMTP sender (Gmail / generic SMTP); recipients resolved via the directory."""

    def __init__(
        self,
        directory: UserDirectory,
        *,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_pass: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: str = "Clinic",
    ) -> None:
        self.directory = directory
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_pass = smtp_pass
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    async def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        user = await self.directory.get_user(user_id)
        if user is None or not user.email:
            logger.info("notification.skipped", extra={"user_id": user_id, "event": event_type, "why": "no_email"})
            return
        subject = SUBJECTS.get(event_type, "Appointment update")
        lines = [f"{key.replace('_', ' ').capitalize()}: {value}" for key, value in payload.items()]
        body = f"Hello {user.name or ''},\n\n" + "\n".join(lines) + "\n\nBest regards,\n" + self.from_name
        await asyncio.to_thread(self.send, str(user.email), subject, body)

    def send(self, to_email: str, subject: str, body: str) -> Optional[str]:
        if not self.smtp_user or not self.smtp_pass:
            logger.info("email_send skipped (missing SMTP credentials)", extra={"to": to_email})
            return None
        msg = EmailMessage()
        msg["From"] = f"{self.from_name} <{self.from_email}>" if self.from_email else self.from_name
        msg["To"] = to_email
        msg["Subject"] = subject
        message_id = make_msgid()
        msg["Message-ID"] = message_id
        msg.set_content(body)
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as s:
            s.ehlo(); s.starttls(); s.ehlo(); s.login(self.smtp_user, self.smtp_pass); s.send_message(msg)
        logger.info("email_send ok", extra={"to": to_email, "message_id": message_id})
        return message_id
