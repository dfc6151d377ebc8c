from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import requests
from pydantic import BaseModel, Field

from core.errors import PaymentServiceError
from models.appointment import PaymentMethod
from models.base import new_object_id, utcnow


logger = logging.getLogger(__name__)


class PaymentRecord(BaseModel):
    appointment_id: str
    amount: Decimal
    method: PaymentMethod
    transaction_id: str
    recorded_at: datetime = Field(default_factory=utcnow)


class RefundRecord(BaseModel):
    appointment_id: str
    amount: Decimal
    reason: str
    refund_id: str
    processed_at: datetime = Field(default_factory=utcnow)


class PaymentGateway(Protocol):
    async def charge_or_record(self, appointment_id: str, amount: Decimal, method: PaymentMethod) -> PaymentRecord: ...

    async def refund(self, appointment_id: str, amount: Decimal, reason: str) -> RefundRecord: ...


class HttpPaymentGateway:
    """JSON-over-HTTP client for the clinic payment service.

    The appointment id doubles as the idempotency key, so a retried charge or
    refund for the same appointment is never applied twice by the service.
    """

    def __init__(self, base_url: str, *, api_key: Optional[str] = None, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self, idempotency_key: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Idempotency-Key": idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, path: str, payload: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.post(url, json=payload, headers=self._headers(idempotency_key), timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as exc:
            logger.warning("payments.request_failed", extra={"url": url, "error": str(exc)})
            raise PaymentServiceError(
                "Payment service request failed; retry later",
                details={"path": path},
            ) from exc
        except ValueError as exc:
            raise PaymentServiceError("Payment service returned an invalid response", details={"path": path}) from exc

    async def charge_or_record(self, appointment_id: str, amount: Decimal, method: PaymentMethod) -> PaymentRecord:
        data = await asyncio.to_thread(
            self._post,
            "/payments",
            {"appointment_id": appointment_id, "amount": str(amount), "method": method.value},
            appointment_id,
        )
        return PaymentRecord(
            appointment_id=appointment_id,
            amount=Decimal(str(data.get("amount", amount))),
            method=method,
            transaction_id=str(data.get("transaction_id") or data.get("id")),
        )

    async def refund(self, appointment_id: str, amount: Decimal, reason: str) -> RefundRecord:
        data = await asyncio.to_thread(
            self._post,
            "/refunds",
            {"appointment_id": appointment_id, "amount": str(amount), "reason": reason},
            f"refund:{appointment_id}",
        )
        return RefundRecord(
            appointment_id=appointment_id,
            amount=Decimal(str(data.get("amount", amount))),
            reason=reason,
            refund_id=str(data.get("refund_id") or data.get("id")),
        )


class RecordingPaymentGateway:
    """In-process payment service; records every charge and refund it accepts.

    ``fail_refunds`` makes refunds raise ``PaymentServiceError`` until cleared.
    """

    def __init__(self) -> None:
        self.charges: Dict[str, PaymentRecord] = {}
        self.refunds: List[RefundRecord] = []
        self.fail_refunds = False

    async def charge_or_record(self, appointment_id: str, amount: Decimal, method: PaymentMethod) -> PaymentRecord:
        existing = self.charges.get(appointment_id)
        if existing is not None:
            return existing
        record = PaymentRecord(
            appointment_id=appointment_id,
            amount=amount,
            method=method,
            transaction_id=f"txn_{new_object_id()}",
        )
        self.charges[appointment_id] = record
        return record

    async def refund(self, appointment_id: str, amount: Decimal, reason: str) -> RefundRecord:
        if self.fail_refunds:
            raise PaymentServiceError("Payment service unavailable")
        record = RefundRecord(
            appointment_id=appointment_id,
            amount=amount,
            reason=reason,
            refund_id=f"rf_{new_object_id()}",
        )
        self.refunds.append(record)
        return record
