from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .base import MongoModel, new_object_id, utcnow


class RefundKind(str, Enum):
    # Refund owed by a committed cancellation
    cancellation = "cancellation"
    # Charge taken for an appointment whose payment write lost a race
    unrecorded_charge = "unrecorded-charge"


class RefundRequest(BaseModel):
    appointment_id: str
    amount: Decimal = Field(ge=0)
    reason: str
    computed_at: datetime
    kind: RefundKind = RefundKind.cancellation


class OutboxStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    abandoned = "abandoned"


class RefundOutboxEntry(MongoModel):
    id: str = Field(default_factory=new_object_id, alias="_id")
    request: RefundRequest
    status: OutboxStatus = OutboxStatus.pending
    attempts: int = 0
    last_error: Optional[str] = None
    next_attempt_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
