from __future__ import annotations

import abc
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from models.base import utcnow
from models.refund import OutboxStatus, RefundOutboxEntry, RefundRequest
from repositories.base import BaseRepository, translate_storage_errors


REFUND_OUTBOX = "refund_outbox"


def _as_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)


class RefundOutbox(abc.ABC):
    """Refund instructions waiting for delivery to the payment service.

    An entry is written before the first delivery attempt, so a refund that
    was never confirmed as sent is always found again by the retry job.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    @abc.abstractmethod
    async def enqueue(
        self,
        request: RefundRequest,
        *,
        error: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> RefundOutboxEntry: ...

    @abc.abstractmethod
    async def due(self, now: datetime, limit: int = 50) -> List[RefundOutboxEntry]: ...

    @abc.abstractmethod
    async def get(self, entry_id: str) -> Optional[RefundOutboxEntry]: ...

    @abc.abstractmethod
    async def _update(self, entry_id: str, changes: Dict[str, Any]) -> None: ...

    def _new_entry(
        self, request: RefundRequest, error: Optional[str], next_attempt_at: Optional[datetime]
    ) -> RefundOutboxEntry:
        now = self._clock()
        return RefundOutboxEntry(
            request=request,
            last_error=error,
            next_attempt_at=next_attempt_at or now,
            created_at=now,
            updated_at=now,
        )

    async def mark_sent(self, entry_id: str, *, attempts: int) -> None:
        await self._update(entry_id, {"status": OutboxStatus.sent, "attempts": attempts, "last_error": None})

    async def mark_retry(self, entry_id: str, *, attempts: int, error: str, next_attempt_at: datetime) -> None:
        await self._update(
            entry_id,
            {"attempts": attempts, "last_error": error, "next_attempt_at": next_attempt_at},
        )

    async def mark_abandoned(self, entry_id: str, *, attempts: int, error: str) -> None:
        await self._update(entry_id, {"status": OutboxStatus.abandoned, "attempts": attempts, "last_error": error})

    async def ensure_indexes(self) -> None:
        return None


class MongoRefundOutbox(RefundOutbox):
    """Outbox in the ``refund_outbox`` collection.

    ``next_attempt_at`` is stored as a BSON date so the due query compares
    instants, not strings.
    """

    def __init__(self, db: AsyncIOMotorDatabase, *, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock=clock)
        self.repo = BaseRepository(db)

    async def ensure_indexes(self) -> None:
        async with translate_storage_errors("refund_outbox.create_index"):
            await self.repo.db[REFUND_OUTBOX].create_index([("status", ASCENDING), ("next_attempt_at", ASCENDING)])

    async def enqueue(
        self,
        request: RefundRequest,
        *,
        error: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> RefundOutboxEntry:
        entry = self._new_entry(request, error, next_attempt_at)
        doc = entry.to_mongo()
        doc["next_attempt_at"] = _as_utc(entry.next_attempt_at)
        async with translate_storage_errors("refund_outbox.insert"):
            await self.repo.insert_one(REFUND_OUTBOX, doc, with_timestamps=False)
        return entry

    async def due(self, now: datetime, limit: int = 50) -> List[RefundOutboxEntry]:
        docs = await self.repo.find_many(
            REFUND_OUTBOX,
            {"status": OutboxStatus.pending.value, "next_attempt_at": {"$lte": _as_utc(now)}},
            sort=[("next_attempt_at", ASCENDING)],
            limit=limit,
        )
        return [RefundOutboxEntry.from_mongo(d) for d in docs]

    async def get(self, entry_id: str) -> Optional[RefundOutboxEntry]:
        doc = await self.repo.find_one(REFUND_OUTBOX, {"_id": entry_id})
        return RefundOutboxEntry.from_mongo(doc) if doc else None

    async def _update(self, entry_id: str, changes: Dict[str, Any]) -> None:
        payload = {k: (v.value if isinstance(v, OutboxStatus) else v) for k, v in changes.items()}
        if isinstance(payload.get("next_attempt_at"), datetime):
            payload["next_attempt_at"] = _as_utc(payload["next_attempt_at"])
        await self.repo.update_one(REFUND_OUTBOX, {"_id": entry_id}, {"$set": payload})


class InMemoryRefundOutbox(RefundOutbox):
    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock=clock)
        self._entries: Dict[str, RefundOutboxEntry] = {}

    async def enqueue(
        self,
        request: RefundRequest,
        *,
        error: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> RefundOutboxEntry:
        entry = self._new_entry(request, error, next_attempt_at)
        self._entries[entry.id] = entry
        return entry.model_copy(deep=True)

    async def due(self, now: datetime, limit: int = 50) -> List[RefundOutboxEntry]:
        pending = [
            e
            for e in self._entries.values()
            if e.status == OutboxStatus.pending and e.next_attempt_at <= now
        ]
        pending.sort(key=lambda e: e.next_attempt_at)
        return [e.model_copy(deep=True) for e in pending[:limit]]

    async def get(self, entry_id: str) -> Optional[RefundOutboxEntry]:
        entry = self._entries.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def all(self) -> List[RefundOutboxEntry]:
        return [e.model_copy(deep=True) for e in self._entries.values()]

    async def _update(self, entry_id: str, changes: Dict[str, Any]) -> None:
        entry = self._entries.get(entry_id)
        if entry is None:
            return
        self._entries[entry_id] = entry.model_copy(update={**changes, "updated_at": self._clock()})
