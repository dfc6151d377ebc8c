from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from core.errors import StorageError
from models.base import utcnow


logger = logging.getLogger(__name__)


@asynccontextmanager
async def translate_storage_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except PyMongoError as exc:
        logger.warning("storage.error", extra={"operation": operation, "error": str(exc)})
        raise StorageError(f"Storage operation '{operation}' failed; retry the request") from exc


class BaseRepository:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db

    async def find_many(
        self,
        collection: str,
        query: Dict[str, Any] | None = None,
        *,
        sort: Optional[Sequence[tuple[str, int]]] = None,
        limit: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        async with translate_storage_errors(f"{collection}.find"):
            cursor = self.db[collection].find(query or {})
            if sort:
                cursor = cursor.sort(list(sort))
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return [doc async for doc in cursor]

    async def find_one(self, collection: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with translate_storage_errors(f"{collection}.find_one"):
            return await self.db[collection].find_one(query)

    async def insert_one(self, collection: str, doc: Dict[str, Any], *, with_timestamps: bool = True) -> Any:
        if with_timestamps:
            now = utcnow().isoformat()
            if doc.get("created_at") is None:
                doc["created_at"] = now
            if doc.get("updated_at") is None:
                doc["updated_at"] = now
        # DuplicateKeyError is left to callers; it carries meaning for them
        result = await self.db[collection].insert_one(doc)
        return result.inserted_id

    async def update_one(
        self,
        collection: str,
        filter_query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        touch_updated_at: bool = True,
    ) -> int:
        if touch_updated_at:
            update = {**update}
            set_part = update.get("$set", {})
            set_part = {**set_part, "updated_at": utcnow().isoformat()}
            update["$set"] = set_part
        async with translate_storage_errors(f"{collection}.update_one"):
            result = await self.db[collection].update_one(filter_query, update)
        return result.matched_count

    async def replace_one(self, collection: str, filter_query: Dict[str, Any], doc: Dict[str, Any]) -> int:
        async with translate_storage_errors(f"{collection}.replace_one"):
            result = await self.db[collection].replace_one(filter_query, doc)
        return result.matched_count
