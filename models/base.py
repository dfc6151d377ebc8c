from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from bson import ObjectId
from pydantic import BaseModel, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_object_id() -> str:
    return str(ObjectId())


class MongoModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_mongo(self) -> Dict[str, Any]:
        # Dates, times and decimals are stored as their ISO / string forms
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_mongo(cls, doc: Dict[str, Any]):
        return cls.model_validate(doc)
