from __future__ import annotations

from typing import Dict, Iterable, Optional, Protocol

from motor.motor_asyncio import AsyncIOMotorDatabase

from models.directory import DoctorProfile, UserProfile, UserRole
from repositories.base import BaseRepository


USERS = "users"


class UserDirectory(Protocol):
    async def get_user(self, user_id: str) -> Optional[UserProfile]: ...

    async def get_doctor(self, doctor_id: str) -> Optional[DoctorProfile]: ...


class MongoUserDirectory:
    """Reads users and doctor profiles from the shared ``users`` collection."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.repo = BaseRepository(db)

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        doc = await self.repo.find_one(USERS, {"_id": user_id})
        if not doc:
            return None
        if doc.get("role") == UserRole.doctor.value:
            return DoctorProfile.model_validate(doc)
        return UserProfile.model_validate(doc)

    async def get_doctor(self, doctor_id: str) -> Optional[DoctorProfile]:
        doc = await self.repo.find_one(USERS, {"_id": doctor_id, "role": UserRole.doctor.value})
        return DoctorProfile.model_validate(doc) if doc else None


class InMemoryUserDirectory:
    def __init__(self, users: Iterable[UserProfile] = ()) -> None:
        self._users: Dict[str, UserProfile] = {}
        for user in users:
            self.add(user)

    def add(self, user: UserProfile) -> UserProfile:
        self._users[user.id] = user
        return user

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self._users.get(user_id)

    async def get_doctor(self, doctor_id: str) -> Optional[DoctorProfile]:
        user = self._users.get(doctor_id)
        if isinstance(user, DoctorProfile) and user.role == UserRole.doctor:
            return user
        return None
