from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from clinic_rooms.repositories.base_repository import get_collection
from clinic_rooms.utils import now_utc, to_object_id


class UserRepository:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._col = get_collection(db, "users")

    async def get_by_id(self, user_id: Any) -> Optional[Dict[str, Any]]:
        oid = to_object_id(user_id)
        if oid is None:
            return None
        return await self._col.find_one({"_id": oid})

    async def get_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self._col.find_one({"email": email.strip().lower()})

    async def create(self, payload: Dict[str, Any]) -> ObjectId:
        now = now_utc()
        doc: Dict[str, Any] = {
            "email": payload["email"].strip().lower(),
            "first_name": payload.get("first_name", "").strip(),
            "last_name": payload.get("last_name", "").strip(),
            "phone_number": payload.get("phone_number"),
            "password_hash": payload["password_hash"],
            "role": payload.get("role", "user"),
            "is_verified": False,
            "verified_at": None,
            "preferences": {"email_notifications": True},
            "created_at": now,
            "updated_at": now,
        }
        res = await self._col.insert_one(doc)
        return res.inserted_id

    async def mark_verified_once(self, user_id: Any, *, now: Optional[datetime] = None) -> bool:
        """Flip is_verified to true. Returns True only for the call that flipped it."""

        oid = to_object_id(user_id)
        if oid is None:
            return False
        now = now or now_utc()
        res = await self._col.update_one(
            {"_id": oid, "is_verified": {"$ne": True}},
            {"$set": {"is_verified": True, "verified_at": now, "updated_at": now}},
        )
        return res.modified_count == 1
