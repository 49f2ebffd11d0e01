from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from clinic_rooms.config import DRAFT_TTL_HOURS
from clinic_rooms.repositories.base_repository import get_collection
from clinic_rooms.utils import now_utc, to_object_id


class DraftRepository:
    """Server-held staging area for selections between checkout steps."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._col = get_collection(db, "booking_drafts")

    async def create(self, user_id: str, rooms: List[Dict[str, Any]], booking_type: str) -> ObjectId:
        now = now_utc()
        res = await self._col.insert_one(
            {
                "user_id": user_id,
                "rooms": rooms,
                "booking_type": booking_type,
                "created_at": now,
                "updated_at": now,
                "expires_at": now + timedelta(hours=DRAFT_TTL_HOURS),
            }
        )
        return res.inserted_id

    async def get_for_user(self, draft_id: Any, user_id: str) -> Optional[Dict[str, Any]]:
        oid = to_object_id(draft_id)
        if oid is None:
            return None
        doc = await self._col.find_one({"_id": oid, "user_id": user_id})
        if doc and doc.get("expires_at") and doc["expires_at"] <= now_utc():
            return None
        return doc

    async def replace_rooms(self, draft_id: ObjectId, user_id: str, rooms: List[Dict[str, Any]], booking_type: str) -> Optional[Dict[str, Any]]:
        now = now_utc()
        return await self._col.find_one_and_update(
            {"_id": draft_id, "user_id": user_id},
            {
                "$set": {
                    "rooms": rooms,
                    "booking_type": booking_type,
                    "updated_at": now,
                    "expires_at": now + timedelta(hours=DRAFT_TTL_HOURS),
                }
            },
            return_document=ReturnDocument.AFTER,
        )

    async def mark_promoted(self, draft_id: ObjectId, booking_id: ObjectId) -> None:
        await self._col.update_one(
            {"_id": draft_id},
            {"$set": {"promoted_booking_id": booking_id, "updated_at": now_utc()}},
        )
