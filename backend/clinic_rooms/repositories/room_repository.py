from __future__ import annotations

from typing import Any, Dict, Iterable, List

from motor.motor_asyncio import AsyncIOMotorDatabase

from clinic_rooms.repositories.base_repository import get_collection
from clinic_rooms.utils import now_utc

DEFAULT_ROOMS: List[Dict[str, Any]] = [
    {
        "_id": str(n),
        "name": f"Room {n}",
        "description": desc,
        "capacity": 3,
        "amenities": amenities,
        "is_available": True,
    }
    for n, desc, amenities in [
        (1, "Exam room", ["Exam table", "Sink", "Wi-Fi"]),
        (2, "Exam room", ["Exam table", "Sink", "Wi-Fi"]),
        (3, "Consultation room", ["Desk", "Two chairs", "Wi-Fi"]),
        (4, "Procedure room", ["Procedure chair", "Surgical light", "Sink"]),
        (5, "Office", ["Desk", "Printer", "Wi-Fi"]),
    ]
]


class RoomRepository:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._col = get_collection(db, "rooms")

    async def list_available(self) -> List[Dict[str, Any]]:
        return await self._col.find({"is_available": True}).sort("_id", 1).to_list(length=None)

    async def get_many(self, room_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = sorted({str(r) for r in room_ids})
        docs = await self._col.find({"_id": {"$in": ids}}).to_list(length=None)
        return {str(d["_id"]): d for d in docs}

    async def ensure_default_rooms(self) -> int:
        """Insert the default rooms when the catalog is empty."""

        if await self._col.count_documents({}, limit=1):
            return 0
        now = now_utc()
        await self._col.insert_many([{**room, "created_at": now, "updated_at": now} for room in DEFAULT_ROOMS])
        return len(DEFAULT_ROOMS)
