from __future__ import annotations

"""Storage-level guard against double booking.

Each active booking owns one `slot_claims` document per half-day it
occupies. The unique index on (room_id, date, half) is what actually keeps
two checkouts from holding the same slot: morning and evening on the same
room/date use different halves and coexist, a full day takes both.
"""

import logging
from typing import Any, Dict, Iterable, List, Sequence

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import BulkWriteError, DuplicateKeyError

from clinic_rooms.domain.selections import RoomSelection
from clinic_rooms.domain.time_slots import halves
from clinic_rooms.errors import BookingConflictError
from clinic_rooms.repositories.base_repository import get_collection
from clinic_rooms.utils import now_utc

logger = logging.getLogger("slot_claims")


def build_claims(booking_id: ObjectId, selections: Sequence[RoomSelection]) -> List[Dict[str, Any]]:
    now = now_utc()
    claims: List[Dict[str, Any]] = []
    for sel in selections:
        for d in sel.dates:
            for half in sorted(h.value for h in halves(sel.time_slot)):
                claims.append(
                    {
                        "room_id": sel.room_id,
                        "date": d,
                        "half": half,
                        "time_slot": sel.time_slot.value,
                        "booking_id": booking_id,
                        "created_at": now,
                    }
                )
    return claims


def _conflict_from_key(key_value: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "room_id": key_value.get("room_id"),
        "date": key_value.get("date"),
        "half": key_value.get("half"),
    }


class SlotClaimRepository:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._col = get_collection(db, "slot_claims")

    async def reserve(self, booking_id: ObjectId, selections: Sequence[RoomSelection]) -> int:
        """Claim every half-day of `selections` for `booking_id`, all or nothing.

        Raises BookingConflictError when any half is already claimed; claims
        taken by this call before the collision are released first.
        """

        claims = build_claims(booking_id, selections)
        if not claims:
            return 0
        try:
            await self._col.insert_many(claims, ordered=True)
        except (BulkWriteError, DuplicateKeyError) as exc:
            await self.release([booking_id])
            conflicts: List[Dict[str, Any]] = []
            write_errors = exc.details.get("writeErrors", []) if isinstance(exc, BulkWriteError) else []
            for err in write_errors:
                if err.get("code") != 11000:
                    logger.error("Slot claim insert failed for booking %s: %s", booking_id, err)
                    raise
                conflicts.append(_conflict_from_key(err.get("keyValue") or err.get("op") or {}))
            logger.info("Slot claim collision for booking %s: %s", booking_id, conflicts)
            raise BookingConflictError(conflicts)
        return len(claims)

    async def release(self, booking_ids: Iterable[ObjectId]) -> int:
        ids = list(booking_ids)
        if not ids:
            return 0
        res = await self._col.delete_many({"booking_id": {"$in": ids}})
        return res.deleted_count

    async def claims_for(self, booking_id: ObjectId) -> List[Dict[str, Any]]:
        return await self._col.find({"booking_id": booking_id}).to_list(length=None)
