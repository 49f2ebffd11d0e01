from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from clinic_rooms.domain.statuses import ACTIVE_BOOKING_STATUSES, BookingStatus
from clinic_rooms.repositories.base_repository import get_collection
from clinic_rooms.utils import now_utc, to_object_id, to_object_ids


class BookingRepository:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db
        self._col = get_collection(db, "bookings")

    async def insert_pending(self, doc: Dict[str, Any]) -> ObjectId:
        now = now_utc()
        doc = dict(doc)
        doc.setdefault("status", BookingStatus.PENDING.value)
        doc.setdefault("payment_status", "pending")
        doc.setdefault("payment_details", {"status": "pending", "created_at": now})
        doc.setdefault("created_at", now)
        doc.setdefault("updated_at", now)
        res = await self._col.insert_one(doc)
        return res.inserted_id

    async def get_by_id(self, booking_id: Any) -> Optional[Dict[str, Any]]:
        oid = to_object_id(booking_id)
        if oid is None:
            return None
        return await self._col.find_one({"_id": oid})

    async def find_by_ids_or_payment_intent(
        self,
        booking_ids: Iterable[Any],
        payment_intent_id: Optional[str],
    ) -> List[Dict[str, Any]]:
        """Bookings named in event metadata plus any linked to the intent id."""

        clauses: List[Dict[str, Any]] = []
        oids = to_object_ids(booking_ids)
        if oids:
            clauses.append({"_id": {"$in": oids}})
        if payment_intent_id:
            clauses.append({"payment_intent_id": payment_intent_id})
        if not clauses:
            return []
        cursor = self._col.find({"$or": clauses}).sort("_id", 1)
        return await cursor.to_list(length=None)

    async def find_active_on_dates(self, *, room_ids: Sequence[str], dates: Sequence[str]) -> List[Dict[str, Any]]:
        flt = {
            "status": {"$in": sorted(ACTIVE_BOOKING_STATUSES)},
            "rooms": {"$elemMatch": {"room_id": {"$in": list(room_ids)}, "dates.date": {"$in": list(dates)}}},
        }
        return await self._col.find(flt, {"rooms": 1, "status": 1}).to_list(length=None)

    async def find_active_in_range(
        self,
        *,
        start: str,
        end: str,
        room_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        room_match: Dict[str, Any] = {"dates": {"$elemMatch": {"date": {"$gte": start, "$lte": end}}}}
        if room_ids:
            room_match["room_id"] = {"$in": list(room_ids)}
        flt = {
            "status": {"$in": sorted(ACTIVE_BOOKING_STATUSES)},
            "rooms": {"$elemMatch": room_match},
        }
        return await self._col.find(flt, {"rooms": 1, "status": 1}).to_list(length=None)

    async def list_for_user(self, user_id: str, *, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        flt: Dict[str, Any] = {"user_id": user_id}
        if status:
            flt["status"] = status
        cursor = self._col.find(flt).sort("created_at", -1).limit(limit)
        return await cursor.to_list(limit)

    async def find_pending_with_payment_intent(self, *, older_than: Optional[datetime] = None, limit: int = 100) -> List[Dict[str, Any]]:
        flt: Dict[str, Any] = {
            "status": BookingStatus.PENDING.value,
            "payment_intent_id": {"$exists": True, "$ne": None},
        }
        if older_than is not None:
            flt["created_at"] = {"$lte": older_than}
        cursor = self._col.find(flt, {"payment_intent_id": 1}).sort("created_at", 1).limit(limit)
        return await cursor.to_list(limit)

    async def attach_payment_intent(self, booking_id: ObjectId, payment_intent_id: str) -> bool:
        """Link an intent to a booking unless one is already linked."""

        res = await self._col.update_one(
            {
                "_id": booking_id,
                "$or": [{"payment_intent_id": {"$exists": False}}, {"payment_intent_id": None}],
            },
            {
                "$set": {
                    "payment_intent_id": payment_intent_id,
                    "payment_details.payment_intent_id": payment_intent_id,
                    "updated_at": now_utc(),
                }
            },
        )
        return res.modified_count == 1

    async def transition_many(
        self,
        booking_ids: Sequence[ObjectId],
        *,
        from_statuses: Iterable[str],
        target_status: str,
        extra_set: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Move bookings still in `from_statuses` to `target_status`.

        A single conditional update_many. Each call stamps its own
        transition id, so the documents carrying it afterwards are exactly
        the ones this call moved; concurrent or repeated calls move nothing
        twice.
        """

        if not booking_ids:
            return []
        now = now or now_utc()
        transition_id = uuid.uuid4().hex
        update: Dict[str, Any] = {
            "status": target_status,
            "updated_at": now,
            "payment_details.transition_id": transition_id,
        }
        if extra_set:
            update.update(extra_set)

        res = await self._col.update_many(
            {"_id": {"$in": list(booking_ids)}, "status": {"$in": sorted(from_statuses)}},
            {"$set": update},
        )
        if res.modified_count == 0:
            return []
        cursor = self._col.find({"_id": {"$in": list(booking_ids)}, "payment_details.transition_id": transition_id})
        return await cursor.to_list(length=None)

    async def record_payment_attempt_failure(
        self,
        booking_ids: Sequence[ObjectId],
        error: Dict[str, Any],
        *,
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Store a declined attempt on bookings that are still pending."""

        if not booking_ids:
            return 0
        now = now or now_utc()
        res = await self._col.update_many(
            {"_id": {"$in": list(booking_ids)}, "status": BookingStatus.PENDING.value},
            {
                "$set": {
                    "payment_details.last_error": error,
                    "payment_details.last_error_at": now,
                    "payment_details.last_error_event_id": event_id,
                    "updated_at": now,
                }
            },
        )
        return res.modified_count
