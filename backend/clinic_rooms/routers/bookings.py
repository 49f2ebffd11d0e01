from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from clinic_rooms.auth import get_current_user, require_roles
from clinic_rooms.db import get_db
from clinic_rooms.domain.conflicts import check_conflicts
from clinic_rooms.domain.selections import selection_to_doc
from clinic_rooms.errors import AppError
from clinic_rooms.repositories.booking_repository import BookingRepository
from clinic_rooms.repositories.draft_repository import DraftRepository
from clinic_rooms.schemas import CancelRequest, SelectionRequest
from clinic_rooms.services import booking_checkout
from clinic_rooms.services.booking_lifecycle import BookingLifecycleService
from clinic_rooms.utils import serialize_doc, to_object_id

router = APIRouter(prefix="/api/bookings", tags=["bookings"])


def _raw_rooms(payload: SelectionRequest) -> list[Dict[str, Any]]:
    return [r.model_dump() for r in payload.rooms]


@router.post("/check-conflicts")
async def check_booking_conflicts(payload: SelectionRequest, db=Depends(get_db), user=Depends(get_current_user)):
    selections = await booking_checkout.validate_request(db, _raw_rooms(payload))
    result = await check_conflicts(db, selections)
    return result.to_dict()


@router.post("/quote")
async def quote_booking(payload: SelectionRequest, db=Depends(get_db), user=Depends(get_current_user)):
    price = await booking_checkout.quote(db, user=user, rooms=_raw_rooms(payload), booking_type=payload.booking_type)
    return price.to_dict()


@router.post("/drafts", status_code=201)
async def create_draft(payload: SelectionRequest, db=Depends(get_db), user=Depends(get_current_user)):
    selections = await booking_checkout.validate_request(db, _raw_rooms(payload))
    btype = booking_checkout.parse_booking_type(payload.booking_type)
    drafts = DraftRepository(db)
    draft_id = await drafts.create(user["id"], [selection_to_doc(s) for s in selections], btype.value)
    return serialize_doc(await drafts.get_for_user(draft_id, user["id"]))


@router.get("/drafts/{draft_id}")
async def get_draft(draft_id: str, db=Depends(get_db), user=Depends(get_current_user)):
    draft = await DraftRepository(db).get_for_user(draft_id, user["id"])
    if not draft:
        raise AppError(404, "draft_not_found", "Booking draft not found or expired")
    return serialize_doc(draft)


@router.put("/drafts/{draft_id}")
async def update_draft(draft_id: str, payload: SelectionRequest, db=Depends(get_db), user=Depends(get_current_user)):
    drafts = DraftRepository(db)
    existing = await drafts.get_for_user(draft_id, user["id"])
    if not existing:
        raise AppError(404, "draft_not_found", "Booking draft not found or expired")

    selections = await booking_checkout.validate_request(db, _raw_rooms(payload))
    btype = booking_checkout.parse_booking_type(payload.booking_type)
    updated = await drafts.replace_rooms(existing["_id"], user["id"], [selection_to_doc(s) for s in selections], btype.value)
    return serialize_doc(updated)


@router.get("/mine")
async def my_bookings(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db=Depends(get_db),
    user=Depends(get_current_user),
):
    docs = await BookingRepository(db).list_for_user(user["id"], status=status, limit=limit)
    return serialize_doc(docs)


@router.get("/{booking_id}")
async def get_booking(booking_id: str, db=Depends(get_db), user=Depends(get_current_user)):
    booking = await BookingRepository(db).get_by_id(booking_id)
    # Other users' bookings look exactly like missing ones.
    if not booking or (booking.get("user_id") != user["id"] and user.get("role") != "admin"):
        raise AppError(404, "booking_not_found", "Booking not found")
    return serialize_doc(booking)


@router.post("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str,
    payload: CancelRequest,
    db=Depends(get_db),
    user=Depends(require_roles(["admin"])),
):
    if to_object_id(booking_id) is None:
        raise AppError(404, "booking_not_found", "Booking not found")
    booking = await BookingLifecycleService(db).cancel_booking(booking_id, actor=user, reason=payload.reason)
    return serialize_doc(booking)
