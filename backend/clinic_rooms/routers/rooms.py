from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from clinic_rooms.db import get_db
from clinic_rooms.domain.availability import availability_rows, get_month_availability
from clinic_rooms.errors import BookingValidationError
from clinic_rooms.repositories.room_repository import RoomRepository
from clinic_rooms.utils import serialize_doc

router = APIRouter(prefix="/api/rooms", tags=["rooms"])


@router.get("")
async def list_rooms(db=Depends(get_db)):
    return serialize_doc(await RoomRepository(db).list_available())


@router.get("/availability")
async def room_availability(
    year: int = Query(..., ge=1970, le=9999),
    month: int = Query(...),
    room_id: Optional[str] = Query(None),
    db=Depends(get_db),
):
    """Per-date occupancy for a month. Dates absent from the list are free."""
    try:
        index = await get_month_availability(db, year=year, month=month, room_id=room_id)
    except ValueError as exc:
        raise BookingValidationError(str(exc), {"year": year, "month": month})
    return availability_rows(index)
