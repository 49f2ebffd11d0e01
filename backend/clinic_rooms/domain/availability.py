from __future__ import annotations

"""Per-date, per-room occupancy derived from live booking documents.

Nothing here is cached: every call recomputes from the bookings it is given.
Absence of a (date, room) key means the room is free all day.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

from clinic_rooms.domain.statuses import ACTIVE_BOOKING_STATUSES
from clinic_rooms.domain.time_slots import TimeSlot, is_fully_booked, parse_slot
from clinic_rooms.repositories.booking_repository import BookingRepository

AvailabilityKey = Tuple[str, str]  # (date, room_id)


@dataclass(frozen=True)
class AvailabilityStatus:
    type: str  # none | partial | booked
    time_slots: FrozenSet[TimeSlot] = field(default_factory=frozenset)

    def to_dict(self, date_str: str, room_id: str) -> Dict[str, Any]:
        return {
            "date": date_str,
            "room_id": room_id,
            "type": self.type,
            "time_slots": sorted(s.value for s in self.time_slots),
        }


def classify(slots: Iterable[TimeSlot]) -> str:
    slot_set = {parse_slot(s) for s in slots}
    if not slot_set:
        return "none"
    if TimeSlot.FULL in slot_set or is_fully_booked(slot_set):
        return "booked"
    return "partial"


def month_bounds(year: int, month: int) -> Tuple[str, str]:
    """Return the first and last day of a month as ISO strings."""
    if not 1 <= int(month) <= 12:
        raise ValueError(f"month must be in 1..12, got {month}")
    last_day = calendar.monthrange(int(year), int(month))[1]
    return date(int(year), int(month), 1).isoformat(), date(int(year), int(month), last_day).isoformat()


def _date_value(entry: Any) -> Optional[str]:
    if isinstance(entry, dict):
        return entry.get("date")
    if isinstance(entry, str):
        return entry
    return None


def iter_claims(booking: Dict[str, Any]) -> Iterator[Tuple[str, str, TimeSlot]]:
    """Yield (room_id, date, slot) for every date a booking document claims."""
    for room in booking.get("rooms") or []:
        room_id = str(room.get("room_id"))
        try:
            slot = parse_slot(room.get("time_slot"))
        except ValueError:
            continue
        for entry in room.get("dates") or []:
            d = _date_value(entry)
            if d:
                yield room_id, d, slot


def derive_availability(
    bookings: Iterable[Dict[str, Any]],
    *,
    room_id: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> Dict[AvailabilityKey, AvailabilityStatus]:
    """Accumulate claimed slots per (date, room) and classify them.

    Only pending/confirmed bookings occupy. `start`/`end` are inclusive ISO
    dates; `room_id` restricts the view to one room.
    """

    claimed: Dict[AvailabilityKey, set] = {}
    for booking in bookings:
        if booking.get("status") not in ACTIVE_BOOKING_STATUSES:
            continue
        for rid, d, slot in iter_claims(booking):
            if room_id is not None and rid != str(room_id):
                continue
            if start is not None and d < start:
                continue
            if end is not None and d > end:
                continue
            claimed.setdefault((d, rid), set()).add(slot)

    out: Dict[AvailabilityKey, AvailabilityStatus] = {}
    for key, slots in claimed.items():
        out[key] = AvailabilityStatus(type=classify(slots), time_slots=frozenset(slots))
    return out


def availability_rows(index: Dict[AvailabilityKey, AvailabilityStatus]) -> List[Dict[str, Any]]:
    """Flatten an availability index into rows sorted by date, then room."""
    return [status.to_dict(d, rid) for (d, rid), status in sorted(index.items())]


async def get_month_availability(db, *, year: int, month: int, room_id: Optional[str] = None) -> Dict[AvailabilityKey, AvailabilityStatus]:
    start, end = month_bounds(year, month)
    bookings = await BookingRepository(db).find_active_in_range(start=start, end=end, room_ids=[room_id] if room_id else None)
    return derive_availability(bookings, room_id=room_id, start=start, end=end)
