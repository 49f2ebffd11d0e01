from __future__ import annotations

"""Conflict detection for a proposed multi-room, multi-date booking.

This is the friendly pre-check that lets us answer with the exact dates that
clash. It reads, then the caller writes, so on its own it cannot stop two
concurrent checkouts for the same slot; the unique index on `slot_claims`
does that.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from clinic_rooms.domain.availability import iter_claims
from clinic_rooms.domain.selections import RoomSelection
from clinic_rooms.domain.statuses import ACTIVE_BOOKING_STATUSES
from clinic_rooms.domain.time_slots import TimeSlot, slots_conflict
from clinic_rooms.repositories.booking_repository import BookingRepository


@dataclass(frozen=True)
class SlotConflict:
    room_id: str
    date: str
    time_slot: str
    conflicting_time_slot: str
    conflicting_status: str
    booking_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConflictCheckResult:
    conflicts: List[SlotConflict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.conflicts

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "conflicts": [c.to_dict() for c in self.conflicts]}


def find_conflicts(selections: Sequence[RoomSelection], bookings: Iterable[Dict[str, Any]]) -> List[SlotConflict]:
    existing: Dict[Tuple[str, str], List[Tuple[TimeSlot, str, Optional[str]]]] = {}
    for booking in bookings:
        status = booking.get("status")
        if status not in ACTIVE_BOOKING_STATUSES:
            continue
        booking_id = str(booking["_id"]) if booking.get("_id") is not None else None
        for room_id, d, slot in iter_claims(booking):
            existing.setdefault((room_id, d), []).append((slot, status, booking_id))

    conflicts: List[SlotConflict] = []
    for sel in selections:
        for d in sel.dates:
            for slot, status, booking_id in existing.get((sel.room_id, d), []):
                if slots_conflict(sel.time_slot, slot):
                    conflicts.append(
                        SlotConflict(
                            room_id=sel.room_id,
                            date=d,
                            time_slot=sel.time_slot.value,
                            conflicting_time_slot=slot.value,
                            conflicting_status=status,
                            booking_id=booking_id,
                        )
                    )
    return conflicts


async def check_conflicts(db, selections: Sequence[RoomSelection]) -> ConflictCheckResult:
    """Load only the active bookings touching the requested rooms and dates."""
    if not selections:
        return ConflictCheckResult()

    room_ids = sorted({s.room_id for s in selections})
    dates = sorted({d for s in selections for d in s.dates})
    bookings = await BookingRepository(db).find_active_on_dates(room_ids=room_ids, dates=dates)
    return ConflictCheckResult(conflicts=find_conflicts(selections, bookings))
