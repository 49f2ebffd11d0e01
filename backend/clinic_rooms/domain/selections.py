from __future__ import annotations

"""Validated room selections: the (room, slot, dates) triples a user asks for."""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Tuple

from clinic_rooms.domain.time_slots import TimeSlot, parse_slot, slot_times, slots_conflict
from clinic_rooms.errors import BookingValidationError
from clinic_rooms.utils import parse_iso_date


@dataclass(frozen=True)
class RoomSelection:
    room_id: str
    time_slot: TimeSlot
    dates: Tuple[str, ...]

    def date_entries(self) -> List[Dict[str, str]]:
        start, end = slot_times(self.time_slot)
        return [{"date": d, "start_time": start, "end_time": end} for d in self.dates]


def _field(raw: Any, name: str) -> Any:
    if isinstance(raw, dict):
        return raw.get(name)
    return getattr(raw, name, None)


def normalize_selection(raw: Any, index: int = 0) -> RoomSelection:
    room_id = _field(raw, "room_id")
    if room_id is None or not str(room_id).strip():
        raise BookingValidationError("Room id is required", {"index": index, "field": "room_id"})

    try:
        slot = parse_slot(_field(raw, "time_slot"))
    except ValueError:
        raise BookingValidationError(
            "Unknown time slot",
            {"index": index, "field": "time_slot", "allowed": [s.value for s in TimeSlot]},
        )

    raw_dates = _field(raw, "dates") or []
    if not raw_dates:
        raise BookingValidationError("At least one date is required per room", {"index": index, "room_id": str(room_id)})

    dates: set[str] = set()
    for value in raw_dates:
        try:
            dates.add(parse_iso_date(value).isoformat())
        except (TypeError, ValueError):
            raise BookingValidationError("Invalid date; expected YYYY-MM-DD", {"index": index, "date": value})

    return RoomSelection(room_id=str(room_id).strip(), time_slot=slot, dates=tuple(sorted(dates)))


def normalize_selections(raw_rooms: Iterable[Any]) -> List[RoomSelection]:
    """Validate raw selections and reject requests that overlap themselves."""

    selections = [normalize_selection(raw, i) for i, raw in enumerate(raw_rooms or [])]
    if not selections:
        raise BookingValidationError("Please select at least one room to book")

    seen: Dict[Tuple[str, str], List[TimeSlot]] = {}
    for sel in selections:
        for d in sel.dates:
            for other in seen.get((sel.room_id, d), []):
                if slots_conflict(sel.time_slot, other):
                    raise BookingValidationError(
                        "The same room and date is selected twice with overlapping slots",
                        {"room_id": sel.room_id, "date": d, "time_slots": [other.value, sel.time_slot.value]},
                    )
            seen.setdefault((sel.room_id, d), []).append(sel.time_slot)
    return selections


def selection_to_doc(sel: RoomSelection) -> Dict[str, Any]:
    return {"room_id": sel.room_id, "time_slot": sel.time_slot.value, "dates": list(sel.dates)}
