from __future__ import annotations

"""Bookable time slots of a clinic day.

A day is split into two halves. `full` occupies both, `morning` and
`evening` one each. Two claims on the same room and date conflict exactly
when they share a half, which gives the compatibility table below.
"""

from enum import Enum
from typing import Dict, FrozenSet, Tuple


class TimeSlot(str, Enum):
    FULL = "full"
    MORNING = "morning"
    EVENING = "evening"


class DayHalf(str, Enum):
    MORNING = "morning"
    EVENING = "evening"


_HALVES: Dict[TimeSlot, FrozenSet[DayHalf]] = {
    TimeSlot.FULL: frozenset({DayHalf.MORNING, DayHalf.EVENING}),
    TimeSlot.MORNING: frozenset({DayHalf.MORNING}),
    TimeSlot.EVENING: frozenset({DayHalf.EVENING}),
}

# (requested, existing) -> conflicts?
_CONFLICTS: Dict[Tuple[TimeSlot, TimeSlot], bool] = {
    (TimeSlot.FULL, TimeSlot.FULL): True,
    (TimeSlot.FULL, TimeSlot.MORNING): True,
    (TimeSlot.FULL, TimeSlot.EVENING): True,
    (TimeSlot.MORNING, TimeSlot.FULL): True,
    (TimeSlot.MORNING, TimeSlot.MORNING): True,
    (TimeSlot.MORNING, TimeSlot.EVENING): False,
    (TimeSlot.EVENING, TimeSlot.FULL): True,
    (TimeSlot.EVENING, TimeSlot.MORNING): False,
    (TimeSlot.EVENING, TimeSlot.EVENING): True,
}

_TIMES: Dict[TimeSlot, Tuple[str, str]] = {
    TimeSlot.FULL: ("08:00", "19:00"),
    TimeSlot.MORNING: ("08:00", "13:00"),
    TimeSlot.EVENING: ("14:00", "19:00"),
}


def parse_slot(value: object) -> TimeSlot:
    """Coerce a raw value into a TimeSlot. Raises ValueError on unknown slots."""
    if isinstance(value, TimeSlot):
        return value
    return TimeSlot(str(value).strip().lower())


def halves(slot: TimeSlot) -> FrozenSet[DayHalf]:
    return _HALVES[parse_slot(slot)]


def slots_conflict(requested: TimeSlot, existing: TimeSlot) -> bool:
    return _CONFLICTS[(parse_slot(requested), parse_slot(existing))]


def slot_times(slot: TimeSlot) -> Tuple[str, str]:
    """Return (start_time, end_time) as HH:MM strings."""
    return _TIMES[parse_slot(slot)]


def is_fully_booked(slots) -> bool:
    """A room/date is booked when its claimed slots cover both halves."""
    covered: set[DayHalf] = set()
    for s in slots:
        covered |= halves(s)
    return covered == {DayHalf.MORNING, DayHalf.EVENING}
