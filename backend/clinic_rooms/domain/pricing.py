from __future__ import annotations

"""Booking price computation.

All amounts are integer cents. Daily bookings pay per date; monthly bookings
pay a flat rate per room for the whole block of dates. First-time (not yet
verified) users also pay a refundable security deposit per room, which is
not taxed.
"""

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Sequence

from clinic_rooms.domain.selections import RoomSelection
from clinic_rooms.domain.statuses import BookingType
from clinic_rooms.domain.time_slots import TimeSlot

DAILY_RATES_CENTS: Dict[TimeSlot, int] = {
    TimeSlot.FULL: 300_00,
    TimeSlot.MORNING: 160_00,
    TimeSlot.EVENING: 160_00,
}

MONTHLY_RATES_CENTS: Dict[TimeSlot, int] = {
    TimeSlot.FULL: 2000_00,
    TimeSlot.MORNING: 1200_00,
    TimeSlot.EVENING: 1200_00,
}

SECURITY_DEPOSIT_CENTS = 250_00  # per room
TAX_RATE = Decimal("0.035")


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal_cents: int
    tax_cents: int
    security_deposit_cents: int
    total_cents: int
    currency: str

    @property
    def total_amount(self) -> float:
        return self.total_cents / 100

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def tax_for(subtotal_cents: int) -> int:
    return int((Decimal(subtotal_cents) * TAX_RATE).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_price(
    selections: Sequence[RoomSelection],
    booking_type: BookingType,
    *,
    is_verified: bool,
    currency: str = "usd",
) -> PriceBreakdown:
    booking_type = BookingType(booking_type)
    subtotal = 0
    for sel in selections:
        if booking_type is BookingType.MONTHLY:
            subtotal += MONTHLY_RATES_CENTS[sel.time_slot]
        else:
            subtotal += DAILY_RATES_CENTS[sel.time_slot] * len(sel.dates)

    tax = tax_for(subtotal)
    deposit = 0 if is_verified else SECURITY_DEPOSIT_CENTS * len(selections)
    return PriceBreakdown(
        subtotal_cents=subtotal,
        tax_cents=tax,
        security_deposit_cents=deposit,
        total_cents=subtotal + tax + deposit,
        currency=currency,
    )
