from __future__ import annotations

from enum import Enum


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BookingType(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


# Bookings in these statuses hold their slots. A pending booking occupies too:
# whoever starts checkout first keeps the slot until the payment resolves.
ACTIVE_BOOKING_STATUSES = frozenset({BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value})

# Bookings in these statuses no longer hold slot claims.
RELEASED_BOOKING_STATUSES = frozenset({BookingStatus.FAILED.value, BookingStatus.CANCELLED.value})
