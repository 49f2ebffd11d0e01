from __future__ import annotations

"""Booking lifecycle rules.

    pending --payment succeeded--> confirmed
    pending --payment failed-----> failed
    pending --admin cancel-------> cancelled
    confirmed --admin cancel-----> cancelled

Payment events can only move a booking out of `pending`. Once a booking is
confirmed, failed or cancelled, a late or replayed payment event is a no-op,
so a `failed` that arrives after a `succeeded` never downgrades a booking.
"""

from typing import Literal, Optional

from clinic_rooms.domain.statuses import BookingStatus, PaymentStatus

PaymentOutcomeKind = Literal["succeeded", "failed", "other"]


_ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING.value: {
        BookingStatus.CONFIRMED.value,
        BookingStatus.FAILED.value,
        BookingStatus.CANCELLED.value,
    },
    # administrative only
    BookingStatus.CONFIRMED.value: {BookingStatus.CANCELLED.value},
    BookingStatus.FAILED.value: set(),
    BookingStatus.CANCELLED.value: set(),
}

_PAYMENT_TARGETS = {
    "succeeded": BookingStatus.CONFIRMED.value,
    "failed": BookingStatus.FAILED.value,
}

_PAYMENT_STATUS_FOR_TARGET = {
    BookingStatus.CONFIRMED.value: PaymentStatus.SUCCEEDED.value,
    BookingStatus.FAILED.value: PaymentStatus.FAILED.value,
}

# Statuses a payment event is allowed to move a booking out of.
PAYMENT_SOURCE_STATUSES = frozenset({BookingStatus.PENDING.value})


class BookingStateTransitionError(ValueError):
    """Raised when an invalid booking state transition is requested."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid booking state transition: {current} -> {target}")
        self.current = current
        self.target = target


def validate_transition(current: str, target: str) -> None:
    """Validate that a transition from current -> target is allowed.

    Raises BookingStateTransitionError if not allowed.
    """

    allowed = _ALLOWED_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise BookingStateTransitionError(current=current, target=target)


def is_terminal_for_payments(status: Optional[str]) -> bool:
    return status not in PAYMENT_SOURCE_STATUSES


def target_for_outcome(outcome: str) -> Optional[str]:
    """Booking status a payment outcome drives towards, or None if not final."""
    return _PAYMENT_TARGETS.get(outcome)


def payment_status_for(target: str) -> str:
    return _PAYMENT_STATUS_FOR_TARGET[target]


def can_apply_payment_outcome(current: Optional[str], outcome: str) -> bool:
    target = target_for_outcome(outcome)
    if target is None or current not in PAYMENT_SOURCE_STATUSES:
        return False
    return target in _ALLOWED_TRANSITIONS.get(current, set())
