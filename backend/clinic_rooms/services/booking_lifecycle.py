from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from bson import ObjectId

from clinic_rooms.domain.booking_state_machine import (
    PAYMENT_SOURCE_STATUSES,
    BookingStateTransitionError,
    payment_status_for,
    target_for_outcome,
    validate_transition,
)
from clinic_rooms.domain.statuses import RELEASED_BOOKING_STATUSES, BookingStatus
from clinic_rooms.errors import AppError
from clinic_rooms.repositories.booking_repository import BookingRepository
from clinic_rooms.repositories.slot_claim_repository import SlotClaimRepository
from clinic_rooms.utils import now_utc

logger = logging.getLogger("booking_lifecycle")


class BookingLifecycleService:
    """Applies lifecycle transitions as conditional updates.

    Every write is filtered on the status the transition starts from, so
    concurrent or replayed callers can never move a booking twice.
    """

    def __init__(self, db):
        self.db = db
        self._bookings = BookingRepository(db)
        self._claims = SlotClaimRepository(db)

    async def apply_payment_outcome(
        self,
        booking_ids: Sequence[ObjectId],
        outcome: str,
        *,
        payment_details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Move pending bookings to the status implied by a payment outcome.

        Returns the bookings this call moved (empty on replays).
        """

        target = target_for_outcome(outcome)
        if target is None:
            return []
        now = now or now_utc()

        extra: Dict[str, Any] = {
            "payment_status": payment_status_for(target),
            "payment_details.status": payment_status_for(target),
        }
        for key, value in (payment_details or {}).items():
            extra[f"payment_details.{key}"] = value
        if target == BookingStatus.CONFIRMED.value:
            extra["payment_details.confirmed_at"] = now
        else:
            extra["payment_details.failed_at"] = now

        moved = await self._bookings.transition_many(
            booking_ids,
            from_statuses=PAYMENT_SOURCE_STATUSES,
            target_status=target,
            extra_set=extra,
            now=now,
        )
        if moved:
            logger.info("Moved %s booking(s) to %s: %s", len(moved), target, [str(b["_id"]) for b in moved])
        return moved

    async def release_claims(self, bookings: Sequence[Dict[str, Any]]) -> int:
        """Drop slot claims of bookings that no longer occupy their slots."""

        released_ids = [
            b["_id"]
            for b in bookings
            if b.get("status") in RELEASED_BOOKING_STATUSES
        ]
        return await self._claims.release(released_ids)

    async def cancel_booking(self, booking_id: Any, *, actor: Dict[str, Any], reason: Optional[str] = None) -> Dict[str, Any]:
        """Administrative cancel. Idempotent for already-cancelled bookings."""

        booking = await self._bookings.get_by_id(booking_id)
        if not booking:
            raise AppError(404, "booking_not_found", "Booking not found")

        current = booking.get("status")
        if current == BookingStatus.CANCELLED.value:
            await self._claims.release([booking["_id"]])
            return booking

        try:
            validate_transition(current, BookingStatus.CANCELLED.value)
        except BookingStateTransitionError as exc:
            raise AppError(
                409,
                "invalid_state_transition",
                str(exc),
                {"status": current, "target": BookingStatus.CANCELLED.value},
            )

        now = now_utc()
        moved = await self._bookings.transition_many(
            [booking["_id"]],
            from_statuses=[current],
            target_status=BookingStatus.CANCELLED.value,
            extra_set={
                "cancellation": {
                    "cancelled_at": now,
                    "cancelled_by": actor.get("id"),
                    "reason": reason,
                    "previous_status": current,
                }
            },
            now=now,
        )
        if not moved:
            # Someone else moved it between our read and write; report the live state.
            latest = await self._bookings.get_by_id(booking["_id"])
            raise AppError(
                409,
                "booking_status_changed",
                "Booking status changed concurrently",
                {"status": (latest or {}).get("status")},
            )

        await self._claims.release([booking["_id"]])
        logger.info("Booking %s cancelled by %s (was %s)", booking["_id"], actor.get("id"), current)
        return moved[0]
