from __future__ import annotations

"""Booking creation: selections -> pending booking -> Stripe PaymentIntent.

This is the only path that creates bookings. Order matters:

1. validate and pre-check conflicts (no writes yet),
2. claim the slots under a pre-allocated booking id (unique index),
3. insert the pending booking,
4. create the intent and link it.

If step 3 fails the claims are released. If step 4 fails the booking is
marked failed and its claims are released, so the caller can retry with the
same selection.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from bson import ObjectId
from pymongo.errors import PyMongoError

from clinic_rooms.config import PAYMENT_CURRENCY
from clinic_rooms.domain.conflicts import check_conflicts
from clinic_rooms.domain.pricing import PriceBreakdown, compute_price
from clinic_rooms.domain.selections import RoomSelection, normalize_selections
from clinic_rooms.domain.statuses import BookingStatus, BookingType, PaymentStatus
from clinic_rooms.errors import AppError, BookingConflictError, BookingValidationError
from clinic_rooms.repositories.booking_repository import BookingRepository
from clinic_rooms.repositories.draft_repository import DraftRepository
from clinic_rooms.repositories.room_repository import RoomRepository
from clinic_rooms.repositories.slot_claim_repository import SlotClaimRepository
from clinic_rooms.services import stripe_adapter
from clinic_rooms.services.booking_lifecycle import BookingLifecycleService

logger = logging.getLogger("booking_checkout")


def parse_booking_type(raw: Any) -> BookingType:
    try:
        return BookingType(str(raw or BookingType.DAILY.value).lower())
    except ValueError:
        raise BookingValidationError(
            "Unknown booking type",
            {"booking_type": raw, "allowed": [t.value for t in BookingType]},
        )


async def validate_request(db, rooms: Sequence[Any]) -> List[RoomSelection]:
    """Normalize selections and make sure every room exists and is bookable."""

    selections = normalize_selections(rooms)
    known = await RoomRepository(db).get_many(s.room_id for s in selections)
    unknown = sorted({s.room_id for s in selections if s.room_id not in known})
    if unknown:
        raise BookingValidationError("Unknown room", {"room_ids": unknown})
    unavailable = sorted({s.room_id for s in selections if not known[s.room_id].get("is_available", True)})
    if unavailable:
        raise BookingValidationError("Room is not available for booking", {"room_ids": unavailable})
    return selections


async def quote(db, *, user: Dict[str, Any], rooms: Sequence[Any], booking_type: Any) -> PriceBreakdown:
    selections = await validate_request(db, rooms)
    return compute_price(
        selections,
        parse_booking_type(booking_type),
        is_verified=bool(user.get("is_verified")),
        currency=PAYMENT_CURRENCY,
    )


def _booking_doc(
    booking_id: ObjectId,
    *,
    user: Dict[str, Any],
    selections: Sequence[RoomSelection],
    room_names: Dict[str, str],
    booking_type: BookingType,
    price: PriceBreakdown,
    draft_id: Optional[ObjectId],
) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "_id": booking_id,
        "user_id": str(user["id"]),
        "rooms": [
            {
                "room_id": sel.room_id,
                "name": room_names.get(sel.room_id) or f"Room {sel.room_id}",
                "time_slot": sel.time_slot.value,
                "dates": sel.date_entries(),
            }
            for sel in selections
        ],
        "booking_type": booking_type.value,
        "price": price.to_dict(),
        "total_amount": price.total_amount,
        "status": BookingStatus.PENDING.value,
        "payment_status": PaymentStatus.PENDING.value,
    }
    if draft_id is not None:
        doc["draft_id"] = draft_id
    return doc


async def _abandon_booking(db, booking_id: ObjectId, exc: Exception) -> None:
    """Fail a booking whose intent could not be created or linked.

    The caller never received a client secret, so nothing can be paid against
    this booking; failing it frees the slots for the retry.
    """

    if isinstance(exc, AppError):
        error = {"code": exc.code, "message": exc.message}
    else:
        error = {"code": "storage_error", "message": str(exc)}
    lifecycle = BookingLifecycleService(db)
    moved = await lifecycle.apply_payment_outcome(
        [booking_id],
        "failed",
        payment_details={"error": error, "source": "checkout"},
    )
    await lifecycle.release_claims(moved)
    logger.warning("Abandoned booking %s after checkout error: %s", booking_id, error["code"])


async def create_booking_with_payment_intent(
    db,
    *,
    user: Dict[str, Any],
    rooms: Optional[Sequence[Any]] = None,
    booking_type: Any = None,
    draft_id: Optional[str] = None,
    expected_total_cents: Optional[int] = None,
) -> Dict[str, Any]:
    draft_oid: Optional[ObjectId] = None
    if draft_id:
        draft = await DraftRepository(db).get_for_user(draft_id, str(user["id"]))
        if not draft:
            raise AppError(404, "draft_not_found", "Booking draft not found or expired")
        draft_oid = draft["_id"]
        rooms = draft.get("rooms") or []
        booking_type = draft.get("booking_type")

    selections = await validate_request(db, rooms or [])
    btype = parse_booking_type(booking_type)

    pre_check = await check_conflicts(db, selections)
    if not pre_check.ok:
        logger.info("Booking conflicts for user %s: %s", user.get("id"), pre_check.to_dict()["conflicts"])
        raise BookingConflictError([c.to_dict() for c in pre_check.conflicts])

    price = compute_price(selections, btype, is_verified=bool(user.get("is_verified")), currency=PAYMENT_CURRENCY)
    if expected_total_cents is not None and int(expected_total_cents) != price.total_cents:
        raise BookingValidationError(
            "Amount does not match the current price",
            {"reason": "amount_mismatch", "expected_total_cents": expected_total_cents, "price": price.to_dict()},
        )

    room_docs = await RoomRepository(db).get_many(s.room_id for s in selections)
    booking_id = ObjectId()

    # Raises BookingConflictError if someone claimed a slot since the pre-check.
    claims = SlotClaimRepository(db)
    await claims.reserve(booking_id, selections)

    bookings = BookingRepository(db)
    try:
        await bookings.insert_pending(
            _booking_doc(
                booking_id,
                user=user,
                selections=selections,
                room_names={rid: d.get("name") for rid, d in room_docs.items()},
                booking_type=btype,
                price=price,
                draft_id=draft_oid,
            )
        )
    except PyMongoError:
        # Claims without a booking are invisible to every read path.
        logger.error("Could not store booking %s; releasing its slot claims", booking_id, exc_info=True)
        await claims.release([booking_id])
        raise

    metadata = {
        "booking_ids": str(booking_id),
        "user_id": str(user["id"]),
        "booking_type": btype.value,
        "security_deposit_cents": str(price.security_deposit_cents),
    }
    try:
        intent = await stripe_adapter.create_payment_intent(
            amount_cents=price.total_cents,
            currency=price.currency,
            metadata=metadata,
            idempotency_key=f"booking-{booking_id}",
            customer_id=user.get("stripe_customer_id"),
        )
        await bookings.attach_payment_intent(booking_id, intent["id"])
    except (AppError, PyMongoError) as exc:
        await _abandon_booking(db, booking_id, exc)
        raise

    if draft_oid is not None:
        await DraftRepository(db).mark_promoted(draft_oid, booking_id)

    logger.info(
        "Created pending booking %s with intent %s (total=%s %s)",
        booking_id,
        intent["id"],
        price.total_cents,
        price.currency,
    )

    return {
        "client_secret": intent.get("client_secret"),
        "payment_intent_id": intent["id"],
        "booking_ids": [str(booking_id)],
        "price": price.to_dict(),
    }
