from __future__ import annotations

from fastapi import APIRouter, Depends

from clinic_rooms.auth import get_current_user, require_roles
from clinic_rooms.db import get_db
from clinic_rooms.errors import AppError, BookingValidationError
from clinic_rooms.repositories.booking_repository import BookingRepository
from clinic_rooms.schemas import PaymentIntentRequest, PaymentIntentResponse, ReconcileRequest, SyncRequest
from clinic_rooms.services import booking_checkout, stripe_handlers

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/intent", response_model=PaymentIntentResponse, status_code=201)
async def create_payment_intent(payload: PaymentIntentRequest, db=Depends(get_db), user=Depends(get_current_user)):
    """Create pending booking(s) and the Stripe PaymentIntent that pays for them.

    Either `rooms` or `draft_id` must be given. Bookings only become
    confirmed through reconciliation of the intent's outcome.
    """

    if not payload.draft_id and not payload.rooms:
        raise BookingValidationError("Either rooms or draft_id is required")

    return await booking_checkout.create_booking_with_payment_intent(
        db,
        user=user,
        rooms=[r.model_dump() for r in payload.rooms or []],
        booking_type=payload.booking_type,
        draft_id=payload.draft_id,
        expected_total_cents=payload.expected_total_cents,
    )


@router.post("/reconcile")
async def reconcile(payload: ReconcileRequest, db=Depends(get_db), user=Depends(get_current_user)):
    """Re-check one intent with Stripe and apply its outcome."""

    if user.get("role") != "admin":
        linked = await BookingRepository(db).find_by_ids_or_payment_intent([], payload.payment_intent_id)
        if not linked or any(b.get("user_id") != user["id"] for b in linked):
            raise AppError(404, "payment_not_found", "No booking found for this payment")

    result = await stripe_handlers.reconcile_payment_intent(db, payload.payment_intent_id, source="manual")
    return result.to_dict()


@router.post("/sync", dependencies=[Depends(require_roles(["admin"]))])
async def sync_payments(payload: SyncRequest, db=Depends(get_db)):
    return await stripe_handlers.sync_pending_payments(
        db,
        limit=payload.limit,
        older_than_minutes=payload.older_than_minutes,
    )
