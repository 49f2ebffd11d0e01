from __future__ import annotations

"""Stripe webhook endpoint.

Booking state changes driven by payments happen here (and in the manual
reconcile/sync endpoints), never in the create-intent call.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from clinic_rooms.db import get_db
from clinic_rooms.errors import AppError
from clinic_rooms.services import stripe_handlers

router = APIRouter(prefix="/api/payments/stripe", tags=["payments_stripe"])


@router.post("/webhook")
async def webhook(request: Request, db=Depends(get_db)):
    """Returns JSON {"ok": bool, ...} with appropriate HTTP status codes."""

    raw_body = await request.body()
    signature = request.headers.get("Stripe-Signature")

    try:
        status, body = await stripe_handlers.handle_stripe_webhook(db, raw_body, signature)
    except AppError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    return JSONResponse(status_code=status, content=body)
