from __future__ import annotations

"""Stripe entrypoints for payment reconciliation.

Three triggers share `reconcile_payment_outcome`:
- `handle_stripe_webhook`: signed push from Stripe,
- `reconcile_payment_intent`: manual fix for one intent (pulls its state),
- `sync_pending_payments`: sweep over pending bookings that carry an intent.
"""

import logging
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import stripe  # type: ignore
from pymongo.errors import PyMongoError

from clinic_rooms.errors import AppError
from clinic_rooms.repositories.booking_repository import BookingRepository
from clinic_rooms.services import stripe_adapter
from clinic_rooms.services.reconciliation import (
    ReconciliationResult,
    outcome_from_event,
    outcome_from_payment_intent,
    reconcile_payment_outcome,
)
from clinic_rooms.utils import now_utc

logger = logging.getLogger("stripe_handlers")


async def verify_and_parse_stripe_event(raw_body: bytes, signature: str | None) -> Dict[str, Any]:
    """Verify Stripe signature and return event payload as dict.

    Raises AppError(400, ...) on invalid signature.
    """

    webhook_secret = os.environ.get("STRIPE_WEBHOOK_SECRET")
    if not webhook_secret:
        # 500 makes Stripe retry until the secret is configured.
        raise AppError(500, "stripe_webhook_not_configured", "Stripe webhook secret is not configured")

    if not signature:
        raise AppError(400, "stripe_invalid_signature", "Missing Stripe-Signature header")

    try:
        return stripe_adapter.construct_event(raw_body, signature, webhook_secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Rejected Stripe webhook with invalid signature: %s", exc)
        raise AppError(400, "stripe_invalid_signature", str(exc))
    except ValueError as exc:
        raise AppError(400, "stripe_invalid_payload", str(exc))


async def handle_stripe_webhook(db, raw_body: bytes, signature: str | None) -> Tuple[int, Dict[str, Any]]:
    """Main entrypoint used by the FastAPI router.

    Returns (status_code, response_body_dict).
    """

    event = await verify_and_parse_stripe_event(raw_body, signature)
    event_type = event.get("type")

    outcome = outcome_from_event(event)
    if outcome is None:
        # Unknown / unsupported events: 200 OK, no-op
        return 200, {"ok": True, "ignored": event_type}

    try:
        result = await reconcile_payment_outcome(db, outcome)
    except PyMongoError as exc:
        logger.error("Reconciliation storage failure for event %s: %s", event.get("id"), exc, exc_info=True)
        # Non-2xx so Stripe redelivers; the handler is safe to re-run.
        raise AppError(500, "reconciliation_storage_error", "Could not persist payment outcome", retryable=True)

    return 200, {"ok": True, "event_id": event.get("id"), **result.to_dict()}


async def reconcile_payment_intent(db, payment_intent_id: str, *, source: str = "manual") -> ReconciliationResult:
    """Pull the current intent state from Stripe and reconcile it."""

    intent = await stripe_adapter.retrieve_payment_intent(payment_intent_id)
    outcome = outcome_from_payment_intent(intent, source=source)
    return await reconcile_payment_outcome(db, outcome)


async def sync_pending_payments(
    db,
    *,
    limit: int = 100,
    older_than_minutes: Optional[int] = None,
) -> Dict[str, Any]:
    """Reconcile every pending booking that already has an intent.

    Provider and storage errors for one intent are recorded and the sweep
    continues.
    """

    older_than = now_utc() - timedelta(minutes=older_than_minutes) if older_than_minutes else None
    pending = await BookingRepository(db).find_pending_with_payment_intent(older_than=older_than, limit=limit)
    intent_ids: List[str] = sorted({b["payment_intent_id"] for b in pending if b.get("payment_intent_id")})

    summary: Dict[str, Any] = {"checked": 0, "applied": 0, "noop": 0, "errors": []}
    for pi_id in intent_ids:
        summary["checked"] += 1
        try:
            result = await reconcile_payment_intent(db, pi_id, source="sweep")
        except AppError as exc:
            logger.warning("Sync could not reconcile %s: %s", pi_id, exc)
            summary["errors"].append({"payment_intent_id": pi_id, "code": exc.code, "message": exc.message})
            continue
        except PyMongoError as exc:
            logger.error("Sync could not store the outcome for %s: %s", pi_id, exc, exc_info=True)
            summary["errors"].append({"payment_intent_id": pi_id, "code": "storage_unavailable", "message": str(exc)})
            continue
        summary[result.decision] += 1

    logger.info("Payment sync finished: %s", summary)
    return summary
