"""Payment reconciliation: make booking state match the provider's outcome.

Single code path for every trigger (Stripe webhook push, manual fix for one
intent, periodic sweep). Properties the steps below rely on:

- every write is a conditional update, so the whole handler can be re-run
  after a crash or a duplicate delivery without changing the result;
- a booking only leaves `pending` once; later events for the same intent
  (including a `failed` after a `succeeded`) are reported as no-ops;
- a declined attempt on an intent the customer can still retry is not a
  failure: the decline is recorded and the booking stays `pending`;
- emails are queued only by the call that moved the booking, and a
  notification failure never rolls the state back.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from clinic_rooms.domain.booking_state_machine import PaymentOutcomeKind, can_apply_payment_outcome, target_for_outcome
from clinic_rooms.domain.statuses import BookingStatus
from clinic_rooms.repositories.booking_repository import BookingRepository
from clinic_rooms.repositories.user_repository import UserRepository
from clinic_rooms.services.booking_lifecycle import BookingLifecycleService
from clinic_rooms.services.email_outbox import enqueue_booking_confirmation, enqueue_payment_incomplete
from clinic_rooms.utils import now_utc, split_csv

logger = logging.getLogger("payment_reconciliation")

Notifier = Callable[..., Awaitable[Any]]

_EVENT_OUTCOMES = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "failed",
}

# Intent statuses from which the customer can still pay the same intent.
_RETRYABLE_INTENT_STATUSES = frozenset(
    {"requires_payment_method", "requires_confirmation", "requires_action", "processing"}
)


@dataclass
class PaymentOutcome:
    payment_intent_id: Optional[str]
    outcome: PaymentOutcomeKind
    amount: int = 0
    currency: Optional[str] = None
    booking_ids: List[str] = field(default_factory=list)
    user_id: Optional[str] = None
    security_deposit_cents: Optional[int] = None
    failure: Optional[Dict[str, Any]] = None
    provider_status: Optional[str] = None
    event_id: Optional[str] = None
    source: str = "webhook"


@dataclass
class ReconciliationResult:
    decision: str  # applied | noop
    reason: Optional[str] = None
    payment_intent_id: Optional[str] = None
    outcome: Optional[str] = None
    booking_ids: List[str] = field(default_factory=list)
    applied_booking_ids: List[str] = field(default_factory=list)
    user_verified: bool = False
    notifications_queued: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.decision == "applied"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _failure_from(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    err = obj.get("last_payment_error") or {}
    if not err and obj.get("status") != "canceled":
        return None
    return {
        "message": err.get("message") or (
            "Payment intent was canceled" if obj.get("status") == "canceled" else "Payment was not successful"
        ),
        "code": err.get("code"),
        "decline_code": err.get("decline_code"),
    }


def outcome_from_payment_intent(
    intent: Dict[str, Any],
    *,
    outcome: Optional[str] = None,
    event_id: Optional[str] = None,
    source: str = "manual",
) -> PaymentOutcome:
    """Build a PaymentOutcome from a PaymentIntent object.

    Without an explicit `outcome`, the intent's own status decides:
    succeeded -> succeeded; canceled -> failed; anything else is still in
    flight. A `failed` outcome for an intent that can still be paid is
    downgraded to `other`; its decline details are kept in `failure`.
    """

    status = intent.get("status")
    if outcome is None:
        if status == "succeeded":
            outcome = "succeeded"
        elif status == "canceled":
            outcome = "failed"
        else:
            outcome = "other"
    elif outcome == "failed" and status in _RETRYABLE_INTENT_STATUSES:
        outcome = "other"

    metadata = intent.get("metadata") or {}
    return PaymentOutcome(
        payment_intent_id=intent.get("id"),
        outcome=outcome,
        amount=int(intent.get("amount_received") or intent.get("amount") or 0),
        currency=intent.get("currency"),
        booking_ids=split_csv(metadata.get("booking_ids")),
        user_id=metadata.get("user_id") or None,
        security_deposit_cents=_int_or_none(metadata.get("security_deposit_cents")),
        failure=_failure_from(intent) if outcome != "succeeded" else None,
        provider_status=status,
        event_id=event_id,
        source=source,
    )


def outcome_from_event(event: Dict[str, Any]) -> Optional[PaymentOutcome]:
    """Map a Stripe event to a PaymentOutcome; None for unsupported types."""

    outcome = _EVENT_OUTCOMES.get(str(event.get("type") or ""))
    if outcome is None:
        return None
    intent = (event.get("data") or {}).get("object") or {}
    return outcome_from_payment_intent(intent, outcome=outcome, event_id=event.get("id"), source="webhook")


def _deposit_charged(outcome: PaymentOutcome, bookings: List[Dict[str, Any]]) -> bool:
    if outcome.security_deposit_cents is not None:
        return outcome.security_deposit_cents > 0
    return any(((b.get("price") or {}).get("security_deposit_cents") or 0) > 0 for b in bookings)


def _paying_user_id(outcome: PaymentOutcome, bookings: List[Dict[str, Any]]) -> Optional[str]:
    if outcome.user_id:
        return outcome.user_id
    for b in bookings:
        if b.get("user_id"):
            return str(b["user_id"])
    return None


async def _record(db, outcome: PaymentOutcome, result: ReconciliationResult, now: datetime) -> None:
    await db.payment_reconciliations.insert_one(
        {
            "provider": "stripe",
            "event_id": outcome.event_id,
            "payment_intent_id": outcome.payment_intent_id,
            "source": outcome.source,
            "outcome": outcome.outcome,
            "provider_status": outcome.provider_status,
            "decision": result.decision,
            "reason": result.reason,
            "booking_ids": result.booking_ids,
            "applied_booking_ids": result.applied_booking_ids,
            "user_verified": result.user_verified,
            "warnings": result.warnings,
            "created_at": now,
        }
    )


async def _notify(
    db,
    notifier: Notifier,
    bookings: List[Dict[str, Any]],
    user_id: Optional[str],
    outcome: PaymentOutcome,
    result: ReconciliationResult,
) -> None:
    if not bookings:
        return
    try:
        user = await UserRepository(db).get_by_id(user_id) if user_id else None
        for booking in bookings:
            if await notifier(db, booking=booking, user=user):
                result.notifications_queued += 1
    except Exception as exc:
        logger.warning(
            "Notification failed for intent %s: %s",
            outcome.payment_intent_id,
            exc,
            exc_info=True,
        )
        result.warnings.append(f"notification_failed: {exc}")


async def reconcile_payment_outcome(
    db,
    outcome: PaymentOutcome,
    *,
    notifier: Notifier = enqueue_booking_confirmation,
    failure_notifier: Notifier = enqueue_payment_incomplete,
    now: Optional[datetime] = None,
) -> ReconciliationResult:
    now = now or now_utc()
    result = ReconciliationResult(
        decision="noop",
        payment_intent_id=outcome.payment_intent_id,
        outcome=outcome.outcome,
    )

    # 1) Resolve bookings: metadata ids plus anything linked to the intent.
    bookings = await BookingRepository(db).find_by_ids_or_payment_intent(outcome.booking_ids, outcome.payment_intent_id)
    result.booking_ids = [str(b["_id"]) for b in bookings]
    if not bookings:
        result.reason = "no_matching_bookings"
        logger.info("Nothing to reconcile for intent %s (%s)", outcome.payment_intent_id, outcome.source)
        await _record(db, outcome, result, now)
        return result

    target = target_for_outcome(outcome.outcome)
    if target is None:
        result.reason = "not_final"
        if outcome.failure:
            recorded = await BookingRepository(db).record_payment_attempt_failure(
                [b["_id"] for b in bookings], outcome.failure, event_id=outcome.event_id, now=now
            )
            logger.info(
                "Declined attempt on intent %s recorded on %s pending booking(s)",
                outcome.payment_intent_id,
                recorded,
            )
        await _record(db, outcome, result, now)
        return result

    lifecycle = BookingLifecycleService(db)

    # 2) + 3) Only bookings still pending move; one batched conditional update.
    movable = [b for b in bookings if can_apply_payment_outcome(b.get("status"), outcome.outcome)]
    moved: List[Dict[str, Any]] = []
    if movable:
        details: Dict[str, Any] = {
            "amount": outcome.amount,
            "currency": outcome.currency,
            "provider_status": outcome.provider_status,
            "event_id": outcome.event_id,
            "source": outcome.source,
        }
        if outcome.failure:
            details["error"] = outcome.failure
        moved = await lifecycle.apply_payment_outcome([b["_id"] for b in movable], outcome.outcome, payment_details=details, now=now)

    moved_ids = {b["_id"] for b in moved}
    current = [next((m for m in moved if m["_id"] == b["_id"]), b) for b in bookings]
    result.applied_booking_ids = [str(i) for i in sorted(moved_ids)]
    if moved:
        result.decision = "applied"
    else:
        result.reason = "already_terminal"
        terminal = sorted({str(b.get("status")) for b in bookings})
        if outcome.outcome == "succeeded" and BookingStatus.CONFIRMED.value not in terminal:
            logger.warning(
                "Payment %s succeeded but its bookings are %s; manual review needed",
                outcome.payment_intent_id,
                terminal,
            )

    # 4) Failed/cancelled bookings give their slots back. Idempotent, and run
    # on replays too so a crash between the update and the release heals.
    await lifecycle.release_claims(current)

    user_id = _paying_user_id(outcome, bookings)
    if outcome.outcome == "succeeded":
        confirmed = [b for b in current if b.get("status") == BookingStatus.CONFIRMED.value]

        # 5) First deposit-bearing payment verifies the user, exactly once.
        if confirmed and user_id and _deposit_charged(outcome, bookings):
            result.user_verified = await UserRepository(db).mark_verified_once(user_id, now=now)
            if result.user_verified:
                logger.info("User %s verified by payment %s", user_id, outcome.payment_intent_id)

        # 6) Best effort: queue confirmations for bookings this call confirmed.
        newly_confirmed = [b for b in moved if b.get("status") == BookingStatus.CONFIRMED.value]
        await _notify(db, notifier, newly_confirmed, user_id, outcome, result)
    else:
        newly_failed = [b for b in moved if b.get("status") == BookingStatus.FAILED.value]
        await _notify(db, failure_notifier, newly_failed, user_id, outcome, result)

    logger.info(
        "Reconciled intent %s outcome=%s decision=%s reason=%s applied=%s",
        outcome.payment_intent_id,
        outcome.outcome,
        result.decision,
        result.reason,
        result.applied_booking_ids,
    )
    await _record(db, outcome, result, now)
    return result
