from __future__ import annotations

from typing import Any, Dict

import pytest
from bson import ObjectId

from clinic_rooms.repositories.slot_claim_repository import SlotClaimRepository
from clinic_rooms.domain.selections import normalize_selections
from clinic_rooms.services.reconciliation import (
    PaymentOutcome,
    outcome_from_event,
    outcome_from_payment_intent,
    reconcile_payment_outcome,
)
from clinic_rooms.utils import now_utc

from conftest import create_user, payment_intent_event


async def _pending_booking(db, user: Dict[str, Any], *, pi_id: str, amount: int = 50000, deposit: int = 0, room_id: str = "1", day: str = "2030-06-03") -> ObjectId:
    booking_id = ObjectId()
    sels = normalize_selections([{"room_id": room_id, "time_slot": "full", "dates": [day]}])
    await SlotClaimRepository(db).reserve(booking_id, sels)
    now = now_utc()
    await db.bookings.insert_one(
        {
            "_id": booking_id,
            "user_id": str(user["_id"]),
            "rooms": [{"room_id": room_id, "time_slot": "full", "dates": [{"date": day}]}],
            "booking_type": "daily",
            "price": {"total_cents": amount, "security_deposit_cents": deposit, "currency": "usd"},
            "total_amount": amount / 100,
            "status": "pending",
            "payment_status": "pending",
            "payment_intent_id": pi_id,
            "payment_details": {"status": "pending", "payment_intent_id": pi_id},
            "created_at": now,
            "updated_at": now,
        }
    )
    return booking_id


def _intent(pi_id: str, booking_id: ObjectId, user: Dict[str, Any], *, status: str = "succeeded", amount: int = 50000, deposit: int = 0, **extra: Any) -> Dict[str, Any]:
    return {
        "id": pi_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount if status == "succeeded" else 0,
        "currency": "usd",
        "status": status,
        "metadata": {
            "booking_ids": str(booking_id),
            "user_id": str(user["_id"]),
            "booking_type": "daily",
            "security_deposit_cents": str(deposit),
        },
        **extra,
    }


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.calls = []
        self.fail = fail

    async def __call__(self, db, *, booking, user) -> bool:
        self.calls.append((booking["_id"], user and user["email"]))
        if self.fail:
            raise RuntimeError("smtp down")
        return True


def test_outcome_from_event_maps_supported_types() -> None:
    intent = {"id": "pi_1", "amount": 500, "currency": "usd", "status": "succeeded", "metadata": {"booking_ids": "a, b", "security_deposit_cents": "0"}}
    ok = outcome_from_event(payment_intent_event(intent, "payment_intent.succeeded", "evt_1"))
    assert (ok.outcome, ok.booking_ids, ok.security_deposit_cents, ok.event_id) == ("succeeded", ["a", "b"], 0, "evt_1")

    failed = outcome_from_event(
        payment_intent_event(
            {**intent, "status": "requires_payment_method", "last_payment_error": {"message": "Card declined", "code": "card_declined", "decline_code": "generic_decline"}},
            "payment_intent.payment_failed",
        )
    )
    assert failed.outcome == "other"
    assert failed.failure == {"message": "Card declined", "code": "card_declined", "decline_code": "generic_decline"}

    canceled = outcome_from_event(payment_intent_event({**intent, "status": "canceled"}, "payment_intent.canceled"))
    assert canceled.outcome == "failed"

    assert outcome_from_event(payment_intent_event(intent, "charge.refunded")) is None


def test_outcome_from_retrieved_intent_uses_its_status() -> None:
    base = {"id": "pi_1", "amount": 500, "currency": "usd", "metadata": {}}
    assert outcome_from_payment_intent({**base, "status": "succeeded"}).outcome == "succeeded"
    assert outcome_from_payment_intent({**base, "status": "canceled"}).outcome == "failed"
    assert outcome_from_payment_intent({**base, "status": "requires_payment_method", "last_payment_error": {"message": "x"}}).outcome == "other"
    assert outcome_from_payment_intent({**base, "status": "requires_payment_method"}).outcome == "other"
    assert outcome_from_payment_intent({**base, "status": "processing"}).outcome == "other"


@pytest.mark.anyio
async def test_duplicate_success_confirms_once_and_second_delivery_is_noop(test_db) -> None:
    user = await create_user(test_db, email="y@example.com", is_verified=True)
    booking_id = await _pending_booking(test_db, user, pi_id="pi_1", amount=50000)
    outcome = outcome_from_event(payment_intent_event(_intent("pi_1", booking_id, user), "payment_intent.succeeded", "evt_1"))
    notifier = RecordingNotifier()

    first = await reconcile_payment_outcome(test_db, outcome, notifier=notifier)
    assert first.decision == "applied"
    assert first.applied_booking_ids == [str(booking_id)]

    booking = await test_db.bookings.find_one({"_id": booking_id})
    assert booking["status"] == "confirmed"
    assert booking["payment_status"] == "succeeded"
    assert booking["payment_details"]["amount"] == 50000
    assert booking["payment_details"]["confirmed_at"] is not None
    confirmed_at = booking["payment_details"]["confirmed_at"]

    second = await reconcile_payment_outcome(test_db, outcome, notifier=notifier)
    assert second.decision == "noop"
    assert second.reason == "already_terminal"
    assert second.applied_booking_ids == []

    booking = await test_db.bookings.find_one({"_id": booking_id})
    assert booking["payment_details"]["confirmed_at"] == confirmed_at
    assert len(notifier.calls) == 1
    # Confirmed bookings keep holding their slots.
    assert await test_db.slot_claims.count_documents({"booking_id": booking_id}) == 2

    log = await test_db.payment_reconciliations.find({"payment_intent_id": "pi_1"}).sort("_id", 1).to_list(None)
    assert [row["decision"] for row in log] == ["applied", "noop"]


@pytest.mark.anyio
async def test_deposit_payment_verifies_user_exactly_once(test_db) -> None:
    user = await create_user(test_db, email="u@example.com")
    assert user["is_verified"] is False
    booking_id = await _pending_booking(test_db, user, pi_id="pi_z", amount=56050, deposit=25000)
    event = payment_intent_event(_intent("pi_z", booking_id, user, amount=56050, deposit=25000), "payment_intent.succeeded", "evt_z")

    results = [await reconcile_payment_outcome(test_db, outcome_from_event(event), notifier=RecordingNotifier()) for _ in range(3)]

    assert [r.user_verified for r in results] == [True, False, False]
    stored = await test_db.users.find_one({"_id": user["_id"]})
    assert stored["is_verified"] is True
    verified_at = stored["verified_at"]

    again = await reconcile_payment_outcome(test_db, outcome_from_event(event))
    assert again.user_verified is False
    assert (await test_db.users.find_one({"_id": user["_id"]}))["verified_at"] == verified_at


@pytest.mark.anyio
async def test_payment_without_deposit_does_not_verify(test_db) -> None:
    user = await create_user(test_db, email="nodeposit@example.com")
    booking_id = await _pending_booking(test_db, user, pi_id="pi_nd", deposit=0)
    outcome = outcome_from_event(payment_intent_event(_intent("pi_nd", booking_id, user, deposit=0), "payment_intent.succeeded"))

    result = await reconcile_payment_outcome(test_db, outcome, notifier=RecordingNotifier())

    assert result.applied
    assert result.user_verified is False
    assert (await test_db.users.find_one({"_id": user["_id"]}))["is_verified"] is False


@pytest.mark.anyio
async def test_canceled_intent_marks_failed_and_frees_slots(test_db) -> None:
    user = await create_user(test_db, email="f@example.com")
    booking_id = await _pending_booking(test_db, user, pi_id="pi_f", deposit=25000)
    intent = _intent(
        "pi_f",
        booking_id,
        user,
        status="canceled",
        deposit=25000,
        last_payment_error={"message": "Your card was declined.", "code": "card_declined", "decline_code": "insufficient_funds"},
    )
    notifier = RecordingNotifier()
    failure_notifier = RecordingNotifier()

    result = await reconcile_payment_outcome(
        test_db,
        outcome_from_event(payment_intent_event(intent, "payment_intent.canceled")),
        notifier=notifier,
        failure_notifier=failure_notifier,
    )

    assert result.applied
    booking = await test_db.bookings.find_one({"_id": booking_id})
    assert booking["status"] == "failed"
    assert booking["payment_status"] == "failed"
    assert booking["payment_details"]["error"]["decline_code"] == "insufficient_funds"
    assert booking["payment_details"]["failed_at"] is not None
    assert await test_db.slot_claims.count_documents({"booking_id": booking_id}) == 0
    assert notifier.calls == []
    assert failure_notifier.calls == [(booking_id, "f@example.com")]
    assert (await test_db.users.find_one({"_id": user["_id"]}))["is_verified"] is False


@pytest.mark.anyio
async def test_declined_attempt_then_success_confirms_booking(test_db) -> None:
    user = await create_user(test_db, email="retry@example.com")
    booking_id = await _pending_booking(test_db, user, pi_id="pi_retry", deposit=25000)
    declined = _intent(
        "pi_retry",
        booking_id,
        user,
        status="requires_payment_method",
        deposit=25000,
        last_payment_error={"message": "Your card was declined.", "code": "card_declined", "decline_code": "generic_decline"},
    )
    failure_notifier = RecordingNotifier()

    first = await reconcile_payment_outcome(
        test_db,
        outcome_from_event(payment_intent_event(declined, "payment_intent.payment_failed", "evt_decline")),
        failure_notifier=failure_notifier,
    )
    assert (first.decision, first.reason) == ("noop", "not_final")
    booking = await test_db.bookings.find_one({"_id": booking_id})
    assert booking["status"] == "pending"
    assert booking["payment_details"]["last_error"]["decline_code"] == "generic_decline"
    assert booking["payment_details"]["last_error_event_id"] == "evt_decline"
    assert await test_db.slot_claims.count_documents({"booking_id": booking_id}) == 2
    assert failure_notifier.calls == []

    second = await reconcile_payment_outcome(
        test_db,
        outcome_from_event(payment_intent_event(_intent("pi_retry", booking_id, user, deposit=25000), "payment_intent.succeeded")),
        notifier=RecordingNotifier(),
    )
    assert second.applied
    assert second.user_verified is True
    booking = await test_db.bookings.find_one({"_id": booking_id})
    assert booking["status"] == "confirmed"
    assert await test_db.slot_claims.count_documents({"booking_id": booking_id}) == 2


@pytest.mark.anyio
async def test_failure_after_confirmation_does_not_downgrade(test_db) -> None:
    user = await create_user(test_db, email="late@example.com", is_verified=True)
    booking_id = await _pending_booking(test_db, user, pi_id="pi_late")
    await reconcile_payment_outcome(
        test_db,
        outcome_from_event(payment_intent_event(_intent("pi_late", booking_id, user), "payment_intent.succeeded")),
        notifier=RecordingNotifier(),
    )

    late = outcome_from_event(
        payment_intent_event(_intent("pi_late", booking_id, user, status="canceled"), "payment_intent.canceled")
    )
    result = await reconcile_payment_outcome(test_db, late)

    assert result.decision == "noop"
    assert result.reason == "already_terminal"
    booking = await test_db.bookings.find_one({"_id": booking_id})
    assert booking["status"] == "confirmed"
    assert await test_db.slot_claims.count_documents({"booking_id": booking_id}) == 2


@pytest.mark.anyio
async def test_unknown_bookings_and_non_final_outcomes_are_noops(test_db) -> None:
    unknown = PaymentOutcome(payment_intent_id="pi_unknown", outcome="succeeded", booking_ids=[str(ObjectId()), "not-an-id"])
    result = await reconcile_payment_outcome(test_db, unknown)
    assert (result.decision, result.reason) == ("noop", "no_matching_bookings")

    user = await create_user(test_db, email="nf@example.com")
    booking_id = await _pending_booking(test_db, user, pi_id="pi_nf")
    pending = outcome_from_payment_intent(_intent("pi_nf", booking_id, user, status="processing"))
    result = await reconcile_payment_outcome(test_db, pending)
    assert (result.decision, result.reason) == ("noop", "not_final")
    assert (await test_db.bookings.find_one({"_id": booking_id}))["status"] == "pending"


@pytest.mark.anyio
async def test_bookings_are_found_by_intent_id_when_metadata_is_missing(test_db) -> None:
    user = await create_user(test_db, email="meta@example.com", is_verified=True)
    booking_id = await _pending_booking(test_db, user, pi_id="pi_meta")
    intent = {"id": "pi_meta", "amount": 50000, "amount_received": 50000, "currency": "usd", "status": "succeeded", "metadata": {}}

    result = await reconcile_payment_outcome(test_db, outcome_from_event(payment_intent_event(intent, "payment_intent.succeeded")), notifier=RecordingNotifier())

    assert result.applied_booking_ids == [str(booking_id)]


@pytest.mark.anyio
async def test_notification_failure_does_not_roll_back_confirmation(test_db) -> None:
    user = await create_user(test_db, email="n@example.com")
    booking_id = await _pending_booking(test_db, user, pi_id="pi_n", deposit=25000)
    outcome = outcome_from_event(payment_intent_event(_intent("pi_n", booking_id, user, deposit=25000), "payment_intent.succeeded"))

    result = await reconcile_payment_outcome(test_db, outcome, notifier=RecordingNotifier(fail=True))

    assert result.applied
    assert result.user_verified is True
    assert result.warnings and result.warnings[0].startswith("notification_failed")
    assert (await test_db.bookings.find_one({"_id": booking_id}))["status"] == "confirmed"


@pytest.mark.anyio
async def test_default_notifier_queues_confirmation_email(test_db) -> None:
    user = await create_user(test_db, email="mail@example.com", is_verified=True)
    booking_id = await _pending_booking(test_db, user, pi_id="pi_mail")
    outcome = outcome_from_event(payment_intent_event(_intent("pi_mail", booking_id, user), "payment_intent.succeeded"))

    result = await reconcile_payment_outcome(test_db, outcome)
    await reconcile_payment_outcome(test_db, outcome)

    assert result.notifications_queued == 1
    jobs = await test_db.email_outbox.find({"booking_id": booking_id}).to_list(None)
    assert len(jobs) == 1
    assert jobs[0]["to"] == ["mail@example.com"]
    assert jobs[0]["event_type"] == "booking.confirmed"
    assert str(booking_id) in jobs[0]["text_body"]


@pytest.mark.anyio
async def test_opted_out_users_get_no_email(test_db) -> None:
    user = await create_user(test_db, email="quiet@example.com", is_verified=True, preferences={"email_notifications": False})
    booking_id = await _pending_booking(test_db, user, pi_id="pi_quiet")
    outcome = outcome_from_event(payment_intent_event(_intent("pi_quiet", booking_id, user), "payment_intent.succeeded"))

    result = await reconcile_payment_outcome(test_db, outcome)

    assert result.applied
    assert result.notifications_queued == 0
    assert await test_db.email_outbox.count_documents({}) == 0


@pytest.mark.anyio
async def test_default_failure_notifier_queues_incomplete_payment_email(test_db) -> None:
    user = await create_user(test_db, email="unpaid@example.com")
    booking_id = await _pending_booking(test_db, user, pi_id="pi_unpaid")
    outcome = outcome_from_event(
        payment_intent_event(_intent("pi_unpaid", booking_id, user, status="canceled"), "payment_intent.canceled")
    )

    result = await reconcile_payment_outcome(test_db, outcome)
    await reconcile_payment_outcome(test_db, outcome)

    assert result.notifications_queued == 1
    jobs = await test_db.email_outbox.find({"booking_id": booking_id}).to_list(None)
    assert len(jobs) == 1
    assert jobs[0]["to"] == ["unpaid@example.com"]
    assert jobs[0]["event_type"] == "booking.payment_incomplete"
    assert f"/booking/payment/{booking_id}" in jobs[0]["text_body"]
