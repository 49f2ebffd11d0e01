"""
Indexes for bookings, slot claims and the collections around them.
The slot_claims unique index is the double-booking guard.
"""
from __future__ import annotations

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure
import logging

logger = logging.getLogger(__name__)


async def ensure_booking_indexes(db):
    """Ensure indexes for booking collections.

    If an auxiliary index with the same name but different options already
    exists (legacy), IndexOptionsConflict is logged and the existing
    definition is kept, so startup is not blocked. The slot_claims unique
    index is created directly: a conflicting definition fails startup.
    """

    async def _safe_create(collection, *args, **kwargs):
        try:
            await collection.create_index(*args, **kwargs)
        except OperationFailure as e:
            msg = str(e).lower()
            if (
                "indexoptionsconflict" in msg
                or "indexkeyspecsconflict" in msg
                or "already exists" in msg
            ):
                logger.warning(
                    "[booking_indexes] Keeping legacy index for %s (name=%s): %s",
                    collection.name,
                    kwargs.get("name"),
                    msg,
                )
                return
            raise

    # ========================================================================
    # 1) slot_claims
    # ========================================================================
    await db.slot_claims.create_index(
        [("room_id", ASCENDING), ("date", ASCENDING), ("half", ASCENDING)],
        unique=True,
        name="uniq_room_date_half",
    )
    await _safe_create(db.slot_claims, [("booking_id", ASCENDING)], name="claims_by_booking")

    # ========================================================================
    # 2) bookings
    # ========================================================================
    await _safe_create(
        db.bookings,
        [("payment_intent_id", ASCENDING)],
        unique=True,
        sparse=True,
        name="uniq_payment_intent",
    )
    await _safe_create(
        db.bookings,
        [("user_id", ASCENDING), ("created_at", DESCENDING)],
        name="bookings_by_user",
    )
    await _safe_create(
        db.bookings,
        [("rooms.dates.date", ASCENDING), ("status", ASCENDING)],
        name="bookings_by_date_status",
    )
    await _safe_create(
        db.bookings,
        [("status", ASCENDING), ("created_at", ASCENDING)],
        name="bookings_by_status_created",
    )

    # ========================================================================
    # 3) users, drafts, reconciliation log, email outbox
    # ========================================================================
    await _safe_create(db.users, [("email", ASCENDING)], unique=True, name="uniq_user_email")
    await _safe_create(
        db.booking_drafts,
        [("expires_at", ASCENDING)],
        expireAfterSeconds=0,
        name="drafts_ttl",
    )
    await _safe_create(
        db.payment_reconciliations,
        [("payment_intent_id", ASCENDING), ("created_at", DESCENDING)],
        name="reconciliations_by_intent",
    )
    await _safe_create(
        db.email_outbox,
        [("status", ASCENDING), ("next_retry_at", ASCENDING)],
        name="outbox_pending",
    )
