from __future__ import annotations

import html
import logging
import os
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from clinic_rooms.config import PUBLIC_BASE_URL
from clinic_rooms.services.email import EmailSendError, send_email_ses
from clinic_rooms.utils import now_utc

logger = logging.getLogger("email_outbox")

MAX_ATTEMPTS = 5


def _brand() -> str:
    return os.environ.get("EMAIL_BRAND_NAME", "Clinic Rooms")


def render_booking_confirmation(booking: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, str]:
    """Return subject/html/text for a booking confirmation email."""

    brand = html.escape(_brand())
    name = " ".join(p for p in [user.get("first_name"), user.get("last_name")] if p) or user.get("email", "")
    total = (booking.get("price") or {}).get("total_cents", 0) / 100
    booking_id = str(booking.get("_id"))

    room_blocks = []
    text_rooms = []
    for room in booking.get("rooms") or []:
        dates = [d.get("date") if isinstance(d, dict) else str(d) for d in room.get("dates") or []]
        items = "".join(f"<li>{html.escape(d)}</li>" for d in dates)
        room_blocks.append(
            f"<p><strong>Room:</strong> {html.escape(str(room.get('name') or room.get('room_id')))}</p>"
            f"<p><strong>Time slot:</strong> {html.escape(str(room.get('time_slot')))}</p>"
            f"<ul>{items}</ul>"
        )
        text_rooms.append(f"{room.get('name') or room.get('room_id')} ({room.get('time_slot')}): {', '.join(dates)}")

    subject = f"Booking Confirmation - {_brand()}"
    html_body = f"""
<h1>Booking Confirmation</h1>
<p>Dear {html.escape(name)},</p>
<p>Thank you for booking with {brand}. Your booking has been confirmed.</p>
<p><strong>Booking ID:</strong> {booking_id}</p>
<p><strong>Booking type:</strong> {html.escape(str(booking.get('booking_type')))}</p>
<p><strong>Total amount:</strong> ${total:.2f}</p>
{''.join(room_blocks)}
""".strip()
    text_body = "\n".join(
        [
            f"Booking Confirmation - {_brand()}",
            f"Booking ID: {booking_id}",
            f"Booking type: {booking.get('booking_type')}",
            f"Total amount: ${total:.2f}",
            *text_rooms,
        ]
    )
    return {"subject": subject, "html_body": html_body, "text_body": text_body}


def render_incomplete_payment(booking: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, str]:
    """Return subject/html/text asking the user to finish paying."""

    brand = html.escape(_brand())
    name = " ".join(p for p in [user.get("first_name"), user.get("last_name")] if p) or user.get("email", "")
    total = (booking.get("price") or {}).get("total_cents", 0) / 100
    booking_id = str(booking.get("_id"))
    pay_url = f"{PUBLIC_BASE_URL}/booking/payment/{booking_id}"

    subject = f"Complete Your Booking Payment - {_brand()}"
    html_body = f"""
<h1>Complete Your Booking</h1>
<p>Dear {html.escape(name)},</p>
<p>We noticed that the payment for your recent booking with {brand} did not go through.</p>
<p><strong>Booking ID:</strong> {booking_id}</p>
<p><strong>Total amount:</strong> ${total:.2f}</p>
<p>To book these rooms, please <a href="{html.escape(pay_url)}">start a new payment</a>.</p>
""".strip()
    text_body = "\n".join(
        [
            f"Complete Your Booking Payment - {_brand()}",
            f"Booking ID: {booking_id}",
            f"Total amount: ${total:.2f}",
            f"Pay here: {pay_url}",
        ]
    )
    return {"subject": subject, "html_body": html_body, "text_body": text_body}


def _wants_email(user: Optional[Dict[str, Any]]) -> bool:
    if not user or not user.get("email"):
        return False
    return bool((user.get("preferences") or {}).get("email_notifications", True))


async def _enqueue(db, *, booking: Dict[str, Any], user: Dict[str, Any], event_type: str, rendered: Dict[str, str]) -> None:
    now = now_utc()
    await db.email_outbox.insert_one(
        {
            "booking_id": booking["_id"],
            "user_id": str(user["_id"]),
            "event_type": event_type,
            "to": [user["email"]],
            **rendered,
            "status": "pending",
            "attempt_count": 0,
            "last_error": None,
            "next_retry_at": now,
            "created_at": now,
            "sent_at": None,
        }
    )


async def enqueue_booking_confirmation(db, *, booking: Dict[str, Any], user: Optional[Dict[str, Any]]) -> bool:
    """Queue a confirmation email for a freshly confirmed booking.

    Returns False when nothing was queued (no user, no address, or the user
    opted out of email notifications).
    """

    if not _wants_email(user):
        return False
    await _enqueue(db, booking=booking, user=user, event_type="booking.confirmed", rendered=render_booking_confirmation(booking, user))
    return True


async def enqueue_payment_incomplete(db, *, booking: Dict[str, Any], user: Optional[Dict[str, Any]]) -> bool:
    """Queue an incomplete-payment email for a booking whose payment failed."""

    if not _wants_email(user):
        return False
    await _enqueue(db, booking=booking, user=user, event_type="booking.payment_incomplete", rendered=render_incomplete_payment(booking, user))
    return True


async def dispatch_pending_emails(db, *, limit: int = 10, send: Callable[..., Any] = send_email_ses) -> int:
    """Send pending emails from email_outbox.

    Returns number of processed jobs.
    """

    now = now_utc()

    cursor = db.email_outbox.find(
        {"status": "pending", "next_retry_at": {"$lte": now}},
        limit=limit,
    )

    processed = 0
    async for job in cursor:
        processed += 1
        to = job.get("to") or []
        try:
            for addr in to:
                send(
                    to_address=addr,
                    subject=job.get("subject") or "",
                    html_body=job.get("html_body") or "",
                    text_body=job.get("text_body") or None,
                )

            await db.email_outbox.update_one(
                {"_id": job["_id"]},
                {
                    "$set": {
                        "status": "sent",
                        "sent_at": now,
                        "attempt_count": job.get("attempt_count", 0) + 1,
                        "last_error": None,
                    }
                },
            )
        except EmailSendError as e:
            attempts = job.get("attempt_count", 0) + 1
            backoff_minutes = min(60, 2 ** min(attempts, 5))  # 2,4,8,16,32,60
            next_retry = now + timedelta(minutes=backoff_minutes)

            await db.email_outbox.update_one(
                {"_id": job["_id"]},
                {
                    "$set": {
                        "status": "pending" if attempts < MAX_ATTEMPTS else "failed",
                        "attempt_count": attempts,
                        "last_error": str(e),
                        "next_retry_at": next_retry,
                    }
                },
            )

            logger.error("Email send failed for job %s: %s", job.get("_id"), e, exc_info=True)

    return processed
