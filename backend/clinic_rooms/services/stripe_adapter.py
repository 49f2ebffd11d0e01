from __future__ import annotations

"""Stripe adapter layer.

This module isolates the concrete Stripe SDK from the rest of the codebase and
provides a minimal async-friendly API surface. Every call goes through an
HTTP client with a bounded timeout; provider failures surface as
PaymentProviderError so callers can treat them as retriable.

The functions are small and stateless so they can be easily mocked in tests.
"""

import json
import logging
import os
from typing import Any, Callable, Dict, Optional

import anyio
import stripe  # type: ignore

from clinic_rooms.config import STRIPE_MAX_NETWORK_RETRIES, STRIPE_TIMEOUT_SECONDS
from clinic_rooms.errors import AppError, PaymentProviderError

logger = logging.getLogger("stripe_adapter")


def _stripe_client() -> "stripe.StripeClient":
    api_key = os.environ.get("STRIPE_API_KEY")
    if not api_key:
        raise PaymentProviderError("Stripe is not configured", {"missing": "STRIPE_API_KEY"})
    return stripe.StripeClient(
        api_key,
        http_client=stripe.RequestsClient(timeout=STRIPE_TIMEOUT_SECONDS),
        max_network_retries=STRIPE_MAX_NETWORK_RETRIES,
    )


def _to_dict(obj: Any) -> Dict[str, Any]:
    # Older SDKs only convert nested objects through to_dict_recursive.
    for name in ("to_dict_recursive", "to_dict"):
        if hasattr(obj, name):
            return getattr(obj, name)()
    return dict(obj)


async def _call(operation: str, fn: Callable[[], Any]) -> Dict[str, Any]:
    """Run a sync Stripe SDK call in a worker thread and map its errors."""

    def _run() -> Dict[str, Any]:  # pragma: no cover - thin sync wrapper
        return _to_dict(fn())

    try:
        return await anyio.to_thread.run_sync(_run)
    except stripe.InvalidRequestError as exc:
        logger.warning("Stripe rejected %s: %s", operation, exc)
        raise AppError(
            400,
            "payment_provider_rejected",
            exc.user_message or str(exc),
            {"operation": operation, "stripe_code": getattr(exc, "code", None)},
            retryable=False,
        )
    except stripe.StripeError as exc:
        logger.error("Stripe %s failed: %s", operation, exc)
        raise PaymentProviderError(
            f"Payment service error: {exc.user_message or exc.__class__.__name__}",
            {"operation": operation},
        )


async def create_payment_intent(
    *,
    amount_cents: int,
    currency: str,
    metadata: Dict[str, str],
    idempotency_key: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create an automatic-payment-methods PaymentIntent."""

    if amount_cents <= 0:
        raise ValueError("amount_cents must be > 0")

    client = _stripe_client()
    params: Dict[str, Any] = {
        "amount": int(amount_cents),
        "currency": currency.lower(),
        "automatic_payment_methods": {"enabled": True},
        "metadata": metadata,
    }
    if customer_id:
        params["customer"] = customer_id
    options: Dict[str, Any] = {}
    if idempotency_key:
        options["idempotency_key"] = idempotency_key

    return await _call("create_payment_intent", lambda: client.payment_intents.create(params=params, options=options))


async def retrieve_payment_intent(payment_intent_id: str) -> Dict[str, Any]:
    """Fetch the provider's current view of a PaymentIntent."""

    client = _stripe_client()
    return await _call("retrieve_payment_intent", lambda: client.payment_intents.retrieve(payment_intent_id))


def construct_event(raw_body: bytes, signature: str, secret: str) -> Dict[str, Any]:
    """Verify a webhook signature and return the event payload as a plain dict.

    Raises stripe.SignatureVerificationError on a bad signature and
    ValueError on a body that is not JSON.
    """

    payload = raw_body.decode("utf-8")
    stripe.WebhookSignature.verify_header(payload, signature, secret, stripe.Webhook.DEFAULT_TOLERANCE)
    return json.loads(payload)
