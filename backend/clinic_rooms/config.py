from __future__ import annotations

"""Application-level configuration.

Everything is read from the environment. Boolean flags go through
`_env_flag` so that "0/false/off/no" and "1/true/on/yes" behave the same
everywhere.
"""

import os


def _env_flag(name: str, default: bool = True) -> bool:
    """Read a boolean-like flag from environment.

    Accepted falsy values: "0", "false", "off", "no" (case-insensitive).
    Anything else (or unset) falls back to `default`.
    """

    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"0", "false", "off", "no"}:
        return False
    if value in {"1", "true", "on", "yes"}:
        return True
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


# Application constants
API_PREFIX = "/api"
APP_NAME = "Clinic Room Booking API"
APP_VERSION = "1.0.0"

# Feature flags
ENABLE_EMAIL_WORKER: bool = _env_flag("ENABLE_EMAIL_WORKER", default=False)
ENABLE_ROOM_SEED: bool = _env_flag("ENABLE_ROOM_SEED", default=True)

# Payments (Stripe)
PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "usd").lower()
STRIPE_TIMEOUT_SECONDS = _env_float("STRIPE_TIMEOUT_SECONDS", 10.0)
STRIPE_MAX_NETWORK_RETRIES = _env_int("STRIPE_MAX_NETWORK_RETRIES", 2)

# Links in outgoing emails
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/")

# Booking drafts
DRAFT_TTL_HOURS = _env_int("DRAFT_TTL_HOURS", 24)

# Auth
ACCESS_TOKEN_MINUTES = _env_int("ACCESS_TOKEN_MINUTES", 60 * 12)


def cors_origins() -> list[str]:
    return [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]
