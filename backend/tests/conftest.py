"""Shared test configuration and fixtures for backend tests.

Key principles:
- All HTTP calls go through the local ASGI app (httpx + ASGITransport).
- Single Motor/Mongo client per test session; tests needing MongoDB are
  skipped when it is not reachable.
- Every DB test gets its own throwaway database with indexes and rooms.
- Stripe is never called: `fake_stripe` replaces the adapter functions.
- AnyIO is the single async runner (@pytest.mark.anyio).
"""

import hashlib
import hmac
import json
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import pytest
from httpx import ASGITransport
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

# Ensure backend root is on sys.path so that `server` module is importable
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")

from server import app  # noqa: E402
from clinic_rooms.auth import create_access_token, hash_password  # noqa: E402
from clinic_rooms.db import get_db  # noqa: E402
from clinic_rooms.errors import PaymentProviderError  # noqa: E402
from clinic_rooms.indexes.booking_indexes import ensure_booking_indexes  # noqa: E402
from clinic_rooms.repositories.room_repository import RoomRepository  # noqa: E402
from clinic_rooms.repositories.user_repository import UserRepository  # noqa: E402
from clinic_rooms.services import stripe_adapter  # noqa: E402


MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""

    return "asyncio"


@pytest.fixture(scope="session")
async def motor_client() -> AsyncGenerator[AsyncIOMotorClient, None]:
    client = AsyncIOMotorClient(MONGO_URL, tz_aware=True, serverSelectionTimeoutMS=2000)
    try:
        await client.admin.command("ping")
    except PyMongoError as exc:
        client.close()
        pytest.skip(f"MongoDB not reachable at {MONGO_URL}: {exc}")
    try:
        yield client
    finally:
        client.close()


@pytest.fixture(scope="function")
async def test_db(motor_client: AsyncIOMotorClient) -> AsyncGenerator[Any, None]:
    """Function-scoped isolated database with indexes and default rooms."""

    db_name = f"clinic_rooms_test_{uuid.uuid4().hex}"
    db = motor_client[db_name]
    await ensure_booking_indexes(db)
    await RoomRepository(db).ensure_default_rooms()
    try:
        yield db
    finally:
        await motor_client.drop_database(db_name)


@pytest.fixture(scope="function")
async def app_with_overrides(test_db) -> AsyncGenerator[Any, None]:
    """FastAPI app instance whose get_db dependency points to test_db."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield app
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def async_client(app_with_overrides) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = ASGITransport(app=app_with_overrides)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=30.0) as client:
        yield client


async def create_user(db, *, email: str, role: str = "user", is_verified: bool = False, **extra: Any) -> Dict[str, Any]:
    users = UserRepository(db)
    user_id = await users.create(
        {
            "email": email,
            "first_name": extra.pop("first_name", "Test"),
            "last_name": extra.pop("last_name", "User"),
            "password_hash": hash_password(extra.pop("password", "password123")),
            "role": role,
        }
    )
    updates: Dict[str, Any] = dict(extra)
    if is_verified:
        updates["is_verified"] = True
    if updates:
        await db.users.update_one({"_id": user_id}, {"$set": updates})
    return await users.get_by_id(user_id)


def auth_headers(user: Dict[str, Any]) -> Dict[str, str]:
    token = create_access_token(subject=str(user["_id"]), role=user.get("role") or "user")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def user(test_db) -> Dict[str, Any]:
    return await create_user(test_db, email="doctor@example.com")


@pytest.fixture
async def admin(test_db) -> Dict[str, Any]:
    return await create_user(test_db, email="admin@example.com", role="admin", is_verified=True)


@pytest.fixture
def user_headers(user) -> Dict[str, str]:
    return auth_headers(user)


@pytest.fixture
def admin_headers(admin) -> Dict[str, str]:
    return auth_headers(admin)


class FakeStripe:
    """In-memory stand-in for the Stripe adapter functions."""

    def __init__(self) -> None:
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.create_calls: List[Dict[str, Any]] = []
        self.fail_create = False
        self.fail_retrieve = False

    async def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.create_calls.append(
            {"amount_cents": amount_cents, "currency": currency, "metadata": dict(metadata), "idempotency_key": idempotency_key}
        )
        if self.fail_create:
            raise PaymentProviderError("Payment service error: timeout", {"operation": "create_payment_intent"})
        pi_id = f"pi_test_{len(self.intents) + 1}"
        intent = {
            "id": pi_id,
            "object": "payment_intent",
            "amount": amount_cents,
            "amount_received": 0,
            "currency": currency,
            "metadata": dict(metadata),
            "status": "requires_payment_method",
            "client_secret": f"{pi_id}_secret_test",
            "last_payment_error": None,
        }
        self.intents[pi_id] = intent
        return dict(intent)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        if self.fail_retrieve:
            raise PaymentProviderError("Payment service error: timeout", {"operation": "retrieve_payment_intent"})
        return dict(self.intents[payment_intent_id])

    def settle(self, pi_id: str, status: str = "succeeded", error: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        intent = self.intents[pi_id]
        intent["status"] = status
        if status == "succeeded":
            intent["amount_received"] = intent["amount"]
        intent["last_payment_error"] = error
        return dict(intent)


@pytest.fixture
def fake_stripe(monkeypatch) -> FakeStripe:
    fake = FakeStripe()
    monkeypatch.setattr(stripe_adapter, "create_payment_intent", fake.create_payment_intent)
    monkeypatch.setattr(stripe_adapter, "retrieve_payment_intent", fake.retrieve_payment_intent)
    return fake


def payment_intent_event(intent: Dict[str, Any], event_type: str, event_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "data": {"object": intent},
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook payloads."""

    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload}".encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def signed_event_request(event: Dict[str, Any]) -> Dict[str, Any]:
    payload = json.dumps(event)
    return {
        "content": payload,
        "headers": {"Stripe-Signature": sign_payload(payload), "Content-Type": "application/json"},
    }


def selection(room_id: str = "1", time_slot: str = "full", dates: Optional[List[str]] = None) -> Dict[str, Any]:
    return {"room_id": room_id, "time_slot": time_slot, "dates": dates or ["2030-06-03"]}
