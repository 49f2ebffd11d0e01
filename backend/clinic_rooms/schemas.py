from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, StrictInt


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=8)
    first_name: str = ""
    last_name: str = ""
    phone_number: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class AuthUser(BaseModel):
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str = "user"
    is_verified: bool = False


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: AuthUser


class RoomSelectionIn(BaseModel):
    room_id: str
    time_slot: str = Field(description="full|morning|evening")
    dates: list[str] = Field(default_factory=list)  # YYYY-MM-DD


class SelectionRequest(BaseModel):
    rooms: list[RoomSelectionIn] = Field(default_factory=list)
    booking_type: str = "daily"


class PaymentIntentRequest(BaseModel):
    rooms: Optional[list[RoomSelectionIn]] = None
    booking_type: str = "daily"
    draft_id: Optional[str] = None
    # Integer cents; a float or string is a request validation error.
    expected_total_cents: Optional[StrictInt] = None


class PaymentIntentResponse(BaseModel):
    client_secret: Optional[str] = None
    payment_intent_id: str
    booking_ids: list[str]
    price: dict[str, Any]


class ReconcileRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)


class SyncRequest(BaseModel):
    limit: int = Field(100, ge=1, le=1000)
    older_than_minutes: Optional[int] = Field(None, ge=0)


class CancelRequest(BaseModel):
    reason: Optional[str] = None
