from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pymongo.errors import DuplicateKeyError

from clinic_rooms.auth import create_access_token, get_current_user, hash_password, public_user, verify_password
from clinic_rooms.db import get_db
from clinic_rooms.repositories.user_repository import UserRepository
from clinic_rooms.schemas import AuthUser, LoginRequest, LoginResponse, RegisterRequest

logger = logging.getLogger("clinic_rooms.auth")

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _login_response(user: dict) -> LoginResponse:
    out = public_user(user)
    token = create_access_token(subject=out["id"], role=out.get("role") or "user")
    return LoginResponse(
        access_token=token,
        user=AuthUser(
            id=out["id"],
            email=out["email"],
            first_name=out.get("first_name") or "",
            last_name=out.get("last_name") or "",
            role=out.get("role") or "user",
            is_verified=bool(out.get("is_verified")),
        ),
    )


@router.post("/register", response_model=LoginResponse, status_code=201)
async def register(payload: RegisterRequest, db=Depends(get_db)):
    users = UserRepository(db)
    if await users.get_by_email(payload.email):
        raise HTTPException(status_code=409, detail="Email already registered")

    try:
        user_id = await users.create(
            {
                "email": payload.email,
                "first_name": payload.first_name,
                "last_name": payload.last_name,
                "phone_number": payload.phone_number,
                "password_hash": hash_password(payload.password),
            }
        )
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email already registered")

    logger.info("Registered user %s", user_id)
    return _login_response(await users.get_by_id(user_id))


@router.post("/login", response_model=LoginResponse)
async def login(payload: LoginRequest, db=Depends(get_db)):
    user = await UserRepository(db).get_by_email(payload.email)
    if not user or not verify_password(payload.password, user.get("password_hash") or ""):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return _login_response(user)


@router.get("/me")
async def me(user=Depends(get_current_user)):
    return user
