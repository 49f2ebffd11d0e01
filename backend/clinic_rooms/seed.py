from __future__ import annotations

import logging
import os

from clinic_rooms.auth import hash_password
from clinic_rooms.config import ENABLE_ROOM_SEED
from clinic_rooms.indexes.booking_indexes import ensure_booking_indexes
from clinic_rooms.repositories.room_repository import RoomRepository
from clinic_rooms.repositories.user_repository import UserRepository

logger = logging.getLogger("clinic_rooms.seed")


async def ensure_seed_data(db) -> None:
    await ensure_booking_indexes(db)

    if ENABLE_ROOM_SEED:
        inserted = await RoomRepository(db).ensure_default_rooms()
        if inserted:
            logger.info("Seeded %s default rooms", inserted)

    # Optional bootstrap admin, only when both variables are set.
    admin_email = os.environ.get("ADMIN_EMAIL")
    admin_password = os.environ.get("ADMIN_PASSWORD")
    if admin_email and admin_password:
        users = UserRepository(db)
        if not await users.get_by_email(admin_email):
            await users.create(
                {
                    "email": admin_email,
                    "first_name": "Admin",
                    "password_hash": hash_password(admin_password),
                    "role": "admin",
                }
            )
            logger.info("Created bootstrap admin %s", admin_email)
