from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent

# Load .env only if exists (development fallback)
env_path = ROOT_DIR / ".env"
if env_path.exists():
    load_dotenv(env_path)

from fastapi import Depends, FastAPI  # noqa: E402
from pymongo.errors import PyMongoError  # noqa: E402
from starlette.middleware.cors import CORSMiddleware  # noqa: E402

from clinic_rooms.config import APP_NAME, APP_VERSION, ENABLE_EMAIL_WORKER, cors_origins  # noqa: E402
from clinic_rooms.db import close_mongo, connect_mongo, get_db  # noqa: E402
from clinic_rooms.email_worker import email_dispatch_loop  # noqa: E402
from clinic_rooms.exception_handlers import register_exception_handlers  # noqa: E402
from clinic_rooms.middleware.correlation_id import CorrelationIdMiddleware  # noqa: E402
from clinic_rooms.routers.auth import router as auth_router  # noqa: E402
from clinic_rooms.routers.bookings import router as bookings_router  # noqa: E402
from clinic_rooms.routers.payments import router as payments_router  # noqa: E402
from clinic_rooms.routers.payments_stripe import router as payments_stripe_router  # noqa: E402
from clinic_rooms.routers.rooms import router as rooms_router  # noqa: E402
from clinic_rooms.seed import ensure_seed_data  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("clinic_rooms")

app = FastAPI(title=APP_NAME, version=APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)

# Routers (/api prefix is on each router)
app.include_router(auth_router)
app.include_router(rooms_router)
app.include_router(bookings_router)
app.include_router(payments_router)
app.include_router(payments_stripe_router)

_email_task: Optional[asyncio.Task] = None


@app.get("/api/health")
async def health(db=Depends(get_db)) -> dict[str, Any]:
    """Health check with database ping"""
    try:
        await db.command("ping")
        ok = True
    except PyMongoError as exc:
        logger.warning("Health check ping failed: %s", exc)
        ok = False
    return {"ok": ok, "service": "clinic-rooms"}


@app.on_event("startup")
async def _startup() -> None:
    global _email_task

    await connect_mongo()
    await ensure_seed_data(await get_db())
    logger.info("Startup complete")

    if ENABLE_EMAIL_WORKER:
        _email_task = asyncio.create_task(email_dispatch_loop())


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _email_task is not None:
        _email_task.cancel()
    await close_mongo()
    logger.info("Shutdown complete")
