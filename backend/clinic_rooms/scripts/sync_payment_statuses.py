"""Sweep pending bookings and reconcile their Stripe PaymentIntents.

Covers webhooks that never arrived. Uses the same reconciliation path as the
webhook, so running it repeatedly (or concurrently with webhook delivery) is
safe.

    python -m clinic_rooms.scripts.sync_payment_statuses --limit 200
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Dict, Optional

from clinic_rooms.db import close_mongo, get_db
from clinic_rooms.services.stripe_handlers import sync_pending_payments

logger = logging.getLogger("sync_payment_statuses")


async def sync_payment_statuses(limit: int = 100, older_than_minutes: Optional[int] = None) -> Dict[str, Any]:
    db = await get_db()
    try:
        return await sync_pending_payments(db, limit=limit, older_than_minutes=older_than_minutes)
    finally:
        await close_mongo()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0] if __doc__ else None)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--older-than-minutes", type=int, default=None)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    summary = asyncio.run(sync_payment_statuses(limit=args.limit, older_than_minutes=args.older_than_minutes))
    logger.info("Checked %s intent(s): %s applied, %s no-op, %s error(s)", summary["checked"], summary["applied"], summary["noop"], len(summary["errors"]))


if __name__ == "__main__":
    main()
