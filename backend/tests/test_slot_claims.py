from __future__ import annotations

import anyio
import pytest
from bson import ObjectId
from pymongo import ASCENDING
from pymongo.errors import OperationFailure

from clinic_rooms.domain.selections import normalize_selections
from clinic_rooms.errors import BookingConflictError
from clinic_rooms.indexes.booking_indexes import ensure_booking_indexes
from clinic_rooms.repositories.slot_claim_repository import SlotClaimRepository

DAY = "2030-06-03"


def _sel(slot: str, room_id: str = "1", dates=None):
    return normalize_selections([{"room_id": room_id, "time_slot": slot, "dates": dates or [DAY]}])


@pytest.mark.anyio
async def test_full_slot_claims_both_halves(test_db) -> None:
    repo = SlotClaimRepository(test_db)
    booking_id = ObjectId()

    assert await repo.reserve(booking_id, _sel("full", dates=[DAY, "2030-06-04"])) == 4
    claims = await repo.claims_for(booking_id)
    assert sorted((c["date"], c["half"]) for c in claims) == [
        (DAY, "evening"),
        (DAY, "morning"),
        ("2030-06-04", "evening"),
        ("2030-06-04", "morning"),
    ]


@pytest.mark.anyio
async def test_morning_and_evening_coexist_but_full_collides(test_db) -> None:
    repo = SlotClaimRepository(test_db)
    await repo.reserve(ObjectId(), _sel("morning"))
    await repo.reserve(ObjectId(), _sel("evening"))

    with pytest.raises(BookingConflictError) as exc:
        await repo.reserve(ObjectId(), _sel("full"))
    assert exc.value.status_code == 409
    assert exc.value.conflicts


@pytest.mark.anyio
async def test_collision_releases_claims_taken_by_the_losing_request(test_db) -> None:
    repo = SlotClaimRepository(test_db)
    await repo.reserve(ObjectId(), _sel("full", dates=["2030-06-05"]))

    loser = ObjectId()
    with pytest.raises(BookingConflictError):
        # 06-03 and 06-04 are claimed before 06-05 collides.
        await repo.reserve(loser, _sel("full", dates=[DAY, "2030-06-04", "2030-06-05"]))

    assert await repo.claims_for(loser) == []
    # The released dates are bookable again.
    await repo.reserve(ObjectId(), _sel("full", dates=[DAY, "2030-06-04"]))


@pytest.mark.anyio
async def test_release_is_idempotent(test_db) -> None:
    repo = SlotClaimRepository(test_db)
    booking_id = ObjectId()
    await repo.reserve(booking_id, _sel("morning"))

    assert await repo.release([booking_id]) == 1
    assert await repo.release([booking_id]) == 0
    assert await repo.release([]) == 0


@pytest.mark.anyio
async def test_concurrent_reservations_never_share_a_half_day(test_db) -> None:
    repo = SlotClaimRepository(test_db)
    winners: list[str] = []

    async def attempt(slot: str) -> None:
        try:
            await repo.reserve(ObjectId(), _sel(slot))
            winners.append(slot)
        except BookingConflictError:
            pass

    async with anyio.create_task_group() as tg:
        for slot in ["full", "full", "morning", "full", "evening", "morning"] * 2:
            tg.start_soon(attempt, slot)

    claims = await test_db.slot_claims.find({"room_id": "1", "date": DAY}).to_list(length=None)
    halves = [c["half"] for c in claims]
    assert len(halves) == len(set(halves))
    assert winners
    assert len(winners) == len({c["booking_id"] for c in claims})
    if "full" in winners:
        assert winners == ["full"]


@pytest.mark.anyio
async def test_startup_fails_when_slot_claim_index_is_not_unique(test_db) -> None:
    await test_db.slot_claims.drop_index("uniq_room_date_half")
    await test_db.slot_claims.create_index(
        [("room_id", ASCENDING), ("date", ASCENDING), ("half", ASCENDING)],
        name="uniq_room_date_half",
    )

    with pytest.raises(OperationFailure):
        await ensure_booking_indexes(test_db)


@pytest.mark.anyio
async def test_auxiliary_index_conflicts_do_not_block_startup(test_db) -> None:
    await test_db.slot_claims.drop_index("claims_by_booking")
    await test_db.slot_claims.create_index([("booking_id", ASCENDING)], name="claims_by_booking", sparse=True)

    await ensure_booking_indexes(test_db)
