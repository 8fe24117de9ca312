import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from models.generation_lock import GenerationLock
from services.generation_lock import (
    acquire_generation_lock,
    list_active_locks,
    release_generation_lock,
    update_generation_lock,
)


USER_ID = "lock-user"


async def _acquire(session_maker, asset_type: str = "image", **kwargs):
    async with session_maker() as db:
        return await acquire_generation_lock(USER_ID, db, asset_type=asset_type, **kwargs)


async def _lock_rows(session_maker):
    async with session_maker() as db:
        result = await db.execute(select(GenerationLock).where(GenerationLock.user_id == USER_ID))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_concurrent_acquire_admits_exactly_one(session_maker, make_user):
    await make_user(USER_ID)
    first, second = await asyncio.gather(
        _acquire(session_maker, request_id="req-a"),
        _acquire(session_maker, request_id="req-b"),
    )

    results = [first, second]
    winners = [result for result in results if result.acquired]
    losers = [result for result in results if not result.acquired]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].existing_lock is not None
    assert losers[0].existing_lock.id == winners[0].lock_id
    assert losers[0].existing_lock.expires_at > datetime.now(timezone.utc)

    async with session_maker() as db:
        count = await db.execute(select(func.count()).select_from(GenerationLock))
        assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_busy_lock_reports_holder_details(session_maker, make_user):
    await make_user(USER_ID)
    held = await _acquire(session_maker, request_id="req-1", metadata={"model": "sora-2"})
    assert held.acquired

    blocked = await _acquire(session_maker, request_id="req-2")
    assert blocked.acquired is False
    assert blocked.lock_id is None
    assert blocked.existing_lock.request_id == "req-1"
    assert blocked.existing_lock.metadata == {"model": "sora-2"}
    remaining = blocked.existing_lock.expires_at - datetime.now(timezone.utc)
    assert timedelta(minutes=14) < remaining <= timedelta(minutes=15)


@pytest.mark.asyncio
async def test_asset_types_lock_independently(session_maker, make_user):
    await make_user(USER_ID)
    image = await _acquire(session_maker, "image")
    video = await _acquire(session_maker, "video")

    assert image.acquired
    assert video.acquired
    assert image.lock_id != video.lock_id

    with pytest.raises(ValueError):
        await _acquire(session_maker, "audio")


@pytest.mark.asyncio
async def test_expired_lock_is_reclaimed_on_acquire(session_maker, make_user):
    await make_user(USER_ID)
    stale = await _acquire(session_maker, request_id="crashed", ttl_ms=1)
    assert stale.acquired

    await asyncio.sleep(0.005)
    fresh = await _acquire(session_maker, request_id="retry")

    assert fresh.acquired
    assert fresh.lock_id != stale.lock_id
    rows = await _lock_rows(session_maker)
    assert [row.request_id for row in rows] == ["retry"]


@pytest.mark.asyncio
async def test_release_frees_key_and_is_idempotent(session_maker, make_user):
    await make_user(USER_ID)
    held = await _acquire(session_maker)

    async with session_maker() as db:
        await release_generation_lock(held.lock_id, db)
        await release_generation_lock(held.lock_id, db)
        await release_generation_lock("never-existed", db)

    assert await _lock_rows(session_maker) == []
    again = await _acquire(session_maker)
    assert again.acquired


@pytest.mark.asyncio
async def test_update_attaches_task_and_extends_expiry(session_maker, make_user):
    await make_user(USER_ID)
    held = await _acquire(session_maker, ttl_ms=1000)

    async with session_maker() as db:
        await update_generation_lock(
            held.lock_id,
            db,
            task_id="task-123",
            metadata={"stage": "polling"},
            extend_ms=30 * 60 * 1000,
        )
        await update_generation_lock("missing-lock", db, task_id="ignored")

    rows = await _lock_rows(session_maker)
    assert len(rows) == 1
    assert rows[0].task_id == "task-123"
    assert rows[0].metadata_json == {"stage": "polling"}

    async with session_maker() as db:
        active = await list_active_locks(USER_ID, db)
    assert [lock.task_id for lock in active] == ["task-123"]
    assert active[0].expires_at - datetime.now(timezone.utc) > timedelta(minutes=29)


@pytest.mark.asyncio
async def test_list_active_locks_skips_expired(session_maker, make_user):
    await make_user(USER_ID)
    await _acquire(session_maker, "image", ttl_ms=1)
    await _acquire(session_maker, "video")
    await asyncio.sleep(0.005)

    async with session_maker() as db:
        active = await list_active_locks(USER_ID, db)

    assert [lock.asset_type for lock in active] == ["video"]
