"""Tests for the per-user Redis ledger lock."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.exceptions import LockTimeoutError
from app.core.locking import UserLock

pytestmark = pytest.mark.unit


async def test_acquire_and_release(redis):
    lock = UserLock(redis)

    assert await lock.acquire("u1", "token-a") is True
    assert await lock.is_locked("u1") is True
    assert await lock.release("u1", "token-a") is True
    assert await lock.is_locked("u1") is False


async def test_second_acquire_fails_while_held(redis):
    lock = UserLock(redis)
    await lock.acquire("u1", "token-a")

    assert await lock.acquire("u1", "token-b") is False


async def test_locks_are_per_user(redis):
    lock = UserLock(redis)
    await lock.acquire("u1", "token-a")

    assert await lock.acquire("u2", "token-b") is True


async def test_release_with_wrong_token_keeps_lock(redis):
    lock = UserLock(redis)
    await lock.acquire("u1", "token-a")

    assert await lock.release("u1", "token-b") is False
    assert await lock.is_locked("u1") is True


async def test_lock_has_ttl(redis):
    lock = UserLock(redis, ttl=12)
    await lock.acquire("u1", "token-a")

    ttl = await redis.ttl(f"{UserLock.LOCK_PREFIX}u1")
    assert 0 < ttl <= 12


async def test_hold_releases_on_exit(redis):
    lock = UserLock(redis)

    async with lock.hold("u1"):
        assert await lock.is_locked("u1") is True

    assert await lock.is_locked("u1") is False


async def test_hold_releases_on_error(redis):
    lock = UserLock(redis)

    with pytest.raises(ValueError):
        async with lock.hold("u1"):
            raise ValueError("boom")

    assert await lock.is_locked("u1") is False


async def test_hold_times_out(redis):
    lock = UserLock(redis, wait_timeout=0.05, poll_interval=0.01)
    await lock.acquire("u1", "someone-else")

    with pytest.raises(LockTimeoutError) as exc_info:
        async with lock.hold("u1"):
            pass

    assert exc_info.value.user_id == "u1"


async def test_hold_serialises_critical_sections(redis):
    lock = UserLock(redis, wait_timeout=5.0, poll_interval=0.005)
    inside = 0
    max_inside = 0

    async def critical():
        nonlocal inside, max_inside
        async with lock.hold("u1"):
            inside += 1
            max_inside = max(max_inside, inside)
            await asyncio.sleep(0.01)
            inside -= 1

    await asyncio.gather(*(critical() for _ in range(5)))

    assert max_inside == 1


async def test_release_after_expiry_keeps_new_holders_lock(redis):
    lock = UserLock(redis, ttl=30)
    await lock.acquire("u1", "token-a")
    # TTL ran out and another instance took the lock
    await redis.delete(f"{UserLock.LOCK_PREFIX}u1")
    assert await lock.acquire("u1", "token-b") is True

    assert await lock.release("u1", "token-a") is False
    assert await redis.get(f"{UserLock.LOCK_PREFIX}u1") == "token-b"


async def test_hold_swallows_release_failure(redis):
    lock = UserLock(redis)
    ran = False

    with patch.object(UserLock, "release", AsyncMock(side_effect=RedisConnectionError("redis gone"))):
        async with lock.hold("u1"):
            ran = True

    assert ran is True
