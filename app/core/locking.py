"""Distributed per-user locking using Redis.

Serializes read-modify-write sequences on a user's subscription ledger across
every running instance. Built on ``redis.asyncio.lock.Lock``:
- Lock acquisition via SET NX with a TTL (auto-release if the holder crashes)
- Ownership tokens, checked and deleted atomically on release
- Polling acquire with a bounded wait
"""

import time
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import redis.asyncio as redis
import structlog
from redis.asyncio.lock import Lock
from redis.exceptions import LockNotOwnedError, RedisError

from app.core.exceptions import LockTimeoutError

logger = structlog.get_logger(__name__)


class UserLock:
    """Manages per-user ledger locks in Redis."""

    LOCK_PREFIX = "billing:user-lock:"
    DEFAULT_TTL = 30
    POLL_INTERVAL = 0.05

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl: int | None = None,
        wait_timeout: float = 10.0,
        poll_interval: float | None = None,
    ):
        self.redis = redis_client
        self.ttl = ttl or self.DEFAULT_TTL
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval or self.POLL_INTERVAL

    def _lock_key(self, user_id: str) -> str:
        return f"{self.LOCK_PREFIX}{user_id}"

    def _lock(self, user_id: str) -> Lock:
        return self.redis.lock(
            self._lock_key(user_id),
            timeout=self.ttl,
            sleep=self.poll_interval,
            blocking_timeout=self.wait_timeout,
            thread_local=False,
        )

    async def acquire(self, user_id: str, token: str) -> bool:
        """Attempt to take the lock once.

        Returns:
            True if the lock is now held by ``token``
        """
        return await self._lock(user_id).acquire(blocking=False, token=token)

    async def release(self, user_id: str, token: str) -> bool:
        """Release the lock if ``token`` still owns it.

        Returns:
            True if released, False if the lock expired or changed hands
        """
        try:
            await self._lock(user_id).do_release(token)
        except LockNotOwnedError:
            logger.warning("user_lock_lost_before_release", user_id=user_id)
            return False
        return True

    async def is_locked(self, user_id: str) -> bool:
        return bool(await self.redis.exists(self._lock_key(user_id)))

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncGenerator[str, None]:
        """Hold the user's lock for the duration of the block.

        Waits up to ``wait_timeout`` seconds for a concurrent holder to finish.
        A failed release is logged, not raised: the work inside the block has
        already happened and the TTL frees the key.

        Yields:
            The ownership token

        Raises:
            LockTimeoutError: If the lock is still held by someone else after the wait

        Example:
            async with user_lock.hold(user_id):
                await ledger.upsert_active_period(session, user_id, plan, payment)
        """
        token = uuid.uuid4().hex
        start = time.monotonic()

        if not await self._lock(user_id).acquire(token=token):
            raise LockTimeoutError(user_id, time.monotonic() - start)

        try:
            yield token
        finally:
            try:
                await self.release(user_id, token)
            except (RedisError, OSError) as exc:
                logger.error("user_lock_release_failed", user_id=user_id, ttl=self.ttl, error=str(exc))
