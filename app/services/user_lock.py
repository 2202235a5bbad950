"""
Per-User Update Lock
====================

Serializes read-modify-write cycles on a single user record across workers.

Stripe delivers events for the same customer concurrently and out of order,
and the store has no compare-and-swap, so two events for one user would
otherwise race between reading the record and writing it back.
``RedisUserLock`` holds a short Redis lock per ``user_id`` around the cycle.

If Redis itself is unreachable the update proceeds unlocked (logged); the
transitions are idempotent and the outcome is last-write-wins. If the lock is
held by someone else for longer than the wait, the event fails as
``StoreUnavailableError`` so Stripe redelivers it later.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Protocol

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from app.config import settings
from app.services.user_store import StoreUnavailableError

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """
    Initialize Redis connection pool and pre-warm a connection.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        await _redis_client.ping()
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Redis:
    """Get Redis client, initializing if necessary."""
    if _redis_client is None:
        return await init_redis()

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


def user_lock_key(user_id: str) -> str:
    """Redis key guarding one user's billing fields."""
    return f"lock:billing:user:{user_id}"


class UserLock(Protocol):
    def hold(self, user_id: str) -> AsyncIterator[None]:
        ...


class NullUserLock:
    """No serialization; used when Redis is not configured and in tests."""

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        yield


class RedisUserLock:
    """Redis-backed per-user lock."""

    def __init__(
        self,
        timeout: float = settings.USER_LOCK_TIMEOUT_SECONDS,
        wait: float = settings.USER_LOCK_WAIT_SECONDS,
    ):
        self.timeout = timeout
        self.wait = wait

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        """
        Hold the lock for ``user_id`` for the duration of the block.

        Raises:
            StoreUnavailableError: The lock could not be acquired in time.
        """
        lock = None
        try:
            client = await get_redis()
            lock = client.lock(
                user_lock_key(user_id),
                timeout=self.timeout,
                blocking_timeout=self.wait,
            )
            acquired = await lock.acquire()
        except RedisError as exc:
            logger.warning(
                "Redis lock unavailable for user=%s, updating unlocked: %s",
                user_id,
                exc,
            )
            lock = None
        else:
            if not acquired:
                raise StoreUnavailableError(
                    f"Timed out waiting for update lock on user {user_id}"
                )

        try:
            yield
        finally:
            if lock is not None:
                try:
                    await lock.release()
                except (LockError, RedisError) as exc:
                    # Expired mid-update or Redis dropped; the write already happened
                    logger.warning("Releasing lock for user=%s failed: %s", user_id, exc)
