"""
Per-User Lock Tests
===================

``RedisUserLock`` with the Redis client mocked out.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockNotOwnedError

from app.services.user_lock import RedisUserLock, user_lock_key
from app.services.user_store import StoreUnavailableError


def _redis_with_lock(acquired: bool = True):
    lock = MagicMock()
    lock.acquire = AsyncMock(return_value=acquired)
    lock.release = AsyncMock()
    client = MagicMock()
    client.lock.return_value = lock
    return client, lock


class TestRedisUserLock:

    @pytest.mark.asyncio
    async def test_acquires_and_releases(self):
        client, lock = _redis_with_lock()

        with patch("app.services.user_lock.get_redis", AsyncMock(return_value=client)):
            async with RedisUserLock(timeout=10, wait=5).hold("user_1"):
                lock.release.assert_not_awaited()

        client.lock.assert_called_once_with(
            "lock:billing:user:user_1", timeout=10, blocking_timeout=5
        )
        lock.acquire.assert_awaited_once()
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_released_when_block_raises(self):
        client, lock = _redis_with_lock()

        with patch("app.services.user_lock.get_redis", AsyncMock(return_value=client)):
            with pytest.raises(RuntimeError):
                async with RedisUserLock().hold("user_1"):
                    raise RuntimeError("write failed")

        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_wait_timeout_is_store_unavailable(self):
        client, lock = _redis_with_lock(acquired=False)
        entered = False

        with patch("app.services.user_lock.get_redis", AsyncMock(return_value=client)):
            with pytest.raises(StoreUnavailableError):
                async with RedisUserLock().hold("user_1"):
                    entered = True

        assert entered is False
        lock.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_redis_down_runs_unlocked(self):
        entered = False
        get_redis = AsyncMock(side_effect=RedisConnectionError("connection refused"))

        with patch("app.services.user_lock.get_redis", get_redis):
            async with RedisUserLock().hold("user_1"):
                entered = True

        assert entered is True

    @pytest.mark.asyncio
    async def test_expired_lock_release_is_logged_not_raised(self):
        client, lock = _redis_with_lock()
        lock.release.side_effect = LockNotOwnedError("lock expired")

        with patch("app.services.user_lock.get_redis", AsyncMock(return_value=client)):
            async with RedisUserLock().hold("user_1"):
                pass

        lock.release.assert_awaited_once()


def test_lock_key():
    assert user_lock_key("user_1") == "lock:billing:user:user_1"
