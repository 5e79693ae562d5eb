"""AccountRunGuard and RedisRunLock tests."""

from unittest.mock import AsyncMock

import pytest

from crm_sync.application.use_cases.sync.run_guard import AccountRunGuard
from crm_sync.domain.exceptions import SyncInProgressException
from crm_sync.infrastructure.cache.redis_lock import RedisRunLock


async def test_second_hold_for_same_account_is_refused():
    guard = AccountRunGuard()

    async with guard.hold("cred-1"):
        assert guard.is_running("cred-1")
        with pytest.raises(SyncInProgressException):
            async with guard.hold("cred-1"):
                pass
        async with guard.hold("cred-2"):
            pass

    assert not guard.is_running("cred-1")


async def test_hold_is_released_when_body_raises():
    guard = AccountRunGuard()

    with pytest.raises(RuntimeError):
        async with guard.hold("cred-1"):
            raise RuntimeError("boom")

    assert not guard.is_running("cred-1")


async def test_distributed_lock_is_taken_and_released():
    lock = AsyncMock()
    lock.acquire.return_value = "token-1"
    guard = AccountRunGuard(lock, ttl_seconds=60)

    async with guard.hold("cred-1"):
        lock.acquire.assert_awaited_once_with("sync-run:cred-1", 60)

    lock.release.assert_awaited_once_with("sync-run:cred-1", "token-1")


async def test_lock_held_by_another_worker_refuses_run():
    lock = AsyncMock()
    lock.acquire.return_value = None
    guard = AccountRunGuard(lock)

    with pytest.raises(SyncInProgressException):
        async with guard.hold("cred-1"):
            pass

    lock.release.assert_not_awaited()
    assert not guard.is_running("cred-1")


async def test_redis_lock_uses_set_nx_with_ttl(settings):
    client = AsyncMock()
    client.set.return_value = True
    run_lock = RedisRunLock(client, settings)

    token = await run_lock.acquire("sync-run:cred-1", 30)

    assert token
    client.set.assert_awaited_once_with("crm_sync:sync-run:cred-1", token, nx=True, px=30_000)


async def test_redis_lock_returns_none_when_taken(settings):
    client = AsyncMock()
    client.set.return_value = None

    assert await RedisRunLock(client, settings).acquire("k", 30) is None


async def test_redis_release_compares_token(settings):
    client = AsyncMock()
    client.eval.return_value = 1
    run_lock = RedisRunLock(client, settings)

    await run_lock.release("k", "tok")

    args = client.eval.await_args.args
    assert args[1:] == (1, "crm_sync:k", "tok")


async def test_unconnected_redis_lock_refuses_acquire(settings):
    with pytest.raises(RuntimeError):
        await RedisRunLock(None, settings).acquire("k", 30)
