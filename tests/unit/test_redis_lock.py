import pytest

from paperpulse.domain.errors import LockNotAcquiredError
from paperpulse.infrastructure.redis.lock import RedisLock, hold_lock
from tests.fakes import FakeRedis


@pytest.mark.asyncio
async def test_second_holder_is_refused_until_release():
    redis = FakeRedis()
    first = RedisLock(redis, "gap-sweep", ttl_ms=1000)
    second = RedisLock(redis, "gap-sweep", ttl_ms=1000)

    assert await first.acquire()
    assert redis.expiry["lock:gap-sweep"] == 1000
    assert not await second.acquire()

    assert await first.release()
    assert await second.acquire()


@pytest.mark.asyncio
async def test_release_does_not_delete_someone_elses_lock():
    redis = FakeRedis()
    lock = RedisLock(redis, "gap-sweep")
    assert await lock.acquire()
    # TTL ran out and another process took the lock
    redis.data["lock:gap-sweep"] = "other-token"
    assert not await lock.release()
    assert redis.data["lock:gap-sweep"] == "other-token"


@pytest.mark.asyncio
async def test_hold_lock_releases_on_error():
    redis = FakeRedis()
    with pytest.raises(RuntimeError):
        async with hold_lock(redis, "sweep"):
            raise RuntimeError("boom")
    assert "lock:sweep" not in redis.data

    async with hold_lock(redis, "sweep"):
        with pytest.raises(LockNotAcquiredError):
            async with hold_lock(redis, "sweep"):
                pass
