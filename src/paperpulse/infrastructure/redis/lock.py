from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis.asyncio import Redis

from paperpulse.domain.errors import LockNotAcquiredError

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:"

# Delete only if the key still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLock:
    """
    Expiring mutual-exclusion lock (SET NX PX with an owner token).

    The TTL bounds how long a crashed holder can block others.
    """

    def __init__(self, redis: Redis, name: str, *, ttl_ms: int = 10 * 60 * 1000):
        self._redis = redis
        self.key = f"{LOCK_PREFIX}{name}"
        self.ttl_ms = ttl_ms
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._token is not None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        ok = await self._redis.set(self.key, token, nx=True, px=self.ttl_ms)
        if ok:
            self._token = token
            return True
        return False

    async def release(self) -> bool:
        if self._token is None:
            return False
        token, self._token = self._token, None
        deleted = await self._redis.eval(_RELEASE_SCRIPT, 1, self.key, token)
        if not deleted:
            logger.warning("Lock %s expired before release", self.key)
        return bool(deleted)


@asynccontextmanager
async def hold_lock(redis: Redis, name: str, *, ttl_ms: int = 10 * 60 * 1000) -> AsyncIterator[RedisLock]:
    """Acquire ``name`` or raise LockNotAcquiredError; always released on exit."""
    lock = RedisLock(redis, name, ttl_ms=ttl_ms)
    if not await lock.acquire():
        raise LockNotAcquiredError(f"lock {name} is held by another process")
    try:
        yield lock
    finally:
        await lock.release()
