"""
Redis-backed runtime configuration.

Scalar flags live under plain keys; each write also stores
``<key>_updated_at`` for audit. Changes are announced on a pub/sub channel
so other processes can drop their cached values.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from loguru import logger
from redis.asyncio import Redis

CONFIG_CHANNEL = "config:updates"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RedisConfigStore:
    def __init__(self, redis: Redis, *, channel: str = CONFIG_CHANNEL):
        self._redis = redis
        self.channel = channel

    async def get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        keys = list(keys)
        values = await self._redis.mget(keys)
        return dict(zip(keys, values))

    async def set(self, key: str, value: str) -> str:
        """Write a value plus its audit timestamp; returns the timestamp."""
        updated_at = _now_iso()
        await self._redis.mset({key: value, f"{key}_updated_at": updated_at})
        logger.info(f"config {key} set to {value!r} at {updated_at}")
        return updated_at

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._redis.delete(*keys)
            logger.info(f"config keys deleted: {', '.join(keys)}")

    async def publish(self, key: str, value: Any, updated_at: str) -> int:
        message = json.dumps({"key": key, "value": value, "updated_at": updated_at})
        receivers = await self._redis.publish(self.channel, message)
        logger.debug(f"published {key} change to {receivers} subscriber(s)")
        return int(receivers or 0)
