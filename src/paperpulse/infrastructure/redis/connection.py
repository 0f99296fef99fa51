from __future__ import annotations

import os
from typing import Optional

from arq.connections import RedisSettings
from redis.asyncio import Redis


def redis_settings() -> RedisSettings:
    return RedisSettings(
        host=os.getenv("PAPERPULSE_REDIS_HOST", "127.0.0.1"),
        port=int(os.getenv("PAPERPULSE_REDIS_PORT", "6379")),
        database=int(os.getenv("PAPERPULSE_REDIS_DB", "0")),
        password=os.getenv("PAPERPULSE_REDIS_PASSWORD") or None,
    )


def create_redis(settings: Optional[RedisSettings] = None) -> Redis:
    """
    Plain redis-py client for config, locks and pub/sub.

    Each call returns a new connection pool; a client used for SUBSCRIBE
    must not be shared with regular commands.
    """
    settings = settings or redis_settings()
    return Redis(
        host=settings.host,
        port=settings.port,
        db=settings.database,
        password=settings.password,
        decode_responses=True,
    )
