"""
Config-change message channel.

A dedicated Redis connection subscribes to the config channel; each message
is decoded into a ConfigEvent and handed to every registered handler.
If the connection drops the listener resubscribes with exponential backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from paperpulse.infrastructure.redis.config_store import CONFIG_CHANNEL

logger = logging.getLogger(__name__)

RECONNECT_MIN_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 30.0


@dataclass(frozen=True)
class ConfigEvent:
    key: str
    value: Any
    updated_at: Optional[str] = None

    @classmethod
    def from_message(cls, data: Any) -> "ConfigEvent":
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        payload = json.loads(data)
        if not isinstance(payload, dict) or "key" not in payload:
            raise ValueError(f"config message without key: {data!r}")
        return cls(
            key=str(payload["key"]),
            value=payload.get("value"),
            updated_at=payload.get("updated_at") or payload.get("updatedAt"),
        )


ConfigHandler = Callable[[ConfigEvent], Awaitable[None]]


class ConfigChannel:
    def __init__(self, subscriber: Redis, *, channel: str = CONFIG_CHANNEL):
        self._subscriber = subscriber
        self._channel = channel
        self._handlers: List[ConfigHandler] = []
        self._task: Optional[asyncio.Task] = None
        self._pubsub = None

    def register(self, handler: ConfigHandler) -> None:
        self._handlers.append(handler)

    async def dispatch(self, data: Any) -> Optional[ConfigEvent]:
        """Decode one raw message and run every handler; bad messages are logged and dropped."""
        try:
            event = ConfigEvent.from_message(data)
        except ValueError as e:
            logger.error("Failed to parse config message: %s", e)
            return None
        for handler in self._handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception("Config handler %r failed for %s", handler, event.key)
        return event

    async def start(self) -> None:
        if self._task is not None:
            return
        await self._subscribe()
        self._task = asyncio.create_task(self._listen(), name="config-channel")

    async def _subscribe(self) -> None:
        self._pubsub = self._subscriber.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.subscribe(self._channel)
        logger.info("Subscribed to %s", self._channel)

    async def _drop_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except RedisError as e:
            logger.debug("Closing broken config subscription: %s", e)

    async def _listen(self) -> None:
        """Read messages until stopped; a dropped connection is resubscribed with backoff."""
        delay = RECONNECT_MIN_SECONDS
        while True:
            try:
                if self._pubsub is None:
                    await self._subscribe()
                async for message in self._pubsub.listen():
                    delay = RECONNECT_MIN_SECONDS
                    if message.get("type") == "message":
                        await self.dispatch(message.get("data"))
                reason = "subscription ended"
            except (RedisConnectionError, RedisTimeoutError) as e:
                reason = str(e) or type(e).__name__
            logger.warning("Config channel lost (%s); resubscribing in %.1fs", reason, delay)
            await self._drop_pubsub()
            await asyncio.sleep(delay)
            delay = min(delay * 2, RECONNECT_MAX_SECONDS)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
            self._pubsub = None
        await self._subscriber.aclose()
