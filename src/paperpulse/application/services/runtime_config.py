"""
Runtime AI toggle and v3 analysis settings.

Resolution order for the AI toggle: Redis value, then the AI_ENABLED
environment default (also used when Redis is unreachable). Reads are cached
in-process for a short TTL; local writes and change events from other
processes invalidate the cache. The v3 settings resolve the same way, with
PAPERPULSE_V3_* environment defaults.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from redis.exceptions import RedisError

from paperpulse.infrastructure.redis.config_channel import ConfigEvent
from paperpulse.infrastructure.redis.config_store import RedisConfigStore
from paperpulse.utils.env import env_bool, env_int, parse_bool
from paperpulse.utils.logging_config import LogFiles, Logger

logger = logging.getLogger(__name__)

AI_ENABLED_KEY = "config:ai_enabled"
AI_ENABLED_UPDATED_AT_KEY = "config:ai_enabled_updated_at"

V3_DAILY_BUDGET_KEY = "analysis_v3:daily_budget_cents"
V3_MONTHLY_BUDGET_KEY = "analysis_v3:monthly_budget_cents"
V3_AUTO_ENABLED_KEY = "analysis_v3:auto_enabled"
V3_PAUSED_KEY = "analysis_v3:paused"
V3_PAUSE_REASON_KEY = "analysis_v3:pause_reason"

DEFAULT_DAILY_BUDGET_CENTS = 500
DEFAULT_MONTHLY_BUDGET_CENTS = 15000
CACHE_TTL_SECONDS = 5.0


@dataclass
class AnalysisV3Config:
    daily_budget_cents: int = DEFAULT_DAILY_BUDGET_CENTS
    monthly_budget_cents: int = DEFAULT_MONTHLY_BUDGET_CENTS
    auto_enabled: bool = False
    paused: bool = False
    pause_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _int_or(raw: Optional[str], default: int) -> int:
    if raw is None or raw == "":
        return default
    return int(raw)


class RuntimeConfigService:
    def __init__(
        self,
        store: RedisConfigStore,
        *,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        env_default: Optional[bool] = None,
    ):
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._env_default = env_default
        self._cached: Optional[bool] = None
        self._cached_at = 0.0

    @property
    def env_default(self) -> bool:
        if self._env_default is not None:
            return self._env_default
        return env_bool("AI_ENABLED", False)

    def invalidate(self) -> None:
        self._cached = None
        self._cached_at = 0.0

    def _remember(self, value: bool) -> bool:
        self._cached = value
        self._cached_at = self._clock()
        return value

    # ------------------------------------------------------------------
    # AI toggle
    # ------------------------------------------------------------------

    async def get_ai_enabled(self, *, skip_cache: bool = False) -> bool:
        if not skip_cache and self._cached is not None and self._clock() - self._cached_at < self._ttl:
            return self._cached
        try:
            value = await self._store.get(AI_ENABLED_KEY)
        except RedisError as e:
            logger.error("Redis read failed, falling back to AI_ENABLED: %s", e)
            return self._remember(self.env_default)
        if value is None:
            return self._remember(self.env_default)
        return self._remember(value == "true")

    async def get_ai_toggle_info(self) -> Dict[str, Any]:
        try:
            values = await self._store.get_many([AI_ENABLED_KEY, AI_ENABLED_UPDATED_AT_KEY])
        except RedisError as e:
            logger.error("Redis read failed: %s", e)
            values = {}
        value = values.get(AI_ENABLED_KEY)
        if value is not None:
            return {"enabled": value == "true", "source": "redis", "updated_at": values.get(AI_ENABLED_UPDATED_AT_KEY)}
        return {"enabled": self.env_default, "source": "env", "updated_at": None}

    async def set_ai_enabled(self, enabled: bool) -> str:
        updated_at = await self._store.set(AI_ENABLED_KEY, "true" if enabled else "false")
        self._remember(enabled)
        await self._store.publish("ai_enabled", enabled, updated_at)
        Logger.info(f"AI {'ENABLED' if enabled else 'DISABLED'} at {updated_at}", file=LogFiles.CONFIG)
        return updated_at

    async def handle_event(self, event: ConfigEvent) -> None:
        """Drop the cached toggle when any process announces a change."""
        self.invalidate()
        logger.info("Config change received: %s=%r", event.key, event.value)

    # ------------------------------------------------------------------
    # v3 analysis settings
    # ------------------------------------------------------------------

    async def get_v3_config(self) -> AnalysisV3Config:
        """Stored values win; unset keys and an unreachable store fall back to the environment."""
        try:
            values = await self._store.get_many(
                [V3_DAILY_BUDGET_KEY, V3_MONTHLY_BUDGET_KEY, V3_AUTO_ENABLED_KEY, V3_PAUSED_KEY, V3_PAUSE_REASON_KEY]
            )
        except RedisError as e:
            logger.error("Redis read failed, using v3 defaults from the environment: %s", e)
            values = {}
        return AnalysisV3Config(
            daily_budget_cents=_int_or(
                values.get(V3_DAILY_BUDGET_KEY), env_int("PAPERPULSE_V3_DAILY_BUDGET_CENTS", DEFAULT_DAILY_BUDGET_CENTS)
            ),
            monthly_budget_cents=_int_or(
                values.get(V3_MONTHLY_BUDGET_KEY),
                env_int("PAPERPULSE_V3_MONTHLY_BUDGET_CENTS", DEFAULT_MONTHLY_BUDGET_CENTS),
            ),
            auto_enabled=parse_bool(values.get(V3_AUTO_ENABLED_KEY), env_bool("PAPERPULSE_V3_AUTO_ENABLED", False)),
            paused=parse_bool(values.get(V3_PAUSED_KEY)),
            pause_reason=values.get(V3_PAUSE_REASON_KEY) or None,
        )

    async def _write(self, key: str, value: Any) -> None:
        updated_at = await self._store.set(key, str(value).lower() if isinstance(value, bool) else str(value))
        await self._store.publish(key, value, updated_at)

    async def set_budget(self, *, daily_cents: Optional[int] = None, monthly_cents: Optional[int] = None) -> None:
        if daily_cents is not None:
            await self._write(V3_DAILY_BUDGET_KEY, int(daily_cents))
        if monthly_cents is not None:
            await self._write(V3_MONTHLY_BUDGET_KEY, int(monthly_cents))
        Logger.info(f"v3 budget updated: daily={daily_cents} monthly={monthly_cents}", file=LogFiles.CONFIG)

    async def set_auto_analysis(self, enabled: bool) -> None:
        """Turning auto-analysis off also lifts any pause and clears its reason."""
        await self._write(V3_AUTO_ENABLED_KEY, enabled)
        if not enabled:
            await self._write(V3_PAUSED_KEY, False)
            await self._store.delete(V3_PAUSE_REASON_KEY)
        Logger.info(f"v3 auto-analysis {'enabled' if enabled else 'disabled'}", file=LogFiles.CONFIG)

    async def set_paused(self, paused: bool, reason: Optional[str] = None) -> None:
        await self._write(V3_PAUSED_KEY, paused)
        if paused and reason:
            await self._write(V3_PAUSE_REASON_KEY, reason)
        elif not paused:
            await self._store.delete(V3_PAUSE_REASON_KEY)
        Logger.info(f"v3 auto-analysis {'paused: ' + (reason or '') if paused else 'unpaused'}", file=LogFiles.CONFIG)
