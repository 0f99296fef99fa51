from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from paperpulse.application.services.runtime_config import (
    AI_ENABLED_KEY,
    V3_PAUSE_REASON_KEY,
    RuntimeConfigService,
)
from paperpulse.infrastructure.redis.config_channel import ConfigEvent
from paperpulse.infrastructure.redis.config_store import CONFIG_CHANNEL, RedisConfigStore
from tests.fakes import FakeRedis


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class _BrokenRedis(FakeRedis):
    async def get(self, key):
        raise RedisConnectionError("redis down")


@pytest.mark.asyncio
async def test_falls_back_to_env_default_when_unset():
    service = RuntimeConfigService(RedisConfigStore(FakeRedis()), env_default=True)
    assert await service.get_ai_enabled() is True
    info = await service.get_ai_toggle_info()
    assert info == {"enabled": True, "source": "env", "updated_at": None}


@pytest.mark.asyncio
async def test_falls_back_to_env_default_when_redis_unreachable():
    service = RuntimeConfigService(RedisConfigStore(_BrokenRedis()), env_default=False)
    assert await service.get_ai_enabled() is False


@pytest.mark.asyncio
async def test_cached_value_expires_after_ttl():
    redis = FakeRedis()
    clock = _Clock()
    service = RuntimeConfigService(RedisConfigStore(redis), clock=clock, env_default=False)
    await redis.set(AI_ENABLED_KEY, "true")
    assert await service.get_ai_enabled() is True

    # Another process flips the flag; the cache hides it until the TTL passes
    await redis.set(AI_ENABLED_KEY, "false")
    clock.now += 1
    assert await service.get_ai_enabled() is True
    clock.now += 5
    assert await service.get_ai_enabled() is False


@pytest.mark.asyncio
async def test_set_writes_audit_timestamp_and_publishes():
    redis = FakeRedis()
    service = RuntimeConfigService(RedisConfigStore(redis), env_default=False)

    updated_at = await service.set_ai_enabled(True)

    assert redis.data[AI_ENABLED_KEY] == "true"
    assert redis.data[f"{AI_ENABLED_KEY}_updated_at"] == updated_at
    channel, message = redis.published[-1]
    assert channel == CONFIG_CHANNEL
    assert message["value"] is True
    info = await service.get_ai_toggle_info()
    assert info["source"] == "redis" and info["enabled"] is True


@pytest.mark.asyncio
async def test_config_event_invalidates_cache():
    redis = FakeRedis()
    service = RuntimeConfigService(RedisConfigStore(redis), clock=_Clock(), env_default=False)
    await redis.set(AI_ENABLED_KEY, "false")
    assert await service.get_ai_enabled() is False

    await redis.set(AI_ENABLED_KEY, "true")
    await service.handle_event(ConfigEvent(key="ai_enabled", value=True))
    assert await service.get_ai_enabled() is True


@pytest.mark.asyncio
async def test_turning_auto_off_clears_pause_reason():
    redis = FakeRedis()
    service = RuntimeConfigService(RedisConfigStore(redis), env_default=False)
    await service.set_auto_analysis(True)
    await service.set_paused(True, "daily budget exceeded")
    cfg = await service.get_v3_config()
    assert cfg.paused and cfg.pause_reason == "daily budget exceeded"

    await service.set_auto_analysis(False)
    cfg = await service.get_v3_config()
    assert cfg.auto_enabled is False
    assert cfg.paused is False
    assert cfg.pause_reason is None
    assert V3_PAUSE_REASON_KEY not in redis.data


def test_config_event_parses_message():
    event = ConfigEvent.from_message(b'{"key": "ai_enabled", "value": false, "updatedAt": "2024-01-01T00:00:00Z"}')
    assert event.key == "ai_enabled"
    assert event.value is False
    assert event.updated_at == "2024-01-01T00:00:00Z"

    with pytest.raises(ValueError):
        ConfigEvent.from_message('{"value": 1}')


@pytest.mark.asyncio
async def test_v3_config_uses_env_defaults_when_redis_unreachable(monkeypatch):
    monkeypatch.setenv("PAPERPULSE_V3_DAILY_BUDGET_CENTS", "250")
    monkeypatch.setenv("PAPERPULSE_V3_AUTO_ENABLED", "true")
    service = RuntimeConfigService(RedisConfigStore(_BrokenRedis()), env_default=False)

    cfg = await service.get_v3_config()

    assert cfg.daily_budget_cents == 250
    assert cfg.monthly_budget_cents == 15000
    assert cfg.auto_enabled is True
    assert cfg.paused is False


@pytest.mark.asyncio
async def test_stored_v3_budget_beats_env_default(monkeypatch):
    monkeypatch.setenv("PAPERPULSE_V3_DAILY_BUDGET_CENTS", "250")
    service = RuntimeConfigService(RedisConfigStore(FakeRedis()), env_default=False)
    await service.set_budget(daily_cents=900)
    assert (await service.get_v3_config()).daily_budget_cents == 900
