from __future__ import annotations

from types import SimpleNamespace

import pytest

pytest.importorskip("arq", reason="arq not installed")

from paperpulse.application.services.runtime_config import AI_ENABLED_KEY, RuntimeConfigService
from paperpulse.infrastructure.queue.job_queue import (
    AI_GATED_QUEUES,
    ARXIV_FETCH,
    PAPER_ANALYSIS_V3,
    JobQueue,
)
from paperpulse.infrastructure.queue.supervisor import WorkerSupervisor
from paperpulse.infrastructure.redis.config_channel import ConfigEvent
from paperpulse.infrastructure.redis.config_store import RedisConfigStore
from tests.fakes import FakeRedis


class _Services(SimpleNamespace):
    async def close(self):
        self.closed += 1


def _supervisor(env_default=True):
    redis = FakeRedis()
    services = _Services(
        job_queue=JobQueue(redis),
        runtime_config=RuntimeConfigService(RedisConfigStore(redis), env_default=env_default),
        closed=0,
    )
    return WorkerSupervisor(services, queues=[ARXIV_FETCH]), services, redis


async def _paused(services):
    return {q: await services.job_queue.is_paused(q) for q in AI_GATED_QUEUES}


@pytest.mark.asyncio
async def test_env_kill_switch_overrides_shared_toggle(monkeypatch):
    supervisor, services, redis = _supervisor()
    await services.runtime_config.set_ai_enabled(True)
    monkeypatch.setenv("AI_ENABLED", "false")

    assert await supervisor.apply_ai_toggle() is False

    assert redis.data[AI_ENABLED_KEY] == "false"
    assert all((await _paused(services)).values())
    assert not await services.job_queue.is_paused(PAPER_ANALYSIS_V3)


@pytest.mark.asyncio
async def test_shared_toggle_decides_without_kill_switch(monkeypatch):
    monkeypatch.delenv("AI_ENABLED", raising=False)
    supervisor, services, _ = _supervisor(env_default=False)
    for queue_name in AI_GATED_QUEUES:
        await services.job_queue.pause(queue_name)
    await services.runtime_config.set_ai_enabled(True)

    assert await supervisor.apply_ai_toggle() is True
    assert not any((await _paused(services)).values())


@pytest.mark.asyncio
async def test_config_event_pauses_and_resumes_ai_queues():
    supervisor, services, _ = _supervisor()

    await supervisor.on_config_event(ConfigEvent(key="ai_enabled", value=False))
    assert all((await _paused(services)).values())

    await supervisor.on_config_event(ConfigEvent(key=AI_ENABLED_KEY, value="true"))
    assert not any((await _paused(services)).values())

    await supervisor.on_config_event(ConfigEvent(key="analysis_v3:paused", value=True))
    assert not any((await _paused(services)).values())


@pytest.mark.asyncio
async def test_startup_ingestion_is_scheduled_once_per_day():
    supervisor, _, redis = _supervisor()
    first = await supervisor.schedule_startup_ingestion()
    assert first.startswith("ingest-startup-")
    assert redis.jobs_on(ARXIV_FETCH)[0]["defer_by"] == 5
    assert await supervisor.schedule_startup_ingestion() is None


@pytest.mark.asyncio
async def test_shutdown_is_idempotent():
    supervisor, services, _ = _supervisor()
    supervisor.request_stop("test")
    await supervisor.shutdown()
    await supervisor.shutdown()
    assert services.closed == 1
