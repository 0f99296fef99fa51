from datetime import date

import pytest

pytest.importorskip("arq", reason="arq not installed")

from arq.connections import RedisSettings

from paperpulse.infrastructure.queue import arq_worker
from paperpulse.infrastructure.queue.arq_worker import (
    QUEUE_FUNCTIONS,
    WorkerSettings,
    build_cron_jobs,
    build_worker,
    enqueue_daily_ingestion,
)
from paperpulse.infrastructure.queue.job_queue import (
    ARXIV_FETCH,
    BACKFILL,
    INGEST_DATE_JOB,
    INGEST_RECENT_JOB,
    QUEUE_POLICIES,
    SUMMARY_GENERATION,
    JobQueue,
)
from tests.fakes import FakeRedis


def test_arq_worker_settings_has_functions():
    names = {f.__name__ for f in WorkerSettings.functions}
    assert names == {INGEST_RECENT_JOB, INGEST_DATE_JOB}
    assert WorkerSettings.queue_name == ARXIV_FETCH
    assert WorkerSettings.max_tries >= 1000


def test_every_queue_has_job_functions():
    assert set(QUEUE_FUNCTIONS) == set(QUEUE_POLICIES)
    assert arq_worker.ingest_date_job in QUEUE_FUNCTIONS[BACKFILL]


def test_cron_schedule_follows_ingest_hour(monkeypatch):
    monkeypatch.setenv("PAPERPULSE_INGEST_CRON_HOUR", "4")
    jobs = {job.name: job for job in build_cron_jobs()}

    daily = jobs["cron:cron_daily_ingestion"]
    assert (daily.hour, daily.minute) == (4, 0)
    sweep = jobs["cron:cron_gap_sweep"]
    assert (sweep.hour, sweep.minute) == (1, 30)
    assert jobs["cron:cron_auto_analysis"].minute == 15
    assert jobs["cron:cron_auto_analysis"].hour is None


@pytest.mark.asyncio
async def test_daily_ingestion_ids_are_date_derived():
    redis = FakeRedis()
    queue = JobQueue(redis)

    queued = await enqueue_daily_ingestion(queue, date(2024, 3, 10))

    assert queued == ["ingest-daily-2024-03-10", "ingest-date-2024-03-09", "ingest-date-2024-03-08"]
    overlap = redis.jobs_on(BACKFILL)
    assert [j["args"][0] for j in overlap] == [
        {"date": "2024-03-09", "followups": True},
        {"date": "2024-03-08", "followups": True},
    ]
    # A second run the same day (restart, another replica) adds nothing
    assert await enqueue_daily_ingestion(queue, date(2024, 3, 10)) == []


@pytest.mark.asyncio
async def test_build_worker_uses_queue_policy():
    services = object()
    worker = build_worker(SUMMARY_GENERATION, services, settings=RedisSettings())

    assert worker.queue_name == SUMMARY_GENERATION
    assert worker.max_jobs == 2
    assert set(worker.functions) == {"summary_job"}
    assert worker.ctx["services"] is services

    with_cron = build_worker(ARXIV_FETCH, services, settings=RedisSettings(), with_cron=True)
    assert "cron:cron_daily_ingestion" in with_cron.functions
