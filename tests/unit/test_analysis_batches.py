from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

pytest.importorskip("arq", reason="arq not installed")

from paperpulse.application.services.budget import BudgetController
from paperpulse.application.services.runtime_config import RuntimeConfigService
from paperpulse.application.workflows.analysis_batches import (
    AnalysisBatchService,
    batch_queue_job_id,
    clamp_batch_size,
)
from paperpulse.application.workflows.analysis_v3_job import AnalysisV3Job
from paperpulse.domain.errors import (
    BatchConflictError,
    BatchRequestError,
    BudgetExceededError,
    LLMNotConfiguredError,
)
from paperpulse.infrastructure.queue.job_queue import ANALYSIS_V3_JOB, PAPER_ANALYSIS_V3, JobQueue
from paperpulse.infrastructure.redis.config_store import RedisConfigStore
from paperpulse.infrastructure.stores.analysis_v3_store import AnalysisV3Store
from paperpulse.infrastructure.stores.batch_store import BatchStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from tests.fakes import FakeLLM, FakeRedis, make_record, sample_v3_reply


class _Env:
    def __init__(self, db_url, llm=None):
        self.redis = FakeRedis()
        self.papers = PaperStore(db_url)
        self.analyses = AnalysisV3Store(db_url)
        self.batches = BatchStore(db_url)
        self.queue = JobQueue(self.redis)
        self.config = RuntimeConfigService(RedisConfigStore(self.redis), env_default=False)
        self.llm = llm if llm is not None else FakeLLM(sample_v3_reply())
        self.service = AnalysisBatchService(
            paper_store=self.papers,
            v3_store=self.analyses,
            batch_store=self.batches,
            job_queue=self.queue,
            budget=BudgetController(self.config, self.batches),
            runtime_config=self.config,
            llm=self.llm,
        )

    def add_papers(self, count):
        return [
            self.papers.insert_paper(make_record(f"2401.{i:05d}", day=date(2024, 1, 1 + i)))
            for i in range(1, count + 1)
        ]


@pytest.fixture
def env(db_url):
    return _Env(db_url)


def test_clamp_batch_size():
    assert clamp_batch_size(0) == 1
    assert clamp_batch_size("25") == 25
    assert clamp_batch_size(None) == 10
    assert clamp_batch_size(50_000) == 10_000


def test_terminal_events_count_once_and_close_batch(env):
    p1, p2 = env.add_papers(2)
    batch = env.batches.create_batch(paper_ids=[p1, p2], model="m", scope="manual")
    j1, j2 = env.batches.list_jobs(batch["id"])

    assert env.batches.record_job_completed(j1["id"], tokens_used=1000, cost_cents=1, processing_time_ms=10) is False
    assert env.batches.record_job_failed(j2["id"], error="boom") is True
    # A duplicate event for an already-terminal job is ignored
    assert env.batches.record_job_failed(j2["id"], error="boom again") is False
    assert env.batches.record_job_completed(j1["id"], tokens_used=1000, cost_cents=1, processing_time_ms=10) is False

    row = env.batches.get_batch(batch["id"])
    assert (row["completed"], row["failed"], row["status"]) == (1, 1, "completed")
    assert row["total_cost_cents"] == 1
    assert row["finished_at"] is not None


def test_concurrent_terminal_events_close_batch_once(db_url):
    papers = PaperStore(db_url)
    batches = BatchStore(db_url)
    paper_ids = [papers.insert_paper(make_record(f"2402.{i:05d}")) for i in range(1, 13)]
    batch = batches.create_batch(paper_ids=paper_ids, model="m")
    jobs = batches.list_jobs(batch["id"])
    start = threading.Barrier(len(jobs))

    def finish(index_and_job):
        index, job = index_and_job
        start.wait()
        if index % 3 == 0:
            return batches.record_job_failed(job["id"], error="boom")
        return batches.record_job_completed(job["id"], tokens_used=1000, cost_cents=1, processing_time_ms=5)

    with ThreadPoolExecutor(max_workers=len(jobs)) as pool:
        closed = list(pool.map(finish, enumerate(jobs)))

    assert closed.count(True) == 1
    row = batches.get_batch(batch["id"])
    assert row["completed"] + row["failed"] == row["batch_size"] == 12
    assert (row["completed"], row["failed"], row["status"]) == (8, 4, "completed")
    assert row["total_cost_cents"] == 8


def test_reset_failed_jobs_reopens_batch(env):
    (p1,) = env.add_papers(1)
    batch = env.batches.create_batch(paper_ids=[p1], model="m")
    (job,) = env.batches.list_jobs(batch["id"])
    env.batches.record_job_failed(job["id"], error="boom")

    reset = env.batches.reset_failed_jobs(batch_id=batch["id"])

    assert [j["status"] for j in reset] == ["pending"]
    row = env.batches.get_batch(batch["id"])
    assert (row["failed"], row["status"], row["finished_at"]) == (0, "running", None)


def test_cancel_fails_pending_jobs(env):
    p1, p2 = env.add_papers(2)
    batch = env.batches.create_batch(paper_ids=[p1, p2], model="m")
    j1, j2 = env.batches.list_jobs(batch["id"])
    env.batches.record_job_completed(j1["id"], tokens_used=0, cost_cents=0, processing_time_ms=0)

    assert env.batches.cancel_batch(batch["id"]) == 1
    row = env.batches.get_batch(batch["id"])
    assert (row["completed"], row["failed"], row["status"]) == (1, 1, "cancelled")
    assert env.batches.get_job(j2["id"])["error"]
    assert env.batches.record_job_completed(j2["id"], tokens_used=0, cost_cents=0, processing_time_ms=0) is False


@pytest.mark.asyncio
async def test_start_batch_enqueues_one_job_per_paper(env):
    paper_ids = env.add_papers(3)

    started = await env.service.start_batch(10, scope="manual")

    assert started["batch_size"] == 3
    assert started["model"] == "test/model"
    queued = env.redis.jobs_on(PAPER_ANALYSIS_V3)
    assert {j["job_id"] for j in queued} == {batch_queue_job_id(started["batch_id"], p) for p in paper_ids}
    assert all(j["function"] == ANALYSIS_V3_JOB for j in queued)
    assert all(j["queue_job_id"] for j in env.batches.list_jobs(started["batch_id"]))

    with pytest.raises(BatchConflictError) as info:
        await env.service.start_batch(10)
    assert info.value.batch_id == started["batch_id"]


@pytest.mark.asyncio
async def test_start_batch_with_nothing_to_do(env):
    assert await env.service.start_batch(5) == {"message": "No papers need analysis", "batch_size": 0}


@pytest.mark.asyncio
async def test_start_batch_rejected_by_budget(env):
    env.add_papers(3)
    await env.config.set_budget(daily_cents=1)

    with pytest.raises(BudgetExceededError):
        await env.service.start_batch(3)
    assert env.batches.get_open_batch() is None
    assert env.redis.enqueued == []


@pytest.mark.asyncio
async def test_pause_resume_and_cancel(env):
    env.add_papers(2)
    started = await env.service.start_batch(2)

    assert (await env.service.pause())["batch_id"] == started["batch_id"]
    assert await env.queue.is_paused(PAPER_ANALYSIS_V3)
    assert env.batches.get_batch(started["batch_id"])["status"] == "paused"
    assert (await env.service.pause()) == {"message": "No running batch to pause"}

    await env.service.resume()
    assert not await env.queue.is_paused(PAPER_ANALYSIS_V3)

    cancelled = await env.service.cancel()
    assert cancelled["jobs_cancelled"] == 2
    assert await env.queue.queued_count(PAPER_ANALYSIS_V3) == 0
    assert (await env.service.cancel()) == {"message": "No active batch to cancel"}


@pytest.mark.asyncio
async def test_retry_only_accepts_failed_jobs(env):
    env.add_papers(1)
    started = await env.service.start_batch(1)
    (job,) = env.batches.list_jobs(started["batch_id"])

    with pytest.raises(BatchRequestError):
        await env.service.retry(job_id=job["id"])
    with pytest.raises(BatchRequestError):
        await env.service.retry()

    env.batches.record_job_failed(job["id"], error="timeout")
    await env.queue.pause(PAPER_ANALYSIS_V3)
    result = await env.service.retry(job_id=job["id"])

    assert result["retried"] == 1
    assert not await env.queue.is_paused(PAPER_ANALYSIS_V3)
    assert env.redis.enqueued[-1]["job_id"].startswith(f"v3-retry-{job['id']}-")


@pytest.mark.asyncio
async def test_auto_tick_pauses_on_budget_rejection(env):
    env.add_papers(2)
    assert await env.service.auto_tick(20) is None  # auto-analysis off

    await env.config.set_auto_analysis(True)
    await env.config.set_budget(daily_cents=1)
    assert await env.service.auto_tick(20) is None

    cfg = await env.config.get_v3_config()
    assert cfg.paused is True
    assert "daily budget exceeded" in cfg.pause_reason


@pytest.mark.asyncio
async def test_auto_tick_starts_batch_when_idle(env):
    env.add_papers(2)
    await env.config.set_auto_analysis(True)

    started = await env.service.auto_tick(20)

    assert started["batch_size"] == 2
    assert env.batches.get_batch(started["batch_id"])["scope"] == "auto"
    assert await env.service.auto_tick(20) is None


@pytest.mark.asyncio
async def test_v3_job_rolls_up_and_skips_closed_jobs(env):
    p1, p2 = env.add_papers(2)
    batch = env.batches.create_batch(paper_ids=[p1, p2], model="m")
    j1, j2 = env.batches.list_jobs(batch["id"])
    job = AnalysisV3Job(env.llm, paper_store=env.papers, v3_store=env.analyses, batch_store=env.batches)

    first = await job.run(p1, batch_job_id=j1["id"])
    assert first.status == "complete"
    assert first.practical_value_total == 4
    assert first.batch_completed is False
    assert env.analyses.get_analysis(p1) is not None

    assert job.record_failure(j2["id"], "gave up") is True
    skipped = await job.run(p2, batch_job_id=j2["id"])
    assert skipped.status == "skipped"
    assert len(env.llm.calls) == 1


@pytest.mark.asyncio
async def test_single_analysis_records_spend(env):
    (paper_id,) = env.add_papers(1)

    result = await env.service.test_analysis(external_id="2401.00001")

    assert result["paper"]["id"] == paper_id
    assert result["analysis_status"] == "complete"
    assert result["cost"]["cost_cents"] == 1
    assert env.service.spending()["today_cents"] == 1
    # Single runs are not stored as analyses
    assert env.analyses.get_analysis(paper_id) is None


@pytest.mark.asyncio
async def test_single_analysis_needs_configured_llm(db_url):
    env = _Env(db_url, llm=FakeLLM(configured=False))
    env.add_papers(1)
    with pytest.raises(LLMNotConfiguredError):
        await env.service.test_analysis(paper_id=1)
