from __future__ import annotations

from datetime import date

import pytest

pytest.importorskip("arq", reason="arq not installed")

from fastapi.testclient import TestClient

from paperpulse.api import main as api_main
from paperpulse.api.routes import admin as admin_route
from paperpulse.application.services.runtime_config import RuntimeConfigService
from paperpulse.application.workflows.backfill_scheduler import GAP_SWEEP_LOCK, BackfillScheduler
from paperpulse.infrastructure.queue.job_queue import (
    AI_GATED_QUEUES,
    BACKFILL,
    PAPER_ANALYSIS_V3,
    QUEUE_POLICIES,
    JobQueue,
)
from paperpulse.infrastructure.redis.config_store import RedisConfigStore
from paperpulse.infrastructure.redis.lock import RedisLock
from paperpulse.infrastructure.stores.analysis_v3_store import AnalysisV3Store
from paperpulse.infrastructure.stores.batch_store import BatchStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from tests.fakes import FakeLLM, FakeRedis, make_record, sample_v3_reply


class _Admin:
    def __init__(self, monkeypatch, db_url, llm):
        self.redis = FakeRedis()
        self.papers = PaperStore(db_url)
        self.batches = BatchStore(db_url)
        self.queue = JobQueue(self.redis)
        monkeypatch.setattr(admin_route, "_paper_store", self.papers)
        monkeypatch.setattr(admin_route, "_v3_store", AnalysisV3Store(db_url))
        monkeypatch.setattr(admin_route, "_batch_store", self.batches)
        monkeypatch.setattr(
            admin_route, "_runtime_config", RuntimeConfigService(RedisConfigStore(self.redis), env_default=False)
        )
        monkeypatch.setattr(admin_route, "_job_queue", self.queue)
        monkeypatch.setattr(admin_route, "_llm", llm)
        self.client = TestClient(api_main.app)

    def add_papers(self, *ids, day=date(2024, 1, 15)):
        return [self.papers.insert_paper(make_record(i, day=day)) for i in ids]


@pytest.fixture
def admin(monkeypatch, db_url):
    return _Admin(monkeypatch, db_url, FakeLLM(sample_v3_reply()))


def test_ai_toggle_round_trip_pauses_gated_queues(admin):
    assert admin.client.get("/api/admin/ai-toggle").json() == {"enabled": False, "source": "env", "updated_at": None}

    resp = admin.client.post("/api/admin/ai-toggle", json={"enabled": False})
    assert resp.status_code == 200
    assert resp.json()["message"] == "AI processing disabled"
    queues = admin.client.get("/api/admin/queues").json()["queues"]
    assert set(queues) == set(QUEUE_POLICIES)
    assert all(queues[q]["paused"] for q in AI_GATED_QUEUES)

    admin.client.post("/api/admin/ai-toggle", json={"enabled": True})
    body = admin.client.get("/api/admin/ai-toggle").json()
    assert body["enabled"] is True and body["source"] == "redis"
    queues = admin.client.get("/api/admin/queues").json()["queues"]
    assert not any(queues[q]["paused"] for q in AI_GATED_QUEUES)


def test_batch_lifecycle(admin):
    assert admin.client.post("/api/admin/analysis-v3/batch", json={"batch_size": 5}).json()["batch_size"] == 0

    admin.add_papers("2401.00001", "2401.00002")
    started = admin.client.post("/api/admin/analysis-v3/batch", json={"batch_size": 5}).json()
    assert started["batch_size"] == 2
    assert len(admin.redis.jobs_on(PAPER_ANALYSIS_V3)) == 2

    conflict = admin.client.post("/api/admin/analysis-v3/batch", json={})
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["batch_id"] == started["batch_id"]

    status = admin.client.get("/api/admin/analysis-v3/status").json()
    assert status["current_batch"]["id"] == started["batch_id"]
    assert status["coverage"] == {"analyzed": 0, "total": 2, "percentage": 0.0}

    assert admin.client.post("/api/admin/analysis-v3/pause").json()["message"] == "Batch paused"
    assert admin.client.post("/api/admin/analysis-v3/resume").json()["message"] == "Batch resumed"
    assert admin.client.post("/api/admin/analysis-v3/cancel").json()["jobs_cancelled"] == 2

    history = admin.client.get("/api/admin/analysis-v3/history", params={"limit": 5}).json()["batches"]
    assert history[0]["status"] == "cancelled"


def test_budget_endpoints_and_rejection(admin):
    assert admin.client.get("/api/admin/analysis-v3/budget").json() == {
        "daily_budget_cents": 500,
        "monthly_budget_cents": 15000,
    }
    assert admin.client.post("/api/admin/analysis-v3/budget", json={}).status_code == 400

    updated = admin.client.post("/api/admin/analysis-v3/budget", json={"daily_budget_cents": 1})
    assert updated.json()["daily_budget_cents"] == 1

    admin.add_papers("2401.00001", "2401.00002", "2401.00003")
    resp = admin.client.post("/api/admin/analysis-v3/batch", json={"batch_size": 3})
    assert resp.status_code == 422
    detail = resp.json()["detail"]
    assert detail["window"] == "daily"
    assert detail["budget_cents"] == 1


def test_auto_toggle_and_estimate(admin):
    assert admin.client.post("/api/admin/analysis-v3/auto", json={"enabled": True}).json() == {"auto_enabled": True}
    admin.add_papers("2401.00001")
    estimate = admin.client.get("/api/admin/analysis-v3/estimate").json()
    assert estimate["projections"][-1]["papers"] == 1
    spending = admin.client.get("/api/admin/analysis-v3/spending").json()
    assert spending["today_cents"] == 0
    assert spending["today_dollars"] == "$0.00"


def test_retry_errors(admin):
    assert admin.client.post("/api/admin/analysis-v3/retry", json={}).status_code == 400
    assert admin.client.post("/api/admin/analysis-v3/retry", json={"job_id": 42}).status_code == 404


def test_single_analysis(admin):
    assert admin.client.post("/api/admin/analysis-v3/test", json={"paper_id": 99}).status_code == 404

    admin.add_papers("2401.00001")
    resp = admin.client.post("/api/admin/analysis-v3/test", json={"external_id": "2401.00001"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["analysis"]["practical_value_score"]["total"] == 4
    activity = admin.client.get("/api/admin/analysis-v3/activity").json()["activity"]
    assert activity[0]["paper_title"] == "Paper 2401.00001"


def test_single_analysis_without_api_key(monkeypatch, db_url):
    admin = _Admin(monkeypatch, db_url, FakeLLM(configured=False))
    admin.add_papers("2401.00001")
    resp = admin.client.post("/api/admin/analysis-v3/test", json={"paper_id": 1})
    assert resp.status_code == 503


def test_backfill_validation_and_dedupe(admin):
    bad = admin.client.post("/api/admin/backfill", json={"start_date": "2024-01-05", "end_date": "2024-01-01"})
    assert bad.status_code == 400

    body = {"start_date": "2024-01-01", "end_date": "2024-01-03", "categories": ["cs.AI"], "delay_ms": 1000}
    first = admin.client.post("/api/admin/backfill", json=body).json()
    assert first["dates"] == ["2024-01-01", "2024-01-02", "2024-01-03"]
    assert [j["delay_ms"] for j in first["jobs"]] == [0, 1000, 2000]
    assert not any(j["duplicate"] for j in first["jobs"])

    second = admin.client.post("/api/admin/backfill", json=body).json()
    assert all(j["duplicate"] for j in second["jobs"])
    assert len(admin.redis.jobs_on(BACKFILL)) == 3


def test_gap_backfill_only_queues_thin_days(admin):
    admin.add_papers("2401.00001", day=date(2024, 1, 15))

    resp = admin.client.post(
        "/api/admin/backfill/gaps",
        json={"start_date": "2024-01-15", "end_date": "2024-01-16", "threshold": 1},
    ).json()

    assert resp["dates"] == ["2024-01-16"]
    assert resp["skipped_dates"] == ["2024-01-15"]
    assert resp["counts"] == {"2024-01-16": 0}


def test_bulk_queueing_needs_ai(admin):
    admin.add_papers("2401.00001")
    assert admin.client.post("/api/admin/queue-summaries", json={}).status_code == 503
    assert admin.client.post("/api/admin/queue-analyses", json={}).status_code == 503

    admin.client.post("/api/admin/ai-toggle", json={"enabled": True})
    assert admin.client.post("/api/admin/queue-summaries", json={}).json()["queued"] == 1
    assert admin.client.post("/api/admin/queue-analyses", json={"limit": 5}).json()["queued"] == 1


@pytest.mark.asyncio
async def test_gap_sweep_skips_while_locked(db_url):
    redis = FakeRedis()
    papers = PaperStore(db_url)
    scheduler = BackfillScheduler(papers, JobQueue(redis), today=lambda: date(2024, 1, 17))

    holder = RedisLock(redis, GAP_SWEEP_LOCK)
    assert await holder.acquire()
    assert await scheduler.sweep_gaps(redis, window_days=2) is None
    await holder.release()

    plan = await scheduler.sweep_gaps(redis, window_days=2)
    assert [d.isoformat() for d in plan.dates] == ["2024-01-15", "2024-01-16"]
    assert [j["job_id"] for j in redis.jobs_on(BACKFILL)] == ["ingest-date-2024-01-15", "ingest-date-2024-01-16"]


@pytest.mark.asyncio
async def test_gap_sweep_with_oversized_window_still_runs(db_url):
    redis = FakeRedis()
    scheduler = BackfillScheduler(PaperStore(db_url), JobQueue(redis), today=lambda: date(2024, 6, 1))

    plan = await scheduler.sweep_gaps(redis, window_days=120)

    assert plan.dates[-1] == date(2024, 5, 31)
    assert plan.dates[0] >= date(2024, 4, 2)
    assert len(redis.jobs_on(BACKFILL)) == len(plan.dates)
