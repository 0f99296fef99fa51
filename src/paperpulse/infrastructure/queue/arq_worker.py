from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from arq import cron
from arq.connections import ArqRedis, RedisSettings, create_pool
from arq.worker import Worker
from redis.asyncio import Redis

from paperpulse.application.services.budget import BudgetController
from paperpulse.application.services.paper_card_analysis import PaperCardAnalyzer
from paperpulse.application.services.runtime_config import RuntimeConfigService
from paperpulse.application.services.summary_service import SummaryService
from paperpulse.application.workflows.analysis_batches import AnalysisBatchService
from paperpulse.application.workflows.analysis_v3_job import AnalysisV3Job
from paperpulse.application.workflows.backfill_scheduler import BackfillScheduler
from paperpulse.application.workflows.card_analysis_job import CardAnalysisJob
from paperpulse.application.workflows.ingestion import IngestionWorkflow
from paperpulse.application.workflows.mentions import (
    NewsFetchWorkflow,
    SocialMonitorWorkflow,
    enqueue_mention_refresh,
)
from paperpulse.infrastructure.harvesters.arxiv_harvester import ArxivHarvester
from paperpulse.infrastructure.llm.openrouter_client import OpenRouterClient
from paperpulse.infrastructure.queue.job_queue import (
    ARXIV_FETCH,
    BACKFILL,
    INGEST_DATE_JOB,
    INGEST_RECENT_JOB,
    KEEP_RESULT_SECONDS,
    NEWS_FETCH,
    PAPER_ANALYSIS,
    PAPER_ANALYSIS_V3,
    SOCIAL_MONITOR,
    SUMMARY_GENERATION,
    WORKER_MAX_TRIES,
    JobQueue,
    get_policy,
    queue_job,
)
from paperpulse.infrastructure.redis.config_store import RedisConfigStore
from paperpulse.infrastructure.redis.connection import create_redis, redis_settings
from paperpulse.infrastructure.social.bluesky_client import BlueskyClient
from paperpulse.infrastructure.social.reddit_client import RedditClient
from paperpulse.infrastructure.social.serper_client import SerperNewsClient
from paperpulse.infrastructure.stores.analysis_store import CardAnalysisStore
from paperpulse.infrastructure.stores.analysis_v3_store import AnalysisV3Store
from paperpulse.infrastructure.stores.batch_store import BatchStore
from paperpulse.infrastructure.stores.ingestion_run_store import IngestionRunStore
from paperpulse.infrastructure.stores.mention_store import MentionStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from paperpulse.utils.env import env_bool, env_int
from paperpulse.utils.logging_config import LogFiles, Logger

STARTUP_INGEST_MAX = 50
DAILY_INGEST_MAX = 100
OVERLAP_DAYS = 2


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class WorkerServices:
    """Everything job functions need, built once per worker process."""

    redis: Redis
    job_queue: JobQueue
    runtime_config: RuntimeConfigService
    paper_store: PaperStore
    analysis_store: CardAnalysisStore
    v3_store: AnalysisV3Store
    batch_store: BatchStore
    run_store: IngestionRunStore
    mention_store: MentionStore
    llm: OpenRouterClient
    harvester: ArxivHarvester
    social_clients: Dict[str, Any] = field(default_factory=dict)
    news_client: Optional[SerperNewsClient] = None

    @property
    def budget(self) -> BudgetController:
        return BudgetController(self.runtime_config, self.batch_store)

    def ingestion(self) -> IngestionWorkflow:
        return IngestionWorkflow(
            self.harvester,
            self.paper_store,
            run_store=self.run_store,
            job_queue=self.job_queue,
            runtime_config=self.runtime_config,
        )

    def backfill(self) -> BackfillScheduler:
        return BackfillScheduler(self.paper_store, self.job_queue)

    def batches(self) -> AnalysisBatchService:
        return AnalysisBatchService(
            paper_store=self.paper_store,
            v3_store=self.v3_store,
            batch_store=self.batch_store,
            job_queue=self.job_queue,
            budget=self.budget,
            runtime_config=self.runtime_config,
            llm=self.llm,
        )

    def v3_job(self) -> AnalysisV3Job:
        return AnalysisV3Job(
            self.llm, paper_store=self.paper_store, v3_store=self.v3_store, batch_store=self.batch_store
        )

    async def close(self) -> None:
        for client in [self.harvester, self.llm, self.news_client, *self.social_clients.values()]:
            if client is not None:
                await client.close()
        await self.redis.aclose()


def build_services(arq_redis: ArqRedis, *, db_url: Optional[str] = None) -> WorkerServices:
    redis = create_redis()
    return WorkerServices(
        redis=redis,
        job_queue=JobQueue(arq_redis),
        runtime_config=RuntimeConfigService(RedisConfigStore(redis)),
        paper_store=PaperStore(db_url),
        analysis_store=CardAnalysisStore(db_url),
        v3_store=AnalysisV3Store(db_url),
        batch_store=BatchStore(db_url),
        run_store=IngestionRunStore(db_url),
        mention_store=MentionStore(db_url),
        llm=OpenRouterClient(),
        harvester=ArxivHarvester(),
        social_clients={"bluesky": BlueskyClient(), "reddit": RedditClient()},
        news_client=SerperNewsClient(),
    )


def _services(ctx) -> WorkerServices:
    return ctx["services"]


# ----------------------------------------------------------------------
# Queue jobs
# ----------------------------------------------------------------------


@queue_job()
async def ingest_recent_job(ctx, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Newest submissions across AI categories (or the listed ones)."""
    summary = await _services(ctx).ingestion().ingest_recent(
        categories=payload.get("categories"),
        max_results=int(payload.get("max_results") or DAILY_INGEST_MAX),
        use_all_ai_categories=payload.get("use_all_ai_categories", True),
    )
    return summary.to_dict()


@queue_job()
async def ingest_date_job(ctx, payload: Dict[str, Any]) -> Dict[str, Any]:
    """One submission day across categories; used by backfill and the overlap fetch."""
    summary = await _services(ctx).ingestion().ingest_date(
        date.fromisoformat(payload["date"]),
        categories=payload.get("categories"),
        max_results_per_category=int(payload.get("max_results_per_category") or 200),
        enqueue_followups=bool(payload.get("followups", False)),
    )
    return summary.to_dict()


@queue_job()
async def summary_job(ctx, payload: Dict[str, Any]) -> Dict[str, Any]:
    services = _services(ctx)
    summary = await SummaryService(services.llm, services.paper_store).summarize_paper(
        int(payload["paper_id"]), title=payload.get("title"), abstract=payload.get("abstract")
    )
    return {"paper_id": payload["paper_id"], **summary.to_dict()}


@queue_job()
async def social_monitor_job(ctx, payload: Dict[str, Any]) -> Dict[str, Any]:
    services = _services(ctx)
    workflow = SocialMonitorWorkflow(services.social_clients, services.mention_store)
    return await workflow.monitor(
        int(payload["paper_id"]), arxiv_id=payload["arxiv_id"], title=payload.get("title") or ""
    )


@queue_job()
async def news_fetch_job(ctx, payload: Dict[str, Any]) -> Dict[str, Any]:
    services = _services(ctx)
    workflow = NewsFetchWorkflow(services.news_client or SerperNewsClient(), services.mention_store)
    return await workflow.fetch(
        int(payload["paper_id"]), arxiv_id=payload["arxiv_id"], title=payload.get("title") or ""
    )


@queue_job()
async def card_analysis_job(ctx, payload: Dict[str, Any]) -> Dict[str, Any]:
    """DTL-P analysis; validation failures after the feedback retry fail the attempt."""
    services = _services(ctx)
    job = CardAnalysisJob(
        PaperCardAnalyzer(services.llm, model=payload.get("model")),
        paper_store=services.paper_store,
        analysis_store=services.analysis_store,
    )
    result = await job.run(int(payload["paper_id"]), force=bool(payload.get("force", False)))
    return result.to_dict()


async def _v3_final_failure(ctx, payload: Dict[str, Any], exc: BaseException) -> None:
    batch_job_id = payload.get("batch_job_id")
    if batch_job_id is not None:
        _services(ctx).v3_job().record_failure(int(batch_job_id), f"{type(exc).__name__}: {exc}")


@queue_job(on_final_failure=_v3_final_failure)
async def analysis_v3_job(ctx, payload: Dict[str, Any]) -> Dict[str, Any]:
    """V3 analysis; a permanent failure is still counted against the batch."""
    result = await _services(ctx).v3_job().run(
        int(payload["paper_id"]),
        force=bool(payload.get("force", False)),
        batch_job_id=payload.get("batch_job_id"),
        model=payload.get("model"),
    )
    return result.to_dict()


QUEUE_FUNCTIONS = {
    ARXIV_FETCH: [ingest_recent_job, ingest_date_job],
    BACKFILL: [ingest_date_job],
    SUMMARY_GENERATION: [summary_job],
    SOCIAL_MONITOR: [social_monitor_job],
    NEWS_FETCH: [news_fetch_job],
    PAPER_ANALYSIS: [card_analysis_job],
    PAPER_ANALYSIS_V3: [analysis_v3_job],
}


# ----------------------------------------------------------------------
# Scheduled entrypoints
# ----------------------------------------------------------------------


async def enqueue_daily_ingestion(job_queue: JobQueue, today: date, *, prefix: str = "ingest-daily", max_results: int = DAILY_INGEST_MAX, delay_seconds: float = 0) -> List[str]:
    """
    Recent fetch plus an overlap fetch of the prior days; every id is
    derived from the date so restarts and replicas never double-schedule.
    """
    queued: List[str] = []
    job_id = await job_queue.enqueue(
        ARXIV_FETCH,
        INGEST_RECENT_JOB,
        {"use_all_ai_categories": True, "max_results": max_results},
        job_id=f"{prefix}-{today.isoformat()}",
        delay_seconds=delay_seconds,
    )
    if job_id:
        queued.append(job_id)
    for offset in range(1, OVERLAP_DAYS + 1):
        day = today - timedelta(days=offset)
        job_id = await job_queue.enqueue(
            BACKFILL,
            INGEST_DATE_JOB,
            {"date": day.isoformat(), "followups": True},
            job_id=f"ingest-date-{day.isoformat()}",
            delay_seconds=delay_seconds + 60 * offset,
        )
        if job_id:
            queued.append(job_id)
    return queued


async def cron_daily_ingestion(ctx) -> Dict[str, Any]:
    queued = await enqueue_daily_ingestion(_services(ctx).job_queue, _utc_today())
    Logger.info(f"Daily ingestion scheduled: {queued or 'already queued'}", file=LogFiles.INGEST)
    return {"status": "ok", "queued": queued}


async def cron_gap_sweep(ctx) -> Dict[str, Any]:
    services = _services(ctx)
    plan = await services.backfill().sweep_gaps(
        services.redis,
        window_days=env_int("PAPERPULSE_GAP_WINDOW_DAYS", 30),
        threshold=env_int("PAPERPULSE_GAP_THRESHOLD", 50),
    )
    if plan is None:
        return {"status": "skipped"}
    return {"status": "ok", **plan.to_dict()}


async def cron_mention_refresh(ctx) -> Dict[str, Any]:
    count = await enqueue_mention_refresh(
        _services(ctx).paper_store, _services(ctx).job_queue, stamp=_utc_today().isoformat()
    )
    return {"status": "ok", "papers": count}


async def cron_auto_analysis(ctx) -> Dict[str, Any]:
    result = await _services(ctx).batches().auto_tick(env_int("PAPERPULSE_AUTO_BATCH_SIZE", 20))
    return {"status": "started" if result else "idle", "batch": result}


def build_cron_jobs():
    hour = env_int("PAPERPULSE_INGEST_CRON_HOUR", 6)
    return [
        cron(cron_daily_ingestion, hour=hour, minute=0, run_at_startup=False),
        cron(cron_gap_sweep, hour=(hour + 21) % 24, minute=30),
        cron(cron_mention_refresh, hour=0, minute=0),
        cron(cron_auto_analysis, minute=15),
    ]


# ----------------------------------------------------------------------
# Worker construction
# ----------------------------------------------------------------------


def build_worker(
    queue_name: str,
    services: WorkerServices,
    *,
    settings: Optional[RedisSettings] = None,
    with_cron: bool = False,
) -> Worker:
    """
    One arq worker per queue; concurrency comes from the queue policy.

    Each worker opens its own pool so closing one never closes another.
    """
    policy = get_policy(queue_name)
    return Worker(
        functions=QUEUE_FUNCTIONS[queue_name],
        queue_name=queue_name,
        redis_settings=settings or redis_settings(),
        cron_jobs=build_cron_jobs() if with_cron else None,
        max_jobs=policy.concurrency,
        max_tries=WORKER_MAX_TRIES,
        keep_result=KEEP_RESULT_SECONDS,
        handle_signals=False,
        ctx={"queue_name": queue_name, "services": services},
    )


async def startup(ctx) -> None:
    """Single-queue ``arq`` CLI runs: build services from the worker's pool."""
    ctx["queue_name"] = ARXIV_FETCH
    ctx["services"] = build_services(ctx["redis"])


async def shutdown(ctx) -> None:
    services = ctx.get("services")
    if services is not None:
        await services.close()


async def create_arq_pool(settings: Optional[RedisSettings] = None) -> ArqRedis:
    return await create_pool(settings or redis_settings())


class WorkerSettings:
    """
    ``arq paperpulse.infrastructure.queue.arq_worker.WorkerSettings`` runs the
    ingestion queue with the schedules; ``paperpulse-worker`` runs every queue.
    """

    functions = QUEUE_FUNCTIONS[ARXIV_FETCH]
    queue_name = ARXIV_FETCH
    redis_settings = redis_settings()
    cron_jobs = build_cron_jobs() if env_bool("PAPERPULSE_CRON_ENABLED", True) else []
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = get_policy(ARXIV_FETCH).concurrency
    max_tries = WORKER_MAX_TRIES
    keep_result = KEEP_RESULT_SECONDS
