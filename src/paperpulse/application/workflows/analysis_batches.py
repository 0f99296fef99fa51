"""
Operator control of v3 analysis batches.

A batch snapshots the N newest unanalysed papers, creates one batch job per
paper and enqueues one queue job per batch job. Pause and resume act on the
batch row and the paper-analysis-v3 queue together; cancel fails the pending
jobs and drains the queue.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from paperpulse.application.ports.llm_port import ChatCompletionPort
from paperpulse.application.services.budget import BudgetController
from paperpulse.application.services.paper_analysis_v3 import PaperAnalyzerV3
from paperpulse.application.services.runtime_config import RuntimeConfigService
from paperpulse.domain.analysis_v3 import cost_cents_for_tokens
from paperpulse.domain.batch import BatchJobStatus, BatchStatus
from paperpulse.domain.errors import (
    BatchConflictError,
    BatchJobNotFoundError,
    BatchRequestError,
    BudgetExceededError,
    LLMNotConfiguredError,
    PaperNotFoundError,
)
from paperpulse.infrastructure.queue.job_queue import ANALYSIS_V3_JOB, PAPER_ANALYSIS_V3, JobQueue
from paperpulse.infrastructure.stores.analysis_v3_store import AnalysisV3Store
from paperpulse.infrastructure.stores.batch_store import BatchStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from paperpulse.utils.logging_config import LogFiles, Logger

logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 10_000
DEFAULT_BATCH_SIZE = 10


def clamp_batch_size(size: Any) -> int:
    try:
        value = int(size)
    except (TypeError, ValueError):
        value = DEFAULT_BATCH_SIZE
    return min(MAX_BATCH_SIZE, max(MIN_BATCH_SIZE, value))


def batch_queue_job_id(batch_id: int, paper_id: int) -> str:
    return f"v3-batch-{batch_id}-{paper_id}"


def retry_queue_job_id(job_id: int, now_ms: Optional[int] = None) -> str:
    return f"v3-retry-{job_id}-{now_ms if now_ms is not None else int(time.time() * 1000)}"


class AnalysisBatchService:
    def __init__(
        self,
        *,
        paper_store: PaperStore,
        v3_store: AnalysisV3Store,
        batch_store: BatchStore,
        job_queue: JobQueue,
        budget: BudgetController,
        runtime_config: RuntimeConfigService,
        llm: Optional[ChatCompletionPort] = None,
    ):
        self._papers = paper_store
        self._analyses = v3_store
        self._batches = batch_store
        self._queue = job_queue
        self._budget = budget
        self._config = runtime_config
        self._llm = llm

    @property
    def model(self) -> str:
        return PaperAnalyzerV3.resolve_model(self._llm)

    async def _enqueue_job(self, job: Dict[str, Any], queue_job_id: str) -> Optional[str]:
        queued = await self._queue.enqueue(
            PAPER_ANALYSIS_V3,
            ANALYSIS_V3_JOB,
            {"paper_id": job["paper_id"], "batch_id": job["batch_id"], "batch_job_id": job["id"]},
            job_id=queue_job_id,
        )
        if queued:
            self._batches.attach_queue_job(job["id"], queued)
        return queued

    async def start_batch(self, size: Any = DEFAULT_BATCH_SIZE, *, scope: str = "newest") -> Dict[str, Any]:
        """
        Raises BatchConflictError while another batch runs and
        BudgetExceededError when the estimate overruns either window.
        """
        size = clamp_batch_size(size)
        running = self._batches.get_open_batch([BatchStatus.RUNNING.value])
        if running is not None:
            raise BatchConflictError(running["id"])

        papers = self._papers.list_without_v3_analysis(limit=size)
        if not papers:
            return {"message": "No papers need analysis", "batch_size": 0}
        await self._budget.ensure_within_budget(len(papers))

        batch = self._batches.create_batch(paper_ids=[p["id"] for p in papers], model=self.model, scope=scope)
        # A queue left paused by an earlier batch would hold the new jobs
        await self._queue.resume(PAPER_ANALYSIS_V3)
        for job in self._batches.list_jobs(batch["id"]):
            await self._enqueue_job(job, batch_queue_job_id(batch["id"], job["paper_id"]))

        Logger.info(
            f"Batch {batch['id']} started: {batch['batch_size']} papers, model={batch['model']}",
            file=LogFiles.BATCH,
        )
        return {
            "batch_id": batch["id"],
            "batch_size": batch["batch_size"],
            "model": batch["model"],
            "status": batch["status"],
        }

    async def pause(self) -> Dict[str, Any]:
        batch = self._batches.get_open_batch([BatchStatus.RUNNING.value])
        if batch is None or not self._batches.set_batch_status(
            batch["id"], BatchStatus.PAUSED.value, from_statuses=[BatchStatus.RUNNING.value]
        ):
            return {"message": "No running batch to pause"}
        await self._queue.pause(PAPER_ANALYSIS_V3)
        Logger.info(f"Batch {batch['id']} paused", file=LogFiles.BATCH)
        return {"message": "Batch paused", "batch_id": batch["id"]}

    async def resume(self) -> Dict[str, Any]:
        batch = self._batches.get_open_batch([BatchStatus.PAUSED.value])
        if batch is None or not self._batches.set_batch_status(
            batch["id"], BatchStatus.RUNNING.value, from_statuses=[BatchStatus.PAUSED.value]
        ):
            return {"message": "No paused batch to resume"}
        await self._queue.resume(PAPER_ANALYSIS_V3)
        Logger.info(f"Batch {batch['id']} resumed", file=LogFiles.BATCH)
        return {"message": "Batch resumed", "batch_id": batch["id"]}

    async def cancel(self) -> Dict[str, Any]:
        batch = self._batches.get_open_batch()
        if batch is None:
            return {"message": "No active batch to cancel"}
        cancelled = self._batches.cancel_batch(batch["id"])
        drained = await self._queue.drain(PAPER_ANALYSIS_V3)
        Logger.info(
            f"Batch {batch['id']} cancelled: {cancelled} pending jobs failed, {drained} queue jobs drained",
            file=LogFiles.BATCH,
        )
        return {"message": "Batch cancelled", "batch_id": batch["id"], "jobs_cancelled": cancelled}

    async def retry(self, *, job_id: Optional[int] = None, batch_id: Optional[int] = None) -> Dict[str, Any]:
        if job_id:
            job = self._batches.get_job(job_id)
            if job is None:
                raise BatchJobNotFoundError(f"Job {job_id} not found")
            if job["status"] != BatchJobStatus.FAILED.value:
                raise BatchRequestError("Only failed jobs can be retried")
            reset = self._batches.reset_failed_jobs(job_id=job_id)
        elif batch_id:
            if self._batches.get_batch(batch_id) is None:
                raise BatchJobNotFoundError(f"Batch {batch_id} not found")
            reset = self._batches.reset_failed_jobs(batch_id=batch_id)
            if not reset:
                return {"message": "No failed jobs to retry", "retried": 0, "batch_id": batch_id}
        else:
            raise BatchRequestError("Provide job_id or batch_id")

        await self._queue.resume(PAPER_ANALYSIS_V3)
        for job in reset:
            await self._enqueue_job(job, retry_queue_job_id(job["id"]))
        Logger.info(f"Retried {len(reset)} failed jobs", file=LogFiles.BATCH)
        if job_id:
            return {"message": "Job retried", "job_id": job_id, "retried": len(reset)}
        return {"message": f"Retried {len(reset)} failed jobs", "retried": len(reset), "batch_id": batch_id}

    async def status(self) -> Dict[str, Any]:
        cfg = await self._config.get_v3_config()
        budget = await self._budget.status()
        analysed = self._analyses.count_analysed(status="complete")
        total = self._papers.count_papers()
        running = self._batches.get_open_batch([BatchStatus.RUNNING.value])
        return {
            "coverage": {
                "analyzed": analysed,
                "total": total,
                "percentage": round(analysed / total * 100, 1) if total else 0,
            },
            "budget": {
                "daily_cents": budget.daily_budget_cents,
                "monthly_cents": budget.monthly_budget_cents,
                "today_spent_cents": budget.today_spent_cents,
                "month_spent_cents": budget.month_spent_cents,
            },
            "auto_analysis": {
                "enabled": cfg.auto_enabled,
                "paused": cfg.paused,
                "pause_reason": cfg.pause_reason,
            },
            "current_batch": running,
            "model": self.model,
        }

    async def estimate(self) -> Dict[str, Any]:
        return await self._budget.projections(self._papers.count_without_v3_analysis())

    def spending(self) -> Dict[str, Any]:
        spent = self._budget.spending()
        return {**spent, **{k.replace("_cents", "_dollars"): f"${v / 100:.2f}" for k, v in spent.items()}}

    def history(self, limit: int = 20) -> Dict[str, Any]:
        return {"batches": self._batches.list_batches(limit=min(max(1, limit), 100))}

    def activity(self, limit: int = 20) -> Dict[str, Any]:
        jobs = self._batches.list_recent_activity(limit=min(max(1, limit), 50))
        titles: Dict[int, str] = {}
        for job in jobs:
            if job["paper_id"] not in titles:
                paper = self._papers.get_paper(job["paper_id"])
                titles[job["paper_id"]] = paper["title"] if paper else "Unknown"
        return {"activity": [{**job, "paper_title": titles[job["paper_id"]]} for job in jobs]}

    async def test_analysis(
        self,
        *,
        paper_id: Optional[int] = None,
        external_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Analyse one paper synchronously; spend is recorded, the analysis is not stored."""
        if not paper_id and not external_id:
            raise BatchRequestError("Provide paper_id or external_id")
        paper = self._papers.get_paper(paper_id) if paper_id else self._papers.get_by_external_id(external_id)
        if paper is None:
            raise PaperNotFoundError("Paper not found")
        if self._llm is None or not self._llm.is_configured():
            raise LLMNotConfiguredError("OpenRouter API key not configured")

        started = time.monotonic()
        run = await PaperAnalyzerV3(self._llm, model=model).analyze(
            title=paper["title"],
            abstract=paper["abstract"],
            authors=[a.get("name", "") for a in paper.get("authors") or []],
            published=(paper.get("published_at") or "")[:10] or None,
            categories=paper.get("categories"),
        )
        elapsed_ms = int((time.monotonic() - started) * 1000)
        cost = cost_cents_for_tokens(run.tokens_used)
        self._batches.record_standalone_job(
            paper["id"], tokens_used=run.tokens_used, cost_cents=cost, processing_time_ms=elapsed_ms
        )
        return {
            "paper": {"id": paper["id"], "external_id": paper["external_id"], "title": paper["title"]},
            "analysis": run.outcome.analysis.to_dict(),
            "analysis_status": run.status,
            "validation_errors": run.validation_errors,
            "cost": {
                "tokens_used": run.tokens_used,
                "cost_cents": cost,
                "cost_dollars": f"${cost / 100:.3f}",
                "processing_time_ms": elapsed_ms,
            },
            "model": run.model,
        }

    async def auto_tick(self, size: int) -> Optional[Dict[str, Any]]:
        """
        Scheduled auto-analysis: start a batch when enabled, not paused and
        idle. A budget rejection pauses auto-analysis with the error as reason.
        """
        cfg = await self._config.get_v3_config()
        if not cfg.auto_enabled or cfg.paused:
            return None
        if self._batches.get_open_batch() is not None:
            logger.info("Auto-analysis tick: a batch is already open")
            return None
        try:
            return await self.start_batch(size, scope="auto")
        except BudgetExceededError as e:
            await self._config.set_paused(True, str(e))
            Logger.warning(f"Auto-analysis paused: {e}", file=LogFiles.BATCH)
            return None
