# src/paperpulse/api/routes/admin.py
"""
Admin control API routes.

Provides endpoints for:
- The runtime AI toggle
- v3 analysis batches, budget and spend
- Manual and gap-based backfill
- Queue inspection and bulk queueing of AI work
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from paperpulse.application.services.budget import BudgetController
from paperpulse.application.services.runtime_config import RuntimeConfigService
from paperpulse.application.workflows.ai_jobs import queue_card_analyses, queue_summaries
from paperpulse.application.workflows.analysis_batches import DEFAULT_BATCH_SIZE, AnalysisBatchService
from paperpulse.application.workflows.backfill_scheduler import BackfillScheduler
from paperpulse.domain.errors import (
    AIDisabledError,
    BackfillRequestError,
    BatchConflictError,
    BatchRequestError,
    BudgetExceededError,
    LLMNotConfiguredError,
    NotFoundError,
    PaperPulseError,
)
from paperpulse.infrastructure.llm.openrouter_client import OpenRouterClient
from paperpulse.infrastructure.queue.job_queue import AI_GATED_QUEUES, JobQueue
from paperpulse.infrastructure.redis.config_store import RedisConfigStore
from paperpulse.infrastructure.redis.connection import create_redis
from paperpulse.infrastructure.stores.analysis_v3_store import AnalysisV3Store
from paperpulse.infrastructure.stores.batch_store import BatchStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from paperpulse.utils.logging_config import LogFiles, Logger, clear_trace_id, set_trace_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")

# Lazy-initialized dependencies
_paper_store: Optional[PaperStore] = None
_v3_store: Optional[AnalysisV3Store] = None
_batch_store: Optional[BatchStore] = None
_runtime_config: Optional[RuntimeConfigService] = None
_job_queue: Optional[JobQueue] = None
_llm: Optional[OpenRouterClient] = None


def _get_paper_store() -> PaperStore:
    global _paper_store
    if _paper_store is None:
        _paper_store = PaperStore()
    return _paper_store


def _get_v3_store() -> AnalysisV3Store:
    global _v3_store
    if _v3_store is None:
        _v3_store = AnalysisV3Store()
    return _v3_store


def _get_batch_store() -> BatchStore:
    global _batch_store
    if _batch_store is None:
        _batch_store = BatchStore()
    return _batch_store


def _get_runtime_config() -> RuntimeConfigService:
    global _runtime_config
    if _runtime_config is None:
        _runtime_config = RuntimeConfigService(RedisConfigStore(create_redis()))
    return _runtime_config


async def _get_job_queue() -> JobQueue:
    """Producer pool; job functions live in the worker process."""
    from paperpulse.infrastructure.queue.arq_worker import create_arq_pool

    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue(await create_arq_pool())
    return _job_queue


def _get_llm() -> OpenRouterClient:
    global _llm
    if _llm is None:
        _llm = OpenRouterClient()
    return _llm


async def _get_batch_service() -> AnalysisBatchService:
    config = _get_runtime_config()
    batch_store = _get_batch_store()
    return AnalysisBatchService(
        paper_store=_get_paper_store(),
        v3_store=_get_v3_store(),
        batch_store=batch_store,
        job_queue=await _get_job_queue(),
        budget=BudgetController(config, batch_store),
        runtime_config=config,
        llm=_get_llm(),
    )


def _raise_http(e: PaperPulseError) -> NoReturn:
    """Map domain errors onto HTTP status codes."""
    if isinstance(e, BudgetExceededError):
        raise HTTPException(
            status_code=422,
            detail={
                "error": str(e),
                "window": e.window,
                "spent_cents": e.spent_cents,
                "budget_cents": e.budget_cents,
                "requested_cents": e.requested_cents,
            },
        ) from e
    if isinstance(e, BatchConflictError):
        raise HTTPException(status_code=409, detail={"error": str(e), "batch_id": e.batch_id}) from e
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=404, detail=str(e)) from e
    if isinstance(e, (BackfillRequestError, BatchRequestError)):
        raise HTTPException(status_code=400, detail=str(e)) from e
    if isinstance(e, (AIDisabledError, LLMNotConfiguredError)):
        raise HTTPException(status_code=503, detail=str(e)) from e
    raise e


# ============================================================================
# AI toggle
# ============================================================================


class AIToggleRequest(BaseModel):
    enabled: bool


@router.get("/ai-toggle")
async def get_ai_toggle():
    return await _get_runtime_config().get_ai_toggle_info()


@router.post("/ai-toggle")
async def set_ai_toggle(request: AIToggleRequest):
    """Set the shared AI toggle and pause/resume the AI-gated queues to match."""
    updated_at = await _get_runtime_config().set_ai_enabled(request.enabled)
    job_queue = await _get_job_queue()
    for queue_name in AI_GATED_QUEUES:
        if request.enabled:
            await job_queue.resume(queue_name)
        else:
            await job_queue.pause(queue_name)
    return {
        "enabled": request.enabled,
        "updated_at": updated_at,
        "message": f"AI processing {'enabled' if request.enabled else 'disabled'}",
    }


# ============================================================================
# Analysis v3
# ============================================================================


class BatchRequest(BaseModel):
    batch_size: int = Field(DEFAULT_BATCH_SIZE, description="Papers in the batch; clamped to 1..10000")


class AutoAnalysisRequest(BaseModel):
    enabled: bool


class BudgetRequest(BaseModel):
    daily_budget_cents: Optional[int] = Field(None, ge=0)
    monthly_budget_cents: Optional[int] = Field(None, ge=0)


class RetryRequest(BaseModel):
    job_id: Optional[int] = None
    batch_id: Optional[int] = None


class SingleAnalysisRequest(BaseModel):
    paper_id: Optional[int] = None
    external_id: Optional[str] = None
    model: Optional[str] = None


@router.get("/analysis-v3/status")
async def analysis_v3_status():
    return await (await _get_batch_service()).status()


@router.get("/analysis-v3/estimate")
async def analysis_v3_estimate():
    return await (await _get_batch_service()).estimate()


@router.get("/analysis-v3/spending")
async def analysis_v3_spending():
    return (await _get_batch_service()).spending()


@router.get("/analysis-v3/history")
async def analysis_v3_history(limit: int = Query(20, ge=1, le=100)):
    return (await _get_batch_service()).history(limit)


@router.get("/analysis-v3/activity")
async def analysis_v3_activity(limit: int = Query(20, ge=1, le=50)):
    return (await _get_batch_service()).activity(limit)


@router.post("/analysis-v3/batch")
async def start_analysis_batch(request: BatchRequest):
    trace_id = set_trace_id()
    Logger.info(f"[{trace_id}] Batch requested: size={request.batch_size}", file=LogFiles.BATCH)
    try:
        return await (await _get_batch_service()).start_batch(request.batch_size, scope="manual")
    except PaperPulseError as e:
        _raise_http(e)
    finally:
        clear_trace_id()


@router.post("/analysis-v3/pause")
async def pause_analysis_batch():
    return await (await _get_batch_service()).pause()


@router.post("/analysis-v3/resume")
async def resume_analysis_batch():
    return await (await _get_batch_service()).resume()


@router.post("/analysis-v3/cancel")
async def cancel_analysis_batch():
    return await (await _get_batch_service()).cancel()


@router.post("/analysis-v3/auto")
async def set_auto_analysis(request: AutoAnalysisRequest):
    await _get_runtime_config().set_auto_analysis(request.enabled)
    return {"auto_enabled": request.enabled}


@router.get("/analysis-v3/budget")
async def get_analysis_budget():
    config = await _get_runtime_config().get_v3_config()
    return {
        "daily_budget_cents": config.daily_budget_cents,
        "monthly_budget_cents": config.monthly_budget_cents,
    }


@router.post("/analysis-v3/budget")
async def set_analysis_budget(request: BudgetRequest):
    if request.daily_budget_cents is None and request.monthly_budget_cents is None:
        raise HTTPException(status_code=400, detail="Provide daily_budget_cents or monthly_budget_cents")
    config = _get_runtime_config()
    await config.set_budget(daily_cents=request.daily_budget_cents, monthly_cents=request.monthly_budget_cents)
    updated = await config.get_v3_config()
    return {
        "daily_budget_cents": updated.daily_budget_cents,
        "monthly_budget_cents": updated.monthly_budget_cents,
    }


@router.post("/analysis-v3/retry")
async def retry_analysis_jobs(request: RetryRequest):
    try:
        return await (await _get_batch_service()).retry(job_id=request.job_id, batch_id=request.batch_id)
    except PaperPulseError as e:
        _raise_http(e)
    except Exception as e:
        logger.exception("Batch retry failed")
        raise HTTPException(status_code=500, detail="Batch retry failed") from e


@router.post("/analysis-v3/test")
async def run_single_analysis(request: SingleAnalysisRequest):
    """Run one v3 analysis synchronously; the result is returned, not stored."""
    try:
        return await (await _get_batch_service()).test_analysis(
            paper_id=request.paper_id, external_id=request.external_id, model=request.model
        )
    except PaperPulseError as e:
        _raise_http(e)


# ============================================================================
# Backfill
# ============================================================================


class BackfillRequest(BaseModel):
    start_date: str = Field(..., description="YYYY-MM-DD")
    end_date: str = Field(..., description="YYYY-MM-DD")
    categories: Optional[List[str]] = None
    delay_ms: Optional[int] = Field(None, ge=0)


class GapBackfillRequest(BackfillRequest):
    threshold: int = Field(50, ge=0, description="Days with fewer papers count as gaps")


async def _get_backfill_scheduler() -> BackfillScheduler:
    return BackfillScheduler(_get_paper_store(), await _get_job_queue())


@router.post("/backfill")
async def backfill(request: BackfillRequest):
    try:
        return await (await _get_backfill_scheduler()).backfill_range(
            request.start_date, request.end_date, categories=request.categories, delay_ms=request.delay_ms
        )
    except PaperPulseError as e:
        _raise_http(e)


@router.post("/backfill/gaps")
async def backfill_gaps(request: GapBackfillRequest):
    try:
        return await (await _get_backfill_scheduler()).backfill_gaps(
            request.start_date,
            request.end_date,
            threshold=request.threshold,
            categories=request.categories,
            delay_ms=request.delay_ms,
        )
    except PaperPulseError as e:
        _raise_http(e)


# ============================================================================
# Queues
# ============================================================================


class QueueAnalysesRequest(BaseModel):
    limit: int = Field(50, ge=1)
    delay_ms: int = Field(15000, ge=0)
    model: Optional[str] = None
    force: bool = False


class QueueSummariesRequest(BaseModel):
    limit: int = Field(100, ge=1)
    delay_ms: int = Field(1000, ge=0)


@router.get("/queues")
async def queue_status() -> Dict[str, Any]:
    return {"queues": await (await _get_job_queue()).status()}


@router.post("/queue-analyses")
async def queue_analyses(request: QueueAnalysesRequest):
    """Queue DTL-P analysis for papers without one."""
    try:
        return await queue_card_analyses(
            _get_paper_store(),
            await _get_job_queue(),
            _get_runtime_config(),
            limit=request.limit,
            delay_ms=request.delay_ms,
            model=request.model,
            force=request.force,
        )
    except PaperPulseError as e:
        _raise_http(e)


@router.post("/queue-summaries")
async def queue_summary_jobs(request: QueueSummariesRequest):
    try:
        return await queue_summaries(
            _get_paper_store(),
            await _get_job_queue(),
            _get_runtime_config(),
            limit=request.limit,
            delay_ms=request.delay_ms,
        )
    except PaperPulseError as e:
        _raise_http(e)
