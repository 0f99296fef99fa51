"""
Named job queues on top of arq.

arq gives us per-queue workers, deferred jobs and deduplication by job id
(``enqueue_job`` returns None while a job with the same id is queued,
running, or its result is still kept). The rest of the queue contract
lives here:

- a fixed attempt count per queue with exponential backoff,
- pause/resume per queue (a Redis flag checked before each job runs),
- a jobs-per-minute rate limit per queue,
- a bounded list of permanently failed jobs for inspection.

All of it is applied by the ``queue_job`` decorator around each arq job
function. Deferrals for pause and rate limiting go through ``arq.Retry``
and hand their arq try back; real attempts are counted here.
"""

from __future__ import annotations

import functools
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from arq import Retry
from arq.constants import job_key_prefix, retry_key_prefix

from paperpulse.utils.logging_config import LogFiles, Logger, job_trace

logger = logging.getLogger(__name__)

ARXIV_FETCH = "arxiv-fetch"
BACKFILL = "backfill"
SUMMARY_GENERATION = "summary-generation"
SOCIAL_MONITOR = "social-monitor"
NEWS_FETCH = "news-fetch"
PAPER_ANALYSIS = "paper-analysis"
PAPER_ANALYSIS_V3 = "paper-analysis-v3"

# arq function names
INGEST_RECENT_JOB = "ingest_recent_job"
INGEST_DATE_JOB = "ingest_date_job"
SUMMARY_JOB = "summary_job"
SOCIAL_MONITOR_JOB = "social_monitor_job"
NEWS_FETCH_JOB = "news_fetch_job"
CARD_ANALYSIS_JOB = "card_analysis_job"
ANALYSIS_V3_JOB = "analysis_v3_job"

KEEP_RESULT_SECONDS = 3600
FAILED_RETENTION = 50
PAUSE_POLL_SECONDS = 5
# arq-level ceiling; pause and rate-limit deferrals do not count against it
WORKER_MAX_TRIES = 10_000


@dataclass(frozen=True)
class QueuePolicy:
    name: str
    attempts: int
    backoff_seconds: float
    concurrency: int = 1
    rate_per_minute: Optional[int] = None
    ai_gated: bool = False

    def backoff_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1)."""
        return self.backoff_seconds * 2 ** (max(1, attempt) - 1)


QUEUE_POLICIES: Dict[str, QueuePolicy] = {
    p.name: p
    for p in (
        QueuePolicy(ARXIV_FETCH, attempts=3, backoff_seconds=5),
        QueuePolicy(BACKFILL, attempts=3, backoff_seconds=5),
        QueuePolicy(SUMMARY_GENERATION, attempts=3, backoff_seconds=10, concurrency=2, rate_per_minute=10, ai_gated=True),
        QueuePolicy(SOCIAL_MONITOR, attempts=2, backoff_seconds=5, concurrency=2, rate_per_minute=20),
        QueuePolicy(NEWS_FETCH, attempts=2, backoff_seconds=5, rate_per_minute=5),
        QueuePolicy(PAPER_ANALYSIS, attempts=3, backoff_seconds=15, rate_per_minute=5, ai_gated=True),
        QueuePolicy(PAPER_ANALYSIS_V3, attempts=3, backoff_seconds=15, rate_per_minute=5),
    )
}

AI_GATED_QUEUES = tuple(name for name, p in QUEUE_POLICIES.items() if p.ai_gated)


def get_policy(queue_name: str) -> QueuePolicy:
    try:
        return QUEUE_POLICIES[queue_name]
    except KeyError:
        raise ValueError(f"unknown queue: {queue_name}") from None


def paused_key(queue_name: str) -> str:
    return f"queue:{queue_name}:paused"


def attempts_key(queue_name: str) -> str:
    return f"queue:{queue_name}:attempts"


def failed_key(queue_name: str) -> str:
    return f"queue:{queue_name}:failed"


def rate_key(queue_name: str, window: int) -> str:
    return f"queue:{queue_name}:rate:{window}"


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


async def is_queue_paused(redis, queue_name: str) -> bool:
    return bool(await redis.exists(paused_key(queue_name)))


async def take_rate_slot(redis, policy: QueuePolicy, *, now: Optional[float] = None) -> float:
    """
    Claim a slot in the current one-minute window.

    Returns 0 when the job may run, otherwise the seconds until the next
    window opens.
    """
    if not policy.rate_per_minute:
        return 0.0
    now = time.time() if now is None else now
    window = int(now // 60)
    key = rate_key(policy.name, window)
    count = await redis.incr(key)
    if count == 1:
        await redis.expire(key, 120)
    if count > policy.rate_per_minute:
        return (window + 1) * 60 - now
    return 0.0


async def record_failed_job(
    redis,
    queue_name: str,
    *,
    job_id: Optional[str],
    job_type: str,
    payload: Any,
    error: BaseException,
    attempts: int,
) -> Dict[str, Any]:
    record = {
        "job_id": job_id,
        "job_type": job_type,
        "payload": payload,
        "error": f"{type(error).__name__}: {error}",
        "attempts": attempts,
        "failed_at": datetime.now(timezone.utc).isoformat(),
    }
    key = failed_key(queue_name)
    await redis.lpush(key, json.dumps(record, default=str))
    await redis.ltrim(key, 0, FAILED_RETENTION - 1)
    return record


async def _hand_back_try(redis, job_id: Optional[str]) -> None:
    """Undo the try arq counted when it picked the job up (``arq:retry:<id>``)."""
    if job_id:
        await redis.decr(retry_key_prefix + job_id)


FinalFailureHook = Callable[[Dict[str, Any], Dict[str, Any], BaseException], Awaitable[None]]


def queue_job(*, on_final_failure: Optional[FinalFailureHook] = None):
    """
    Wrap an arq job function ``fn(ctx, payload)`` with the queue contract.

    The queue name comes from ``ctx["queue_name"]``, which each worker puts
    into its context.
    """

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(ctx: Dict[str, Any], payload: Optional[Dict[str, Any]] = None):
            payload = payload or {}
            redis = ctx["redis"]
            policy = get_policy(ctx["queue_name"])
            job_id = ctx.get("job_id")

            if await is_queue_paused(redis, policy.name):
                await _hand_back_try(redis, job_id)
                raise Retry(defer=PAUSE_POLL_SECONDS)
            wait = await take_rate_slot(redis, policy)
            if wait > 0:
                await _hand_back_try(redis, job_id)
                raise Retry(defer=wait)

            with job_trace(job_id):
                try:
                    result = await fn(ctx, payload)
                except Retry:
                    raise
                except Exception as exc:
                    attempt = int(await redis.hincrby(attempts_key(policy.name), job_id, 1))
                    if attempt < policy.attempts:
                        delay = policy.backoff_for(attempt)
                        Logger.warning(
                            f"{fn.__name__} {job_id} attempt {attempt}/{policy.attempts} failed: {exc}; "
                            f"retrying in {delay:.0f}s",
                            file=LogFiles.QUEUE,
                        )
                        raise Retry(defer=delay) from exc

                    await redis.hdel(attempts_key(policy.name), job_id)
                    await record_failed_job(
                        redis,
                        policy.name,
                        job_id=job_id,
                        job_type=fn.__name__,
                        payload=payload,
                        error=exc,
                        attempts=attempt,
                    )
                    Logger.error(
                        f"{fn.__name__} {job_id} failed permanently after {attempt} attempts: {exc}",
                        file=LogFiles.ERROR,
                    )
                    if on_final_failure is not None:
                        await on_final_failure(ctx, payload, exc)
                    raise
                await redis.hdel(attempts_key(policy.name), job_id)
                return result

        return wrapper

    return decorator


class JobQueue:
    """Producer side: enqueue, pause/resume, drain and inspect named queues."""

    def __init__(self, redis):
        # arq's ArqRedis; a redis.asyncio.Redis with enqueue_job
        self._redis = redis

    @property
    def redis(self):
        return self._redis

    async def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        job_id: Optional[str] = None,
        delay_seconds: float = 0,
    ) -> Optional[str]:
        """Returns the job id, or None when a job with ``job_id`` already exists."""
        get_policy(queue_name)
        job = await self._redis.enqueue_job(
            job_type,
            payload or {},
            _job_id=job_id,
            _queue_name=queue_name,
            _defer_by=delay_seconds or None,
        )
        if job is None:
            logger.info("Job %s already queued on %s; skipped", job_id, queue_name)
            return None
        return job.job_id

    async def pause(self, queue_name: str) -> None:
        get_policy(queue_name)
        await self._redis.set(paused_key(queue_name), "1")
        Logger.info(f"Queue {queue_name} paused", file=LogFiles.QUEUE)

    async def resume(self, queue_name: str) -> None:
        get_policy(queue_name)
        await self._redis.delete(paused_key(queue_name))
        Logger.info(f"Queue {queue_name} resumed", file=LogFiles.QUEUE)

    async def is_paused(self, queue_name: str) -> bool:
        return await is_queue_paused(self._redis, queue_name)

    async def queued_count(self, queue_name: str) -> int:
        return int(await self._redis.zcard(queue_name))

    async def failed_jobs(self, queue_name: str, limit: int = FAILED_RETENTION) -> List[Dict[str, Any]]:
        raw = await self._redis.lrange(failed_key(queue_name), 0, limit - 1)
        return [json.loads(_text(item)) for item in raw]

    async def drain(self, queue_name: str) -> int:
        """Drop every waiting or deferred job of a queue; running jobs are left alone."""
        job_ids = [_text(j) for j in await self._redis.zrange(queue_name, 0, -1)]
        keys = [job_key_prefix + j for j in job_ids] + [retry_key_prefix + j for j in job_ids]
        if keys:
            await self._redis.delete(*keys)
        await self._redis.delete(queue_name, attempts_key(queue_name))
        Logger.info(f"Queue {queue_name} drained ({len(job_ids)} jobs)", file=LogFiles.QUEUE)
        return len(job_ids)

    async def status(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for name, policy in QUEUE_POLICIES.items():
            out[name] = {
                "paused": await self.is_paused(name),
                "queued": await self.queued_count(name),
                "failed": await self.failed_jobs(name),
                "concurrency": policy.concurrency,
                "rate_per_minute": policy.rate_per_minute,
                "ai_gated": policy.ai_gated,
            }
        return out
