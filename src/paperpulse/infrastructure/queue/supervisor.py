"""
Worker process supervisor.

Runs one arq worker per queue in a single process, keeps the AI-gated queues
in step with the runtime AI toggle and shuts every worker down together on a
signal or an unhandled loop error.

    paperpulse-worker                  # all queues
    paperpulse-worker --queues arxiv-fetch,backfill
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from arq.connections import ArqRedis
from arq.worker import Worker
from dotenv import find_dotenv, load_dotenv

from paperpulse.application.seeds.taxonomy_seed import seed_taxonomy
from paperpulse.application.services.runtime_config import AI_ENABLED_KEY
from paperpulse.infrastructure.queue.arq_worker import (
    STARTUP_INGEST_MAX,
    WorkerServices,
    build_services,
    build_worker,
    create_arq_pool,
)
from paperpulse.infrastructure.queue.job_queue import (
    AI_GATED_QUEUES,
    ARXIV_FETCH,
    INGEST_RECENT_JOB,
    QUEUE_POLICIES,
)
from paperpulse.infrastructure.redis.config_channel import ConfigChannel, ConfigEvent
from paperpulse.infrastructure.redis.connection import create_redis
from paperpulse.utils.env import env_bool, env_flag, parse_bool
from paperpulse.utils.logging_config import LogFiles, Logger

logger = logging.getLogger(__name__)

STARTUP_DELAY_SECONDS = 5


def _event_enabled(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return parse_bool(str(value))


class WorkerSupervisor:
    def __init__(
        self,
        services: WorkerServices,
        *,
        queues: Optional[Sequence[str]] = None,
        channel: Optional[ConfigChannel] = None,
        schedule: bool = True,
    ):
        self.services = services
        self.queues = list(queues or QUEUE_POLICIES)
        self.channel = channel
        self.schedule = schedule
        self.workers: Dict[str, Worker] = {}
        self._stop = asyncio.Event()
        self._closed = False

    # ------------------------------------------------------------------
    # AI toggle
    # ------------------------------------------------------------------

    async def apply_ai_toggle(self) -> bool:
        """
        AI_ENABLED=false in the environment is an emergency kill switch and
        overwrites the shared toggle; otherwise the shared toggle decides.
        """
        config = self.services.runtime_config
        if env_flag("AI_ENABLED") is False:
            await config.set_ai_enabled(False)
            Logger.warning("AI kill switch set in environment; shared toggle forced off", file=LogFiles.CONFIG)
            enabled = False
        else:
            enabled = await config.get_ai_enabled(skip_cache=True)
        await self._set_ai_queues(enabled)
        return enabled

    async def _set_ai_queues(self, enabled: bool) -> None:
        for queue_name in AI_GATED_QUEUES:
            if enabled:
                await self.services.job_queue.resume(queue_name)
            else:
                await self.services.job_queue.pause(queue_name)
        logger.info("AI-gated queues %s", "resumed" if enabled else "paused")

    async def on_config_event(self, event: ConfigEvent) -> None:
        await self.services.runtime_config.handle_event(event)
        if event.key == AI_ENABLED_KEY or event.key == "ai_enabled":
            await self._set_ai_queues(_event_enabled(event.value))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def schedule_startup_ingestion(self) -> Optional[str]:
        today = datetime.now(timezone.utc).date().isoformat()
        return await self.services.job_queue.enqueue(
            ARXIV_FETCH,
            INGEST_RECENT_JOB,
            {"use_all_ai_categories": True, "max_results": STARTUP_INGEST_MAX},
            job_id=f"ingest-startup-{today}",
            delay_seconds=STARTUP_DELAY_SECONDS,
        )

    async def start(self) -> None:
        inserted = seed_taxonomy(self.services.analysis_store)
        logger.info("Taxonomy ready (%d seeded)", inserted)
        enabled = await self.apply_ai_toggle()
        Logger.info(f"Supervisor starting: queues={self.queues} ai_enabled={enabled}", file=LogFiles.QUEUE)

        if self.channel is not None:
            self.channel.register(self.on_config_event)
            await self.channel.start()

        for queue_name in self.queues:
            self.workers[queue_name] = build_worker(
                queue_name, self.services, with_cron=self.schedule and queue_name == ARXIV_FETCH
            )
        if self.schedule and ARXIV_FETCH in self.queues:
            await self.schedule_startup_ingestion()

    def request_stop(self, reason: str = "signal") -> None:
        if not self._stop.is_set():
            logger.info("Shutdown requested (%s)", reason)
            self._stop.set()

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        loop.default_exception_handler(context)
        self.request_stop("unhandled exception")

    def _on_worker_done(self, queue_name: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.error("Worker %s crashed: %r", queue_name, task.exception())
            self.request_stop(f"worker {queue_name} crashed")

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop, sig.name)
        loop.set_exception_handler(self._on_loop_exception)

    async def run(self) -> None:
        await self.start()
        tasks: List[asyncio.Task] = []
        for queue_name, worker in self.workers.items():
            task = asyncio.create_task(worker.async_run(), name=f"worker:{queue_name}")
            task.add_done_callback(lambda t, q=queue_name: self._on_worker_done(q, t))
            tasks.append(task)
        try:
            await self._stop.wait()
        finally:
            await self.shutdown()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Close every worker, then the config subscription and shared clients."""
        if self._closed:
            return
        self._closed = True
        results = await asyncio.gather(*(w.close() for w in self.workers.values()), return_exceptions=True)
        for queue_name, result in zip(self.workers, results):
            if isinstance(result, Exception):
                logger.error("Closing worker %s failed: %r", queue_name, result)
        if self.channel is not None:
            await self.channel.stop()
        await self.services.close()
        Logger.info("Supervisor stopped", file=LogFiles.QUEUE)


async def run_supervisor(queues: Optional[Sequence[str]] = None, *, schedule: bool = True) -> None:
    pool: ArqRedis = await create_arq_pool()
    services = build_services(pool)
    channel = ConfigChannel(create_redis())
    supervisor = WorkerSupervisor(services, queues=queues, channel=channel, schedule=schedule)
    supervisor.install_signal_handlers()
    try:
        await supervisor.run()
    finally:
        await pool.aclose()


def main(argv: Optional[Sequence[str]] = None) -> None:
    load_dotenv(find_dotenv(usecwd=True), override=False)
    parser = argparse.ArgumentParser(description="Run PaperPulse queue workers")
    parser.add_argument("--queues", default="", help="Comma-separated queue names (default: all)")
    parser.add_argument("--no-schedule", action="store_true", help="Do not register cron or startup jobs")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    Logger.init()
    queues = [q.strip() for q in args.queues.split(",") if q.strip()] or None
    unknown = [q for q in queues or [] if q not in QUEUE_POLICIES]
    if unknown:
        parser.error(f"unknown queues: {', '.join(unknown)}")
    schedule = not args.no_schedule and env_bool("PAPERPULSE_CRON_ENABLED", True)
    asyncio.run(run_supervisor(queues, schedule=schedule))


if __name__ == "__main__":
    main()
