from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel

from datapilot.core.config import Settings, get_settings
from datapilot.services.analysis.runner import AnalysisRunner, JobContext
from datapilot.services.resilience import Bulkhead


logger = logging.getLogger(__name__)

ANALYSIS_TASK_NAME = "run_background_analysis"


class AnalysisJobPayload(BaseModel):
    # Data stores are process-local, so the worker reopens the project store itself.
    job_id: str
    tenant_id: str
    project_id: str
    credits_budget: float


class AnalysisDispatcher:
    """Hands accepted jobs to an executor without blocking the caller.

    Modes follow ``analysis_execution_mode``:
    ``task`` runs jobs on this event loop behind a bounded bulkhead,
    ``inline`` awaits the job before returning (tests and scripts), and
    ``queue`` enqueues the job for the arq analysis worker.
    """

    def __init__(self, runner: AnalysisRunner, settings: Settings | None = None) -> None:
        self._runner = runner
        self._settings = settings or get_settings()
        self._bulkhead = Bulkhead("analysis", self._settings.analysis_worker_concurrency)
        self._tasks: dict[str, asyncio.Task] = {}
        self._redis: ArqRedis | None = None
        self._redis_loop: asyncio.AbstractEventLoop | None = None
        self._redis_lock = asyncio.Lock()

    @property
    def mode(self) -> str:
        return self._settings.analysis_execution_mode.lower()

    @property
    def runner(self) -> AnalysisRunner:
        return self._runner

    @property
    def bulkhead(self) -> Bulkhead:
        return self._bulkhead

    async def submit(self, context: JobContext) -> None:
        mode = self.mode
        if mode == "inline":
            await self._runner.run(context)
            return
        if mode == "queue":
            await self._enqueue(context)
            return
        task = asyncio.create_task(
            self._bulkhead.run(lambda: self._runner.run(context)),
            name=f"analysis:{context.job_id}",
        )
        self._tasks[context.job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(context.job_id, None))
        logger.info("analysis_dispatched job_id=%s mode=task", context.job_id)

    def pending(self) -> list[str]:
        return list(self._tasks)

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        # Cancelled runners persist a failed status before exiting.
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _get_redis(self) -> ArqRedis:
        # Cache the pool per event loop to avoid cross-loop errors in tests.
        current_loop = asyncio.get_running_loop()
        if self._redis is not None and self._redis_loop is current_loop:
            return self._redis
        async with self._redis_lock:
            if self._redis is None or self._redis_loop is not current_loop:
                self._redis = await create_pool(
                    RedisSettings.from_dsn(self._settings.redis_url),
                    default_queue_name=self._settings.analysis_queue_name,
                )
                self._redis_loop = current_loop
        return self._redis

    async def _enqueue(self, context: JobContext) -> None:
        payload = AnalysisJobPayload(
            job_id=context.job_id,
            tenant_id=context.tenant_id,
            project_id=context.project_id,
            credits_budget=context.credits_budget,
        )
        redis = await self._get_redis()
        await redis.enqueue_job(
            ANALYSIS_TASK_NAME,
            payload.model_dump(),
            _job_id=context.job_id,
            _queue_name=self._settings.analysis_queue_name,
        )
        logger.info("analysis_dispatched job_id=%s mode=queue", context.job_id)
