from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from datapilot.core.config import get_settings
from datapilot.core.logging import configure_logging
from datapilot.services.analysis.dispatch import AnalysisJobPayload
from datapilot.services.analysis.runner import JobContext
from datapilot.services.container import Services, build_services
from datapilot.services.maintenance import run_maintenance_sweep


logger = logging.getLogger(__name__)


async def run_background_analysis(ctx, payload: dict) -> str:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = AnalysisJobPayload.model_validate(payload)
    services: Services = ctx["services"]
    data_store = await services.data_stores.get(job_payload.tenant_id, job_payload.project_id)
    runner = services.analysis.dispatcher.runner
    await runner.run(
        JobContext(
            job_id=job_payload.job_id,
            tenant_id=job_payload.tenant_id,
            project_id=job_payload.project_id,
            credits_budget=job_payload.credits_budget,
            data_store=data_store,
        )
    )
    return job_payload.job_id


async def maintenance(ctx) -> None:
    await run_maintenance_sweep(ctx["services"])


async def _startup(ctx) -> None:
    # Build one set of services per worker process and share it across jobs.
    configure_logging()
    ctx["services"] = build_services()


async def _shutdown(ctx) -> None:
    services: Services | None = ctx.get("services")
    if services is not None:
        await services.aclose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.analysis_queue_name
    # A job owns its row and checkpoints progress; never replay it from the start.
    max_tries = 1
    max_jobs = max(1, settings.analysis_worker_concurrency)
    job_timeout = 3600
    functions = [run_background_analysis]
    cron_jobs = [cron(maintenance, minute=0, run_at_startup=False)]
    on_startup = _startup
    on_shutdown = _shutdown
