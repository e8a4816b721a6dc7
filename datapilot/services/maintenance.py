from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Literal

from datapilot.services.container import Services


logger = logging.getLogger(__name__)

MaintenanceTask = Literal["cleanup_query_cache", "cleanup_rate_limits"]
MAINTENANCE_TASKS: tuple[MaintenanceTask, ...] = ("cleanup_query_cache", "cleanup_rate_limits")


@dataclass(frozen=True)
class MaintenanceReport:
    cache_entries_removed: int
    rate_windows_removed: int


async def run_maintenance_task(services: Services, task: MaintenanceTask) -> int:
    # Dispatch maintenance tasks by name so scripts can run them individually.
    if task == "cleanup_query_cache":
        return await services.cache.cleanup()
    if task == "cleanup_rate_limits":
        return await services.rate_limiter.cleanup()
    raise ValueError(f"Unknown maintenance task: {task}")


async def run_maintenance_sweep(services: Services) -> MaintenanceReport:
    report = MaintenanceReport(
        cache_entries_removed=await run_maintenance_task(services, "cleanup_query_cache"),
        rate_windows_removed=await run_maintenance_task(services, "cleanup_rate_limits"),
    )
    logger.info(
        "maintenance_sweep cache_entries_removed=%s rate_windows_removed=%s",
        report.cache_entries_removed,
        report.rate_windows_removed,
    )
    return report


async def maintenance_loop(services: Services) -> None:
    # Periodic sweep for the API process; failures are logged and retried next interval.
    interval_s = max(1, int(services.settings.maintenance_interval_s))
    while True:
        await asyncio.sleep(interval_s)
        try:
            await run_maintenance_sweep(services)
        except Exception:  # noqa: BLE001 - keep the loop alive while surfacing failures in logs
            logger.exception("maintenance_sweep_failed")
