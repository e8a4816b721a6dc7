from __future__ import annotations

import argparse
import asyncio
import sys

from datapilot.core.logging import configure_logging
from datapilot.services.container import build_services
from datapilot.services.maintenance import MAINTENANCE_TASKS, run_maintenance_task


async def _run(tasks: list[str]) -> int:
    services = build_services()
    try:
        for task in tasks:
            removed = await run_maintenance_task(services, task)  # type: ignore[arg-type]
            print(f"{task}={removed}")
    finally:
        await services.aclose()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Delete expired cache entries and stale rate-limit windows.")
    parser.add_argument(
        "--task",
        action="append",
        choices=list(MAINTENANCE_TASKS),
        help="Run only the named task (repeatable); defaults to all tasks.",
    )
    args = parser.parse_args()
    configure_logging()
    return asyncio.run(_run(args.task or list(MAINTENANCE_TASKS)))


if __name__ == "__main__":
    sys.exit(main())
