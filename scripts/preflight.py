from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys
from typing import Any

from redis.asyncio import Redis
from sqlalchemy import text

from datapilot.core.config import get_settings
from datapilot.persistence.db import SessionLocal
from datapilot.providers.llm.factory import get_completion_provider


def _latest_revision() -> str | None:
    # Resolve repository head revision directly from migration files for deterministic checks.
    versions = sorted(Path("datapilot/persistence/alembic/versions").glob("*.py"))
    if not versions:
        return None
    for line in versions[-1].read_text(encoding="utf-8").splitlines():
        if line.startswith("revision ="):
            return line.split("=", 1)[1].strip().strip('"')
    return None


async def _db_revision() -> str | None:
    async with SessionLocal() as session:
        return (
            await session.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))
        ).scalar_one_or_none()


async def _check_redis() -> bool | None:
    # Redis is only required when jobs are handed to the arq worker.
    settings = get_settings()
    if settings.analysis_execution_mode.lower() != "queue":
        return None
    client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping())
    except Exception:  # noqa: BLE001 - reported as a failed check
        return False
    finally:
        await client.aclose()


async def run_preflight(*, output_json: str | None) -> int:
    results: list[dict[str, Any]] = []

    try:
        db_rev = await _db_revision()
    except Exception as exc:  # noqa: BLE001 - reported as a failed check
        db_rev = None
        results.append({"check": "database_reachable", "status": "fail", "detail": {"error": str(exc)}})
    head_rev = _latest_revision()
    results.append(
        {
            "check": "alembic_current_matches_head",
            "status": "pass" if db_rev == head_rev else "fail",
            "detail": {"db_revision": db_rev, "head_revision": head_rev},
        }
    )

    provider = get_completion_provider()
    results.append(
        {
            "check": "completion_provider_configured",
            "status": "pass" if provider.is_configured() else "fail",
            "detail": {"provider": provider.name},
        }
    )

    redis_ok = await _check_redis()
    results.append(
        {
            "check": "redis_reachable",
            "status": "skip" if redis_ok is None else ("pass" if redis_ok else "fail"),
            "detail": {},
        }
    )

    failed = [row for row in results if row["status"] == "fail"]
    summary = {"status": "pass" if not failed else "fail", "checks": results}
    if output_json:
        output_path = Path(output_json)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0 if not failed else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run deploy preflight checks.")
    parser.add_argument("--output-json", default=None)
    args = parser.parse_args()
    return asyncio.run(run_preflight(output_json=args.output_json))


if __name__ == "__main__":
    sys.exit(main())
