from __future__ import annotations

import argparse
import asyncio
import sys

from datapilot.core.config import get_settings
from datapilot.datastores.registry import DataStoreRegistry
from datapilot.providers.llm.factory import get_completion_provider
from datapilot.services.ask import AskService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ask one question against a project's data store without touching the cache or ledger."
    )
    parser.add_argument("--tenant", required=True, help="Tenant id")
    parser.add_argument("--project", required=True, help="Project id")
    parser.add_argument("--question", required=True, help="Natural-language question")
    parser.add_argument("--timeout-ms", type=int, default=None, help="Execution timeout override")
    return parser


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    registry = DataStoreRegistry(settings)
    try:
        store = await registry.get(args.tenant, args.project)
        result = await AskService(get_completion_provider(settings), settings).ask(
            store, args.question, timeout_ms=args.timeout_ms
        )
    finally:
        await registry.close_all()

    if not result.success:
        print(f"{result.error_type}: {result.error}", file=sys.stderr)
        if result.sql:
            print(f"sql: {result.sql}", file=sys.stderr)
        return 1
    print(f"sql: {result.sql}")
    print(f"visualization_type={result.visualization_type} rows={result.row_count} truncated={result.truncated}")
    for row in result.rows[:5]:
        print(f"- {row}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
