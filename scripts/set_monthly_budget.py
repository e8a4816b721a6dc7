from __future__ import annotations

import argparse
import asyncio

from datapilot.persistence.db import SessionLocal
from datapilot.services.credits import CreditLedger


async def _run(tenant_id: str, amount: float) -> None:
    ledger = CreditLedger(SessionLocal)
    snapshot = await ledger.set_monthly_budget(tenant_id, amount)
    print(
        f"tenant_id={tenant_id} period_start={snapshot.period_start.date().isoformat()} "
        f"allocated={snapshot.allocated:.2f} used={snapshot.used:.4f} remaining={snapshot.remaining:.4f}"
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Set a tenant's credit allocation for the current month.")
    parser.add_argument("--tenant", required=True, help="Tenant id")
    parser.add_argument("--amount", required=True, type=float, help="Allocation in USD")
    args = parser.parse_args()
    if args.amount < 0:
        parser.error("--amount must be non-negative")
    asyncio.run(_run(args.tenant, args.amount))


if __name__ == "__main__":
    main()
