from __future__ import annotations

import argparse
from datetime import date, timedelta
import random

from sqlalchemy import create_engine, text

from datapilot.datastores.registry import DataStoreRegistry


DEMO_TENANT_ID = "t1"
DEMO_PROJECT_ID = "p1"
REGIONS = ("north", "south", "east", "west")
PRODUCTS = (("widget", 19.99), ("gadget", 49.5), ("gizmo", 7.25), ("doohickey", 120.0))


def build_demo_orders(count: int, *, seed: int = 7) -> list[dict]:
    # Deterministic rows so demo questions give repeatable answers.
    rng = random.Random(seed)
    start = date(2025, 1, 1)
    rows = []
    for index in range(count):
        product, price = PRODUCTS[rng.randrange(len(PRODUCTS))]
        quantity = rng.randint(1, 12)
        rows.append(
            {
                "id": index + 1,
                "order_date": (start + timedelta(days=rng.randrange(365))).isoformat(),
                "region": REGIONS[rng.randrange(len(REGIONS))],
                "product": product,
                "quantity": quantity,
                "revenue": round(price * quantity, 2),
            }
        )
    return rows


def seed(tenant_id: str, project_id: str, count: int) -> str:
    url = DataStoreRegistry().store_url(tenant_id, project_id)
    # Project stores are opened read-only by the service, so seed through a separate writable engine.
    engine = create_engine(url)
    try:
        with engine.begin() as conn:
            conn.execute(text("DROP TABLE IF EXISTS orders"))
            conn.execute(
                text(
                    "CREATE TABLE orders (id INTEGER PRIMARY KEY, order_date TEXT, region TEXT, "
                    "product TEXT, quantity INTEGER, revenue REAL)"
                )
            )
            conn.execute(
                text(
                    "INSERT INTO orders (id, order_date, region, product, quantity, revenue) "
                    "VALUES (:id, :order_date, :region, :product, :quantity, :revenue)"
                ),
                build_demo_orders(count),
            )
    finally:
        engine.dispose()
    return url


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a demo orders table into a project data store.")
    parser.add_argument("--tenant", default=DEMO_TENANT_ID)
    parser.add_argument("--project", default=DEMO_PROJECT_ID)
    parser.add_argument("--rows", type=int, default=500)
    args = parser.parse_args()
    url = seed(args.tenant, args.project, args.rows)
    print(f"seeded_orders={args.rows} store={url}")


if __name__ == "__main__":
    main()
