"""
Seed demo orders (recovery/demo script)

Loads orders at every stage of the documentation workflow: some concluded,
some waiting on the customer, a couple suspended.

Usage (from backend/):
  python -m scripts.seed_test_orders
  python -m scripts.seed_test_orders --count 20 --replace
"""

import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import get_db_context
from services.order_service import compute_dashboard_stats, seed_test_orders
from services.order_store import MongoOrderStore
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def seed(count: int, replace: bool) -> int:
    async with get_db_context() as db:
        store = MongoOrderStore(db)
        orders = await seed_test_orders(store, count=count, replace=replace)
        stats = compute_dashboard_stats(await store.list())
        logger.info(
            "Seeded %d orders. Totals: %d orders, %d in progress, %d suspended, %d concluded",
            len(orders), stats.total, stats.in_progress, stats.suspended, stats.concluded,
        )
        return len(orders)


def main():
    parser = argparse.ArgumentParser(description="Seed demo orders into MongoDB")
    parser.add_argument("--count", type=int, default=10, help="Number of orders (default 10)")
    parser.add_argument("--replace", action="store_true", help="Delete existing orders first")
    args = parser.parse_args()
    if args.count < 1:
        parser.error("--count must be at least 1")
        return 1
    seeded = asyncio.run(seed(args.count, args.replace))
    return 0 if seeded else 1


if __name__ == "__main__":
    sys.exit(main())
