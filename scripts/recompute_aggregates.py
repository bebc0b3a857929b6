#!/usr/bin/env python3
"""
Rebuild community aggregates from the current rankings.

Drains pending deltas first, then recomputes either the given titles or
every title. Safe to run at any time; recomputing is idempotent.

    python scripts/recompute_aggregates.py            # all titles
    python scripts/recompute_aggregates.py 27205 1399  # selected titles
"""

import asyncio
import logging
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cannes.db.database import engine, init_db
from cannes.services.aggregate_service import AggregateRatingService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


async def main(title_ids: list[str]) -> None:
    await init_db()
    service = AggregateRatingService()
    try:
        applied = await service.drain_pending()
        print(f"Applied {applied} pending deltas")

        if title_ids:
            for title_id in title_ids:
                row = await service.recompute_aggregate(title_id)
                if row is None:
                    print(f"  {title_id}: no ratings")
                else:
                    print(f"  {title_id}: {row.rating_count} ratings, average {row.average_rating:.3f}")
        else:
            count = await service.recompute_all()
            print(f"Recomputed {count} titles")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
