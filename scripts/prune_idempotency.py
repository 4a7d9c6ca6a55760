from __future__ import annotations

import argparse
import asyncio

from leadflow.core.config import get_settings
from leadflow.core.logging import configure_logging
from leadflow.persistence.db import Database
from leadflow.services.jobs import cleanup_idempotency
from leadflow.services.resilience import close_redis, open_redis


async def prune(batch_size: int, max_batches: int) -> None:
    # Remove expired idempotency records to keep storage bounded.
    settings = get_settings()
    configure_logging(settings.log_level)
    database = Database(settings=settings)
    redis = open_redis(settings)
    try:
        result = await cleanup_idempotency(
            database,
            redis=redis,
            batch_size=batch_size,
            max_batches=max_batches,
            settings=settings,
        )
    finally:
        await close_redis(redis)
        await database.close()
    if result.get("skipped"):
        print(f"skipped reason={result['reason']}")
        return
    print(f"pruned_idempotency_records={result['deleted']}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune expired ingest idempotency records")
    parser.add_argument("--batch-size", type=int, default=5000)
    parser.add_argument("--max-batches", type=int, default=20)
    args = parser.parse_args()
    asyncio.run(prune(args.batch_size, args.max_batches))


if __name__ == "__main__":
    main()
