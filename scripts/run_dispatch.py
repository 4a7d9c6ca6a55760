from __future__ import annotations

import argparse
import asyncio
import json

from leadflow.core.config import get_settings
from leadflow.core.logging import configure_logging
from leadflow.persistence.db import Database
from leadflow.providers.conversions.factory import get_conversion_provider
from leadflow.services.jobs import dispatch_conversions, recover_processing
from leadflow.services.resilience import close_redis, open_redis


async def _run(limit: int | None, recover: bool) -> None:
    # One-shot dispatch pass for operators; shares the cron lock with the worker.
    settings = get_settings()
    configure_logging(settings.log_level)
    database = Database(settings=settings)
    redis = open_redis(settings)
    provider = get_conversion_provider(settings)
    try:
        if recover:
            recovered = await recover_processing(
                database,
                redis=redis,
                provider=provider,
                min_age_minutes=settings.dispatch_stuck_after_minutes,
                settings=settings,
            )
            print(f"recover={json.dumps(recovered, sort_keys=True)}")
        result = await dispatch_conversions(
            database, redis=redis, provider=provider, limit=limit, settings=settings
        )
        print(f"dispatch={json.dumps(result, sort_keys=True)}")
    finally:
        await provider.aclose()
        await close_redis(redis)
        await database.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Upload queued conversions once")
    parser.add_argument("--limit", type=int, default=None, help="Max rows to claim this pass")
    parser.add_argument("--recover", action="store_true", help="Return stuck PROCESSING rows first")
    args = parser.parse_args()
    asyncio.run(_run(args.limit, args.recover))


if __name__ == "__main__":
    main()
