from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import json

from leadflow.core.config import get_settings
from leadflow.core.logging import configure_logging
from leadflow.persistence.db import Database
from leadflow.services import reconciliation
from leadflow.services.ingest.idempotency import year_month_of
from leadflow.services.resilience import close_redis, open_redis


async def _run(tenant: str | None, year_month: str | None) -> None:
    # Without --tenant this runs the queued flow; with it, one tenant-month is recounted directly.
    settings = get_settings()
    configure_logging(settings.log_level)
    database = Database(settings=settings)
    redis = open_redis(settings)
    try:
        async with database.session() as session:
            if tenant is None:
                queued = await reconciliation.enqueue_jobs(session)
                print(f"enqueue={json.dumps(queued, sort_keys=True)}")
                ran = await reconciliation.run_jobs(session, redis=redis, settings=settings)
                print(f"run={json.dumps(ran, sort_keys=True)}")
                return
            month = year_month or year_month_of(datetime.now(timezone.utc))
            summary = await reconciliation.reconcile(session, redis=redis, tenant_id=tenant, year_month=month)
            print(json.dumps(summary.as_dict(), sort_keys=True, default=str))
    finally:
        await close_redis(redis)
        await database.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconcile monthly usage against the idempotency ledger")
    parser.add_argument("--tenant", default=None, help="Internal site id to reconcile directly")
    parser.add_argument("--month", default=None, help="YYYY-MM, defaults to the current month")
    args = parser.parse_args()
    asyncio.run(_run(args.tenant, args.month))


if __name__ == "__main__":
    main()
