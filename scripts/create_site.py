from __future__ import annotations

import argparse
import asyncio
import json
import secrets
import sys

from leadflow.domain.models import Site, SitePlan
from leadflow.persistence.db import Database
from leadflow.services.audit import record_event
from leadflow.services.dispatch.credentials import store_credentials
from leadflow.services.sites import normalize_public_id


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit so sites are never provisioned with guessed limits.
    parser = argparse.ArgumentParser(description="Provision a site with its integration secrets")
    parser.add_argument("--public-id", required=True, help="Opaque external site id")
    parser.add_argument("--name", default="", help="Display name")
    parser.add_argument("--currency", default="TRY")
    parser.add_argument("--monthly-limit", type=int, default=1000)
    parser.add_argument("--soft-limit", action="store_true", help="Allow overage up to the hard cap")
    parser.add_argument("--credentials-file", default=None, help="JSON provider credentials to encrypt")
    return parser


async def _create_site(args: argparse.Namespace) -> int:
    public_id = normalize_public_id(args.public_id)
    oci_api_key = secrets.token_urlsafe(32)
    call_event_secret = secrets.token_hex(32)
    database = Database()
    try:
        async with database.session() as session:
            site = Site(
                public_id=public_id,
                name=args.name,
                currency=args.currency.upper(),
                oci_api_key=oci_api_key,
                call_event_secret=call_event_secret,
            )
            session.add(site)
            # Flush the site row so the plan and credentials can reference its id.
            await session.flush()
            session.add(
                SitePlan(
                    tenant_id=site.id,
                    monthly_limit=args.monthly_limit,
                    soft_limit_enabled=bool(args.soft_limit),
                )
            )
            if args.credentials_file:
                with open(args.credentials_file, encoding="utf-8") as handle:
                    payload = json.load(handle)
                await store_credentials(session, tenant_id=site.id, provider_key="google_ads", payload=payload)
            await session.commit()
            site_id = site.id
            await record_event(
                session=session,
                tenant_id=site_id,
                actor_type="system",
                actor_id="create_site",
                event_type="site.created",
                outcome="success",
                resource_type="site",
                resource_id=site_id,
                metadata={"public_id": public_id, "monthly_limit": args.monthly_limit},
                commit=True,
            )
    finally:
        await database.close()

    print("Site created:")
    print(f"  site_id: {site_id}")
    print(f"  public_id: {public_id}")
    print(f"  oci_api_key: {oci_api_key}")
    print(f"  call_event_secret: {call_event_secret}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_site(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_site failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
