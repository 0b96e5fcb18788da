from __future__ import annotations

import argparse
import asyncio

from sqlalchemy import select

from skugate.core.logging import configure_logging
from skugate.domain.models import TenantCounter
from skugate.persistence.db import SessionLocal
from skugate.services.counters import STATUS_CORRECTED, STATUS_SKIPPED, reconcile


async def _tenant_ids(explicit: list[str]) -> list[str]:
    if explicit:
        return explicit
    async with SessionLocal() as session:
        result = await session.execute(select(TenantCounter.tenant_id).order_by(TenantCounter.tenant_id))
        return list(result.scalars().all())


async def _run(tenants: list[str]) -> None:
    # Recount in-process, one tenant per transaction, for backfills and incident repair.
    corrected = 0
    skipped = 0
    tenant_ids = await _tenant_ids(tenants)
    for tenant_id in tenant_ids:
        async with SessionLocal() as session:
            result = await reconcile(session, tenant_id, trigger="cli")
            await session.commit()
        if result.status == STATUS_CORRECTED:
            corrected += 1
            print(f"corrected tenant_id={tenant_id} previous={result.previous_count} billable={result.billable_count}")
        elif result.status == STATUS_SKIPPED:
            skipped += 1
    print(f"tenants={len(tenant_ids)}")
    print(f"corrected={corrected}")
    print(f"skipped_in_progress={skipped}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Recompute billable SKU counters from inventory")
    parser.add_argument("--tenant", action="append", default=[], help="Tenant id; repeatable. Default: all counters")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run(args.tenant))


if __name__ == "__main__":
    main()
