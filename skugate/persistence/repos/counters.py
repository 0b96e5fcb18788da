from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.core.errors import DatabaseError
from skugate.domain.models import TenantCounter
from skugate.persistence.guards import require_tenant_id, tenant_predicate


async def get_counter(session: AsyncSession, tenant_id: str) -> TenantCounter | None:
    result = await session.execute(
        select(TenantCounter).where(tenant_predicate(TenantCounter, tenant_id))
    )
    return result.scalar_one_or_none()


async def get_or_create_counter(
    session: AsyncSession,
    tenant_id: str,
    *,
    lock: bool = True,
) -> TenantCounter:
    # Counters are created lazily; ON CONFLICT keeps concurrent first writes from failing.
    require_tenant_id(tenant_id)
    stmt = insert(TenantCounter).values(tenant_id=tenant_id, billable_count=0)
    stmt = stmt.on_conflict_do_nothing(index_elements=[TenantCounter.tenant_id])
    await session.execute(stmt)
    query = select(TenantCounter).where(tenant_predicate(TenantCounter, tenant_id))
    if lock:
        query = query.with_for_update()
    # Refresh identity-map copies so the locked read is the value we act on.
    result = await session.execute(query.execution_options(populate_existing=True))
    counter = result.scalar_one_or_none()
    if counter is None:
        raise DatabaseError(f"counter for tenant {tenant_id} missing after insert")
    return counter


async def sum_billable(session: AsyncSession, tenant_ids: list[str]) -> int:
    if not tenant_ids:
        return 0
    result = await session.execute(
        select(func.coalesce(func.sum(TenantCounter.billable_count), 0)).where(
            TenantCounter.tenant_id.in_(tenant_ids)
        )
    )
    return int(result.scalar_one())


async def mark_reconcile_requested(
    session: AsyncSession,
    *,
    at: datetime,
    tenant_ids: list[str] | None,
) -> int:
    # None means every tenant (a global policy change); an empty list touches nothing.
    stmt = update(TenantCounter).values(reconcile_requested_at=at)
    if tenant_ids is not None:
        if not tenant_ids:
            return 0
        stmt = stmt.where(TenantCounter.tenant_id.in_(tenant_ids))
    result = await session.execute(stmt.execution_options(synchronize_session=False))
    return int(result.rowcount or 0)


async def list_tenants_due(
    session: AsyncSession,
    *,
    now: datetime,
    interval_s: int,
    limit: int,
) -> list[str]:
    # Requested recounts first, then counters never reconciled or older than the interval.
    cutoff = now - timedelta(seconds=interval_s)
    result = await session.execute(
        select(TenantCounter.tenant_id)
        .where(
            or_(
                TenantCounter.reconcile_requested_at.is_not(None),
                TenantCounter.last_reconciled_at.is_(None),
                TenantCounter.last_reconciled_at < cutoff,
            )
        )
        .order_by(
            TenantCounter.reconcile_requested_at.asc().nulls_last(),
            TenantCounter.last_reconciled_at.asc().nulls_first(),
        )
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_requested_tenants(session: AsyncSession, *, limit: int) -> list[str]:
    result = await session.execute(
        select(TenantCounter.tenant_id)
        .where(TenantCounter.reconcile_requested_at.is_not(None))
        .order_by(TenantCounter.reconcile_requested_at)
        .limit(limit)
    )
    return list(result.scalars().all())
