from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.domain.models import OrganizationMember, OrganizationPool, TenantSkuQuota
from skugate.persistence.guards import tenant_predicate


async def get_organization_id(session: AsyncSession, tenant_id: str) -> str | None:
    result = await session.execute(
        select(OrganizationMember.organization_id).where(
            tenant_predicate(OrganizationMember, tenant_id)
        )
    )
    return result.scalar_one_or_none()


async def list_member_tenant_ids(session: AsyncSession, organization_id: str) -> list[str]:
    result = await session.execute(
        select(OrganizationMember.tenant_id)
        .where(OrganizationMember.organization_id == organization_id)
        .order_by(OrganizationMember.tenant_id)
    )
    return list(result.scalars().all())


async def get_pool(
    session: AsyncSession,
    organization_id: str,
    *,
    lock: bool = False,
) -> OrganizationPool | None:
    stmt = select(OrganizationPool).where(OrganizationPool.organization_id == organization_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_quota(session: AsyncSession, tenant_id: str) -> TenantSkuQuota | None:
    result = await session.execute(
        select(TenantSkuQuota).where(tenant_predicate(TenantSkuQuota, tenant_id))
    )
    return result.scalar_one_or_none()
