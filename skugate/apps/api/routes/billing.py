from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.apps.api.deps import deny, get_actor, get_db
from skugate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skugate.apps.api.response import SuccessEnvelope, success_response
from skugate.domain.billing import Availability, BillableItem, ItemStatus, Visibility
from skugate.persistence.repos import counters as counters_repo
from skugate.persistence.repos import organizations as organizations_repo
from skugate.services.authz import (
    Actor,
    can_force_reconcile,
    can_manage_ceilings,
    can_read_pool,
    can_read_tenant_billing,
)
from skugate.services.counters import reconcile
from skugate.services.inventory_hook import evaluate
from skugate.services.quota import quota_snapshot
from skugate.services.tiers import (
    TIER_SKU_LIMITS,
    fetch_purchased_tier,
    publish_ceiling_changed,
    set_organization_pool,
    set_tenant_quota,
    tenant_ceiling,
    utilization_percent,
)


router = APIRouter(tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


class CountersResponse(BaseModel):
    tenant_id: str
    billable_count: int
    quota: int | None
    remaining: int | None
    last_reconciled_at: datetime | None
    reconcile_requested_at: datetime | None
    ceiling_scope: str
    organization_id: str | None
    pool_used: int | None


class ReconcileResponse(BaseModel):
    tenant_id: str
    previous_count: int | None
    billable_count: int | None
    drift: int
    status: str
    reconciled_at: datetime | None
    policy_id: str | None


class TenantQuotaRequest(BaseModel):
    subscription_tier: str | None = None
    max_skus: int | None = Field(default=None, ge=0)
    # Drop the explicit ceiling and fall back to the tier catalog.
    clear_max_skus: bool = False
    hard_cap_enabled: bool | None = None
    force: bool = False


class TenantQuotaResponse(BaseModel):
    tenant_id: str
    subscription_tier: str | None
    max_skus: int | None
    hard_cap_enabled: bool
    effective_ceiling: int | None


class PoolRequest(BaseModel):
    max_total_skus: int | None = Field(default=None, ge=0)
    subscription_tier: str | None = None
    force: bool = False


class PoolMemberResponse(BaseModel):
    tenant_id: str
    billable_count: int


class PoolResponse(BaseModel):
    organization_id: str
    max_total_skus: int | None
    subscription_tier: str | None
    total_billable: int
    remaining: int | None
    utilization_percent: float | None
    members: list[PoolMemberResponse]


class EvaluateRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    organization_id: str | None = None
    status: ItemStatus
    visibility: Visibility = Visibility.PUBLIC
    availability: Availability = Availability.IN_STOCK
    price_cents: int | None = 0
    currency: str | None = None
    has_image: bool = False
    at: datetime | None = None


class EvaluateResponse(BaseModel):
    billable: bool
    reason: str | None
    policy_id: str | None
    source_scope: str
    is_fallback: bool


def _ensure_known_tier(tier: str | None) -> None:
    if tier is not None and tier not in TIER_SKU_LIMITS:
        raise HTTPException(
            status_code=422,
            detail={"code": "UNKNOWN_TIER", "message": f"Unknown subscription tier {tier}"},
        )


async def _ensure_tenant_read(request: Request, db: AsyncSession, actor: Actor, tenant_id: str) -> None:
    tenant_org = await organizations_repo.get_organization_id(db, tenant_id)
    if not can_read_tenant_billing(actor, tenant_id, tenant_organization_id=tenant_org):
        raise await deny(request, actor, resource_type="tenant_sku_counter", resource_id=tenant_id, tenant_id=tenant_id)


async def _pool_response(db: AsyncSession, organization_id: str) -> PoolResponse:
    pool = await organizations_repo.get_pool(db, organization_id)
    members = await organizations_repo.list_member_tenant_ids(db, organization_id)
    member_rows: list[PoolMemberResponse] = []
    for tenant_id in members:
        counter = await counters_repo.get_counter(db, tenant_id)
        member_rows.append(
            PoolMemberResponse(tenant_id=tenant_id, billable_count=counter.billable_count if counter else 0)
        )
    total = sum(member.billable_count for member in member_rows)
    ceiling = pool.max_total_skus if pool else None
    return PoolResponse(
        organization_id=organization_id,
        max_total_skus=ceiling,
        subscription_tier=pool.subscription_tier if pool else None,
        total_billable=total,
        remaining=None if ceiling is None else max(ceiling - total, 0),
        utilization_percent=utilization_percent(total, ceiling),
        members=member_rows,
    )


@router.get(
    "/tenant/{tenant_id}/billing/counters",
    response_model=SuccessEnvelope[CountersResponse],
)
async def get_counters(
    tenant_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _ensure_tenant_read(request, db, actor, tenant_id)
    snapshot = await quota_snapshot(db, tenant_id)
    return success_response(request=request, data=CountersResponse(**snapshot))


@router.post(
    "/tenant/{tenant_id}/billing/reconcile",
    response_model=SuccessEnvelope[ReconcileResponse],
)
async def force_reconcile(
    tenant_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Synchronous on purpose: support staff want the corrected number in the response.
    if not can_force_reconcile(actor):
        raise await deny(request, actor, resource_type="tenant_sku_counter", resource_id=tenant_id, tenant_id=tenant_id)
    result = await reconcile(db, tenant_id, trigger="manual")
    await db.commit()
    return success_response(request=request, data=ReconcileResponse(**result.as_dict()))


@router.put(
    "/tenant/{tenant_id}/billing/quota",
    response_model=SuccessEnvelope[TenantQuotaResponse],
)
async def put_tenant_quota(
    tenant_id: str,
    payload: TenantQuotaRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if not can_manage_ceilings(actor):
        raise await deny(request, actor, resource_type="tenant_sku_quota", resource_id=tenant_id, tenant_id=tenant_id)
    _ensure_known_tier(payload.subscription_tier)
    quota = await set_tenant_quota(
        db,
        tenant_id,
        subscription_tier=payload.subscription_tier,
        max_skus=payload.max_skus,
        clear_max_skus=payload.clear_max_skus,
        hard_cap_enabled=payload.hard_cap_enabled,
        force=payload.force,
        actor_id=actor.actor_id,
    )
    await db.commit()
    ceiling = tenant_ceiling(quota)
    await publish_ceiling_changed(scope="tenant", scope_id=tenant_id, ceiling=ceiling, tenant_id=tenant_id)
    response = TenantQuotaResponse(
        tenant_id=tenant_id,
        subscription_tier=quota.subscription_tier,
        max_skus=quota.max_skus,
        hard_cap_enabled=quota.hard_cap_enabled,
        effective_ceiling=ceiling,
    )
    return success_response(request=request, data=response)


@router.post(
    "/tenant/{tenant_id}/billing/tier/refresh",
    response_model=SuccessEnvelope[TenantQuotaResponse],
)
async def refresh_tenant_tier(
    tenant_id: str,
    request: Request,
    force: bool = Query(default=False),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Payment processing stays external; we only learn which tier was bought.
    if not can_manage_ceilings(actor):
        raise await deny(request, actor, resource_type="tenant_sku_quota", resource_id=tenant_id, tenant_id=tenant_id)
    tier = await fetch_purchased_tier(tenant_id)
    quota = await set_tenant_quota(db, tenant_id, subscription_tier=tier, force=force, actor_id=actor.actor_id)
    await db.commit()
    ceiling = tenant_ceiling(quota)
    await publish_ceiling_changed(scope="tenant", scope_id=tenant_id, ceiling=ceiling, tenant_id=tenant_id)
    response = TenantQuotaResponse(
        tenant_id=tenant_id,
        subscription_tier=quota.subscription_tier,
        max_skus=quota.max_skus,
        hard_cap_enabled=quota.hard_cap_enabled,
        effective_ceiling=ceiling,
    )
    return success_response(request=request, data=response)


@router.get(
    "/organization/{organization_id}/billing/pool",
    response_model=SuccessEnvelope[PoolResponse],
)
async def get_pool(
    organization_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if not can_read_pool(actor, organization_id):
        raise await deny(request, actor, resource_type="organization_sku_pool", resource_id=organization_id)
    return success_response(request=request, data=await _pool_response(db, organization_id))


@router.put(
    "/organization/{organization_id}/billing/pool",
    response_model=SuccessEnvelope[PoolResponse],
)
async def put_pool(
    organization_id: str,
    payload: PoolRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if not can_manage_ceilings(actor):
        raise await deny(request, actor, resource_type="organization_sku_pool", resource_id=organization_id)
    _ensure_known_tier(payload.subscription_tier)
    pool = await set_organization_pool(
        db,
        organization_id,
        max_total_skus=payload.max_total_skus,
        subscription_tier=payload.subscription_tier,
        force=payload.force,
        actor_id=actor.actor_id,
    )
    await db.commit()
    await publish_ceiling_changed(scope="organization", scope_id=organization_id, ceiling=pool.max_total_skus)
    return success_response(request=request, data=await _pool_response(db, organization_id))


@router.post(
    "/billing/evaluate",
    response_model=SuccessEnvelope[EvaluateResponse],
)
async def evaluate_item(
    payload: EvaluateRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _ensure_tenant_read(request, db, actor, payload.tenant_id)
    item = BillableItem(
        tenant_id=payload.tenant_id,
        status=payload.status.value,
        visibility=payload.visibility.value,
        availability=payload.availability.value,
        price_cents=payload.price_cents,
        currency=payload.currency,
        has_image=payload.has_image,
    )
    result = await evaluate(db, item, payload.tenant_id, organization_id=payload.organization_id, at=payload.at)
    return success_response(request=request, data=EvaluateResponse(**result.as_dict()))
