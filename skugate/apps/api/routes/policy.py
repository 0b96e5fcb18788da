from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.apps.api.deps import deny, get_actor, get_db
from skugate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skugate.apps.api.response import SuccessEnvelope, get_request_id, success_response
from skugate.domain.billing import GLOBAL_SCOPE_ID, PolicyScope, PolicyWindow
from skugate.domain.models import BillingPolicyAuditEntry, BillingPolicyHistory
from skugate.persistence.repos import organizations as organizations_repo
from skugate.persistence.repos.policies import to_window
from skugate.services.authz import Actor, can_read_policy, can_write_policy
from skugate.services.policy_resolver import as_utc, resolve_or_default
from skugate.services.policy_store import (
    get_policy_store,
    list_policy_audit,
    list_policy_history,
    list_policy_records,
    parse_target,
)


router = APIRouter(prefix="/policy", tags=["policy"], responses=DEFAULT_ERROR_RESPONSES)


class PolicyFlagsModel(BaseModel):
    count_active_private: bool
    count_preorder: bool
    count_zero_price: bool
    require_image: bool
    require_currency: bool


class ResolvedPolicyResponse(PolicyFlagsModel):
    tenant_id: str
    at: datetime
    source_scope: str
    source_scope_id: str | None
    policy_id: str | None
    version: int | None
    effective_from: datetime | None
    effective_to: datetime | None
    is_fallback: bool


class PolicyRecordResponse(PolicyFlagsModel):
    policy_id: str
    scope: str
    scope_id: str
    version: int
    effective_from: datetime
    effective_to: datetime | None
    state: str
    note: str | None
    updated_by: str | None
    updated_at: datetime | None


class PolicyWriteRequest(BaseModel):
    # Omitted flags inherit from the current record, then the layers below.
    count_active_private: bool | None = None
    count_preorder: bool | None = None
    count_zero_price: bool | None = None
    require_image: bool | None = None
    require_currency: bool | None = None
    effective_from: datetime | None = None
    note: str | None = Field(default=None, max_length=2000)
    reason: str | None = Field(default=None, max_length=2000)
    expected_version: int | None = Field(default=None, ge=0)


class PolicyWriteResponse(BaseModel):
    record: PolicyRecordResponse
    previous: PolicyRecordResponse | None
    activated: bool
    reconcile_requested_tenants: int | None


class PolicyHistoryResponse(PolicyFlagsModel):
    id: int
    policy_id: str
    version: int
    effective_from: datetime
    effective_to: datetime
    superseded_by_policy_id: str | None
    note: str | None
    updated_by: str | None
    archived_at: datetime | None


class PolicyAuditResponse(BaseModel):
    id: int
    occurred_at: datetime
    policy_id: str
    version: int
    action: str
    actor_id: str
    actor_role: str | None
    reason: str | None
    request_id: str | None
    before: dict | None
    after: dict
    diff: dict


def _record_response(window: PolicyWindow, now: datetime) -> PolicyRecordResponse:
    return PolicyRecordResponse(
        policy_id=window.policy_id,
        scope=window.scope,
        scope_id=window.scope_id if window.scope_id is not None else GLOBAL_SCOPE_ID,
        version=window.version,
        **window.flags.as_dict(),
        effective_from=window.effective_from,
        effective_to=window.effective_to,
        state=window.state(now),
        note=window.note,
        updated_by=window.updated_by,
        updated_at=window.updated_at,
    )


def _history_response(row: BillingPolicyHistory) -> PolicyHistoryResponse:
    return PolicyHistoryResponse(
        id=row.id,
        policy_id=row.policy_id,
        version=row.version,
        count_active_private=row.count_active_private,
        count_preorder=row.count_preorder,
        count_zero_price=row.count_zero_price,
        require_image=row.require_image,
        require_currency=row.require_currency,
        effective_from=row.effective_from,
        effective_to=row.effective_to,
        superseded_by_policy_id=row.superseded_by_policy_id,
        note=row.note,
        updated_by=row.updated_by,
        archived_at=row.archived_at,
    )


def _audit_response(row: BillingPolicyAuditEntry) -> PolicyAuditResponse:
    return PolicyAuditResponse(
        id=row.id,
        occurred_at=row.occurred_at,
        policy_id=row.policy_id,
        version=row.version,
        action=row.action,
        actor_id=row.actor_id,
        actor_role=row.actor_role,
        reason=row.reason,
        request_id=row.request_id,
        before=row.before_json,
        after=row.after_json,
        diff=row.diff_json or {},
    )


async def _tenant_org(db: AsyncSession, scope: str, scope_id: str | None) -> str | None:
    if scope != PolicyScope.TENANT.value or not scope_id:
        return None
    return await organizations_repo.get_organization_id(db, scope_id)


async def _ensure_can_read(
    request: Request, db: AsyncSession, actor: Actor, scope: str, scope_id: str
) -> None:
    target = parse_target(scope, scope_id)
    tenant_org = await _tenant_org(db, target.scope, target.scope_id)
    if not can_read_policy(actor, target.scope, target.scope_id, tenant_organization_id=tenant_org):
        raise await deny(request, actor, resource_type="billing_policy", resource_id=target.key)


@router.get(
    "/resolve",
    response_model=SuccessEnvelope[ResolvedPolicyResponse],
)
async def resolve_policy(
    request: Request,
    tenant_id: str = Query(alias="tenantId", min_length=1),
    organization_id: str | None = Query(default=None, alias="organizationId"),
    at: datetime | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Diagnostic preview; gaps resolve to the built-in fallback instead of failing.
    tenant_org = await organizations_repo.get_organization_id(db, tenant_id)
    if not can_read_policy(actor, PolicyScope.TENANT.value, tenant_id, tenant_organization_id=tenant_org):
        raise await deny(request, actor, resource_type="billing_policy", resource_id=f"tenant:{tenant_id}")
    resolved = await resolve_or_default(
        db, tenant_id, as_utc(at), organization_id=organization_id or tenant_org
    )
    payload = ResolvedPolicyResponse(
        tenant_id=resolved.tenant_id,
        at=resolved.at,
        **resolved.flags.as_dict(),
        source_scope=resolved.source_scope,
        source_scope_id=resolved.source_scope_id,
        policy_id=resolved.policy_id,
        version=resolved.version,
        effective_from=resolved.effective_from,
        effective_to=resolved.effective_to,
        is_fallback=resolved.is_fallback,
    )
    return success_response(request=request, data=payload)


@router.put(
    "/{scope}/{scope_id}",
    response_model=SuccessEnvelope[PolicyWriteResponse],
)
async def put_policy(
    scope: str,
    scope_id: str,
    payload: PolicyWriteRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    target = parse_target(scope, scope_id)
    tenant_org = await _tenant_org(db, target.scope, target.scope_id)
    if not can_write_policy(actor, target.scope, target.scope_id, tenant_organization_id=tenant_org):
        raise await deny(
            request,
            actor,
            resource_type="billing_policy",
            resource_id=target.key,
            tenant_id=target.scope_id if target.scope == PolicyScope.TENANT.value else None,
        )
    flags = payload.model_dump(
        include={"count_active_private", "count_preorder", "count_zero_price", "require_image", "require_currency"},
        exclude_none=True,
    )
    # Release the implicit read transaction so the store owns its write transaction.
    await db.commit()
    result = await get_policy_store().write_policy(
        db,
        scope=target.scope,
        scope_id=target.scope_id,
        flags=flags,
        actor_id=actor.actor_id,
        actor_role=actor.role,
        effective_from=payload.effective_from,
        note=payload.note,
        reason=payload.reason,
        expected_version=payload.expected_version,
        request_id=get_request_id(request),
    )
    now = datetime.now(timezone.utc)
    response = PolicyWriteResponse(
        record=_record_response(result.record, now),
        previous=_record_response(result.previous, now) if result.previous else None,
        activated=result.activated,
        reconcile_requested_tenants=(
            None if result.affected_tenant_ids is None else len(result.affected_tenant_ids)
        ),
    )
    return success_response(request=request, data=response)


@router.get(
    "/{scope}/{scope_id}",
    response_model=SuccessEnvelope[list[PolicyRecordResponse]],
)
async def get_policy_records(
    scope: str,
    scope_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _ensure_can_read(request, db, actor, scope, scope_id)
    records = await list_policy_records(db, scope, scope_id, limit=limit)
    now = datetime.now(timezone.utc)
    payload = [_record_response(to_window(record), now) for record in records]
    return success_response(request=request, data=payload)


@router.get(
    "/{scope}/{scope_id}/history",
    response_model=SuccessEnvelope[list[PolicyHistoryResponse]],
)
async def get_policy_history(
    scope: str,
    scope_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _ensure_can_read(request, db, actor, scope, scope_id)
    rows = await list_policy_history(db, scope, scope_id, limit=limit)
    return success_response(request=request, data=[_history_response(row) for row in rows])


@router.get(
    "/{scope}/{scope_id}/audit",
    response_model=SuccessEnvelope[list[PolicyAuditResponse]],
)
async def get_policy_audit(
    scope: str,
    scope_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _ensure_can_read(request, db, actor, scope, scope_id)
    rows = await list_policy_audit(db, scope, scope_id, limit=limit)
    return success_response(request=request, data=[_audit_response(row) for row in rows])
