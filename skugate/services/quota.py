from __future__ import annotations

from datetime import datetime, timezone
import logging
import time
from typing import Any, Callable

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.core.config import get_settings
from skugate.core.errors import QuotaExceededError
from skugate.domain.billing import QuotaDecision
from skugate.persistence.db import is_postgres
from skugate.persistence.repos import counters as counters_repo
from skugate.persistence.repos import organizations as organizations_repo
from skugate.services.audit import record_event
from skugate.services.notifier import TOPIC_QUOTA_EXCEEDED, ChangeEvent, get_notifier
from skugate.services.telemetry import increment_counter, record_admission_latency
from skugate.services.tiers import tenant_ceiling


logger = logging.getLogger(__name__)

REASON_WITHIN_QUOTA = "within_quota"
REASON_UNLIMITED = "unlimited"
REASON_EXCEEDED = "quota_exceeded"
REASON_TIMEOUT = "admission_timeout"
REASON_OBSERVE_OVERAGE = "observe_overage"

CEILING_SCOPE_TENANT = "tenant"
CEILING_SCOPE_ORGANIZATION = "organization"

# Postgres lock_not_available; raised when lock_timeout expires.
_LOCK_NOT_AVAILABLE = "55P03"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_lock_timeout(exc: DBAPIError) -> bool:
    orig: Any = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code == _LOCK_NOT_AVAILABLE:
            return True
    return False


async def _set_lock_timeout(session: AsyncSession, timeout_ms: int) -> str | None:
    # Transaction-local; returns the previous value so a savepoint caller can restore it.
    if not is_postgres(session) or timeout_ms <= 0:
        return None
    previous = (await session.execute(text("SHOW lock_timeout"))).scalar_one()
    await session.execute(
        text("SELECT set_config('lock_timeout', :value, true)"), {"value": f"{int(timeout_ms)}ms"}
    )
    return str(previous)


async def _restore_lock_timeout(session: AsyncSession, previous: str | None) -> None:
    if previous is None:
        return
    await session.execute(
        text("SELECT set_config('lock_timeout', :value, true)"), {"value": previous}
    )


class QuotaEnforcer:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._time_provider = time_provider or _utc_now

    async def admit(
        self,
        session: AsyncSession,
        tenant_id: str,
        organization_id: str | None = None,
        *,
        requested_delta: int = 1,
        actor_id: str | None = None,
        request_id: str | None = None,
    ) -> QuotaDecision:
        """Atomically check the applicable ceiling and increment on admission.

        Runs inside the caller's transaction through a savepoint (or its own
        transaction when none is open), so a rejected or timed-out admission
        leaves the counter untouched and an admitted one commits or rolls back
        with the inventory write. Row locks are always taken pool first, then
        the tenant counter.
        """
        if requested_delta < 1:
            raise ValueError("requested_delta must be a positive integer")
        settings = get_settings()
        start = time.monotonic()
        now = self._time_provider()

        in_transaction = session.in_transaction()
        # Use a nested transaction when the inventory write already opened one.
        tx_context = session.begin_nested() if in_transaction else session.begin()
        try:
            async with tx_context:
                previous_timeout = await _set_lock_timeout(session, settings.admission_lock_timeout_ms)
                decision = await self._check_and_increment(
                    session,
                    tenant_id,
                    organization_id,
                    requested_delta=requested_delta,
                    now=now,
                )
                if in_transaction:
                    await _restore_lock_timeout(session, previous_timeout)
        except DBAPIError as exc:
            if not _is_lock_timeout(exc):
                raise
            increment_counter("quota_admission_timeout_total")
            logger.warning(
                "quota_admission_timeout tenant_id=%s timeout_ms=%s",
                tenant_id,
                settings.admission_lock_timeout_ms,
            )
            decision = QuotaDecision(
                tenant_id=tenant_id,
                requested_delta=requested_delta,
                current_count=0,
                ceiling=None,
                admitted=False,
                reason=REASON_TIMEOUT,
                organization_id=organization_id,
            )
        finally:
            record_admission_latency((time.monotonic() - start) * 1000.0)

        if decision.admitted:
            increment_counter("quota_admitted_total")
            if decision.reason == REASON_OBSERVE_OVERAGE:
                increment_counter("quota_overage_observed_total")
                logger.info(
                    "quota_overage_observed tenant_id=%s count=%s ceiling=%s",
                    tenant_id,
                    decision.current_count + requested_delta,
                    decision.ceiling,
                )
        else:
            await self._on_rejected(decision, actor_id=actor_id, request_id=request_id)
        return decision

    async def enforce_admission(
        self,
        session: AsyncSession,
        tenant_id: str,
        organization_id: str | None = None,
        *,
        requested_delta: int = 1,
        actor_id: str | None = None,
        request_id: str | None = None,
    ) -> QuotaDecision:
        decision = await self.admit(
            session,
            tenant_id,
            organization_id,
            requested_delta=requested_delta,
            actor_id=actor_id,
            request_id=request_id,
        )
        if not decision.admitted:
            raise QuotaExceededError(decision)
        return decision

    async def _check_and_increment(
        self,
        session: AsyncSession,
        tenant_id: str,
        organization_id: str | None,
        *,
        requested_delta: int,
        now: datetime,
    ) -> QuotaDecision:
        if organization_id is None:
            organization_id = await organizations_repo.get_organization_id(session, tenant_id)
        pool = None
        if organization_id is not None:
            pool = await organizations_repo.get_pool(session, organization_id, lock=True)

        counter = await counters_repo.get_or_create_counter(session, tenant_id)

        if pool is not None:
            members = await organizations_repo.list_member_tenant_ids(session, organization_id)
            others = [member for member in members if member != tenant_id]
            # Other members' counters are read, not locked: the pool row serializes their admissions.
            current = counter.billable_count + await counters_repo.sum_billable(session, others)
            ceiling: int | None = pool.max_total_skus
            ceiling_scope = CEILING_SCOPE_ORGANIZATION
            hard_cap_enabled = True
        else:
            quota = await organizations_repo.get_quota(session, tenant_id)
            current = counter.billable_count
            ceiling = tenant_ceiling(quota)
            ceiling_scope = CEILING_SCOPE_TENANT
            hard_cap_enabled = quota.hard_cap_enabled if quota else True

        if ceiling is None:
            admitted, reason = True, REASON_UNLIMITED
        elif current + requested_delta <= ceiling:
            admitted, reason = True, REASON_WITHIN_QUOTA
        elif not hard_cap_enabled:
            admitted, reason = True, REASON_OBSERVE_OVERAGE
        else:
            admitted, reason = False, REASON_EXCEEDED

        if admitted:
            counter.billable_count = counter.billable_count + requested_delta
            counter.last_delta_at = now
            await session.flush()

        return QuotaDecision(
            tenant_id=tenant_id,
            requested_delta=requested_delta,
            current_count=current,
            ceiling=ceiling,
            admitted=admitted,
            reason=reason,
            ceiling_scope=ceiling_scope,
            organization_id=organization_id if pool is not None else None,
        )

    async def _on_rejected(
        self,
        decision: QuotaDecision,
        *,
        actor_id: str | None,
        request_id: str | None,
    ) -> None:
        increment_counter("quota_rejected_total")
        logger.info(
            "quota_admission_rejected tenant_id=%s reason=%s count=%s ceiling=%s scope=%s",
            decision.tenant_id,
            decision.reason,
            decision.current_count,
            decision.ceiling,
            decision.ceiling_scope,
        )
        # Own session: the caller's transaction is about to roll back the inventory write.
        await record_event(
            tenant_id=decision.tenant_id,
            actor_type="user" if actor_id else "system",
            actor_id=actor_id,
            actor_role=None,
            event_type="billing.quota.admission_rejected",
            outcome="failure",
            resource_type="tenant_sku_counter",
            resource_id=decision.tenant_id,
            request_id=request_id,
            metadata=decision.as_dict(),
            error_code="QUOTA_EXCEEDED" if decision.reason == REASON_EXCEEDED else "ADMISSION_TIMEOUT",
        )
        if decision.reason == REASON_EXCEEDED:
            await get_notifier().publish(
                ChangeEvent(
                    topic=TOPIC_QUOTA_EXCEEDED,
                    scope=decision.ceiling_scope,
                    scope_id=decision.organization_id or decision.tenant_id,
                    tenant_id=decision.tenant_id,
                    payload=decision.as_dict(),
                )
            )


_quota_enforcer: QuotaEnforcer | None = None


def get_quota_enforcer() -> QuotaEnforcer:
    global _quota_enforcer
    if _quota_enforcer is None:
        _quota_enforcer = QuotaEnforcer()
    return _quota_enforcer


def reset_quota_enforcer() -> None:
    global _quota_enforcer
    _quota_enforcer = None


async def quota_snapshot(session: AsyncSession, tenant_id: str) -> dict[str, Any]:
    # Read-only view for the counters endpoint; takes no locks.
    counter = await counters_repo.get_counter(session, tenant_id)
    billable = counter.billable_count if counter else 0
    organization_id = await organizations_repo.get_organization_id(session, tenant_id)
    pool = None
    if organization_id is not None:
        pool = await organizations_repo.get_pool(session, organization_id)
    if pool is not None:
        members = await organizations_repo.list_member_tenant_ids(session, organization_id)
        used = await counters_repo.sum_billable(session, members)
        ceiling: int | None = pool.max_total_skus
        ceiling_scope = CEILING_SCOPE_ORGANIZATION
    else:
        quota = await organizations_repo.get_quota(session, tenant_id)
        used = billable
        ceiling = tenant_ceiling(quota)
        ceiling_scope = CEILING_SCOPE_TENANT
    return {
        "tenant_id": tenant_id,
        "billable_count": billable,
        "quota": ceiling,
        "remaining": None if ceiling is None else max(ceiling - used, 0),
        "last_reconciled_at": counter.last_reconciled_at if counter else None,
        "reconcile_requested_at": counter.reconcile_requested_at if counter else None,
        "ceiling_scope": ceiling_scope,
        "organization_id": organization_id,
        "pool_used": used if pool is not None else None,
    }
