from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.core.config import get_settings
from skugate.core.errors import CounterDriftDetected
from skugate.domain.models import CounterDriftEvent, TenantCounter
from skugate.persistence.db import is_postgres
from skugate.persistence.repos import counters as counters_repo
from skugate.persistence.repos import inventory as inventory_repo
from skugate.services.audit import record_system_event
from skugate.services.billable import is_billable
from skugate.services.policy_resolver import resolve_or_default
from skugate.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

VALID_DELTAS = (-1, 0, 1)

STATUS_OK = "ok"
STATUS_CORRECTED = "corrected"
STATUS_SKIPPED = "skipped_in_progress"


@dataclass(frozen=True)
class ReconcileResult:
    tenant_id: str
    previous_count: int | None
    billable_count: int | None
    drift: int
    status: str
    reconciled_at: datetime | None
    policy_id: str | None

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if self.reconciled_at is not None:
            payload["reconciled_at"] = self.reconciled_at.isoformat()
        return payload


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def apply_delta(
    session: AsyncSession,
    tenant_id: str,
    delta: int,
    *,
    now: datetime | None = None,
) -> TenantCounter:
    """Apply an incremental -1/0/+1 change under the counter row lock.

    Runs inside the caller's transaction. A decrement below zero means the
    stored count already disagreed with the items, so it is clamped and a
    recount is requested instead of failing the inventory write.
    """
    if delta not in VALID_DELTAS:
        raise ValueError(f"counter delta must be one of {VALID_DELTAS}, got {delta}")
    now = now or _utc_now()
    counter = await counters_repo.get_or_create_counter(session, tenant_id)
    if delta == 0:
        return counter
    new_count = counter.billable_count + delta
    if new_count < 0:
        increment_counter("counter_clamped_total")
        logger.warning("counter_clamped tenant_id=%s stored=%s delta=%s", tenant_id, counter.billable_count, delta)
        new_count = 0
        counter.reconcile_requested_at = now
    counter.billable_count = new_count
    counter.last_delta_at = now
    await session.flush()
    return counter


async def _try_reconcile_lock(session: AsyncSession, tenant_id: str) -> bool:
    # Transaction-scoped advisory lock: released on commit or rollback.
    if not is_postgres(session):
        return True
    result = await session.execute(
        select(func.pg_try_advisory_xact_lock(func.hashtextextended(f"reconcile:{tenant_id}", 0)))
    )
    return bool(result.scalar_one())


async def count_billable(
    session: AsyncSession,
    tenant_id: str,
    *,
    at: datetime | None = None,
) -> tuple[int, str | None]:
    # Full scan under one resolution so every item is judged by the same policy.
    settings = get_settings()
    policy = await resolve_or_default(session, tenant_id, at, use_cache=False)
    total = 0
    async for item in inventory_repo.stream_billable_items(
        session, tenant_id, batch_size=settings.reconcile_scan_batch_size
    ):
        if is_billable(item, policy):
            total += 1
    return total, policy.policy_id


async def reconcile(
    session: AsyncSession,
    tenant_id: str,
    *,
    trigger: str = "manual",
    now: datetime | None = None,
    time_provider: Callable[[], datetime] | None = None,
) -> ReconcileResult:
    """Recompute a tenant's billable count from its items and overwrite the counter.

    The caller owns the transaction and must commit. Concurrent reconciliations
    of the same tenant are excluded by an advisory lock; the loser returns
    ``skipped_in_progress`` without touching the counter.
    """
    now = now or (time_provider or _utc_now)()
    settings = get_settings()
    if not await _try_reconcile_lock(session, tenant_id):
        increment_counter("reconcile_skipped_total")
        logger.info("reconcile_skipped_in_progress tenant_id=%s trigger=%s", tenant_id, trigger)
        return ReconcileResult(
            tenant_id=tenant_id,
            previous_count=None,
            billable_count=None,
            drift=0,
            status=STATUS_SKIPPED,
            reconciled_at=None,
            policy_id=None,
        )

    # Hold the counter row across the scan: an admission either committed its item
    # before the lock (the scan sees it) or waits for the overwrite.
    counter = await counters_repo.get_or_create_counter(session, tenant_id, lock=True)
    recomputed, policy_id = await count_billable(session, tenant_id, at=now)
    previous = counter.billable_count
    drift = recomputed - previous
    status = STATUS_OK
    if abs(drift) > settings.counter_drift_tolerance:
        status = STATUS_CORRECTED
        detected = CounterDriftDetected(tenant_id, stored=previous, recomputed=recomputed)
        session.add(
            CounterDriftEvent(
                tenant_id=tenant_id,
                stored_count=detected.stored,
                recomputed_count=detected.recomputed,
                drift=detected.drift,
                trigger=trigger,
                policy_id=policy_id,
                detected_at=now,
            )
        )
        increment_counter("counter_drift_total")
        set_gauge(f"counter_drift_last.{tenant_id}", float(detected.drift))
        logger.warning(
            "counter_drift_detected tenant_id=%s stored=%s recomputed=%s trigger=%s",
            tenant_id,
            detected.stored,
            detected.recomputed,
            trigger,
        )
        await record_system_event(
            event_type="billing.counter.drift_corrected",
            tenant_id=tenant_id,
            outcome="corrected",
            resource_type="tenant_sku_counter",
            resource_id=tenant_id,
            metadata={
                "stored": detected.stored,
                "recomputed": detected.recomputed,
                "drift": detected.drift,
                "trigger": trigger,
                "policy_id": policy_id,
            },
        )

    counter.billable_count = recomputed
    counter.last_reconciled_at = now
    counter.reconciled_policy_id = policy_id
    # A request raised after this scan started must survive for the next pass.
    if counter.reconcile_requested_at is not None and counter.reconcile_requested_at <= now:
        counter.reconcile_requested_at = None
    await session.flush()
    increment_counter("reconcile_runs_total")
    logger.info(
        "reconcile_completed tenant_id=%s previous=%s billable=%s trigger=%s",
        tenant_id,
        previous,
        recomputed,
        trigger,
    )
    return ReconcileResult(
        tenant_id=tenant_id,
        previous_count=previous,
        billable_count=recomputed,
        drift=drift,
        status=status,
        reconciled_at=now,
        policy_id=policy_id,
    )


async def list_due_tenants(session: AsyncSession, *, now: datetime | None = None) -> list[str]:
    settings = get_settings()
    return await counters_repo.list_tenants_due(
        session,
        now=now or _utc_now(),
        interval_s=settings.reconcile_interval_s,
        limit=settings.reconcile_sweep_batch_size,
    )
