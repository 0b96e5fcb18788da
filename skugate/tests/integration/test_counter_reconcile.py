from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from skugate.domain.models import AuditEvent, CounterDriftEvent, InventoryItem
from skugate.persistence.db import SessionLocal
from skugate.persistence.repos.counters import get_counter, list_tenants_due
from skugate.services.counters import (
    STATUS_CORRECTED,
    STATUS_OK,
    STATUS_SKIPPED,
    apply_delta,
    count_billable,
    reconcile,
)
from skugate.services.policy_store import PolicyStore
from skugate.services.quota import get_quota_enforcer
from skugate.services.telemetry import counters_snapshot
from skugate.tests.utils.seed import (
    ALL_FLAGS_OFF,
    cleanup_tenants,
    new_tenant_id,
    seed_counter,
    seed_items,
    seed_quota,
)


pytestmark = pytest.mark.usefixtures("db_ready")


async def _strict_tenant(tenant_id: str) -> None:
    # Public, priced, in-stock items count; everything else does not.
    async with SessionLocal() as session:
        await PolicyStore().write_policy(
            session, scope="tenant", scope_id=tenant_id, flags=ALL_FLAGS_OFF, actor_id="ops"
        )


async def _stored(tenant_id: str) -> int | None:
    async with SessionLocal() as session:
        counter = await get_counter(session, tenant_id)
    return counter.billable_count if counter else None


@pytest.mark.asyncio
async def test_reconcile_corrects_drift_and_records_it() -> None:
    tenant_id = new_tenant_id()
    await _strict_tenant(tenant_id)
    await seed_items(tenant_id, 4)
    await seed_items(tenant_id, 2, visibility="private")
    await seed_items(tenant_id, 1, availability="preorder")
    await seed_items(tenant_id, 1, price_cents=0)
    await seed_items(tenant_id, 3, item_status="archived")
    await seed_counter(tenant_id, 9)

    async with SessionLocal() as session:
        result = await reconcile(session, tenant_id, trigger="test")
        await session.commit()

    assert result.previous_count == 9
    assert result.billable_count == 4
    assert result.drift == -5
    assert result.status == STATUS_CORRECTED

    async with SessionLocal() as session:
        counter = await get_counter(session, tenant_id)
        drift_rows = (
            await session.execute(select(CounterDriftEvent).where(CounterDriftEvent.tenant_id == tenant_id))
        ).scalars().all()
        audit_rows = (
            await session.execute(
                select(AuditEvent).where(
                    AuditEvent.tenant_id == tenant_id,
                    AuditEvent.event_type == "billing.counter.drift_corrected",
                )
            )
        ).scalars().all()

    assert counter is not None
    assert counter.billable_count == 4
    assert counter.last_reconciled_at is not None
    assert counter.reconcile_requested_at is None
    assert len(drift_rows) == 1
    assert drift_rows[0].stored_count == 9
    assert drift_rows[0].recomputed_count == 4
    assert drift_rows[0].trigger == "test"
    assert len(audit_rows) == 1
    assert audit_rows[0].metadata_json["drift"] == -5
    assert counters_snapshot()["counter_drift_total"] == 1

    await cleanup_tenants(tenant_id)


@pytest.mark.asyncio
async def test_reconcile_is_idempotent() -> None:
    tenant_id = new_tenant_id()
    await _strict_tenant(tenant_id)
    await seed_items(tenant_id, 3)

    results = []
    for _ in range(3):
        async with SessionLocal() as session:
            results.append(await reconcile(session, tenant_id))
            await session.commit()

    assert [result.billable_count for result in results] == [3, 3, 3]
    assert [result.status for result in results] == [STATUS_CORRECTED, STATUS_OK, STATUS_OK]
    assert results[-1].drift == 0
    await cleanup_tenants(tenant_id)


@pytest.mark.asyncio
async def test_concurrent_reconcile_of_one_tenant_is_skipped() -> None:
    tenant_id = new_tenant_id()
    await _strict_tenant(tenant_id)
    await seed_items(tenant_id, 2)

    async with SessionLocal() as holder, SessionLocal() as contender:
        first = await reconcile(holder, tenant_id)
        # The holder's transaction still owns the advisory lock.
        second = await reconcile(contender, tenant_id)
        await contender.commit()
        await holder.commit()

    assert first.billable_count == 2
    assert second.status == STATUS_SKIPPED
    assert second.billable_count is None
    await cleanup_tenants(tenant_id)


@pytest.mark.asyncio
async def test_reconcile_waits_for_an_admission_in_flight() -> None:
    tenant_id = new_tenant_id()
    await _strict_tenant(tenant_id)
    await seed_quota(tenant_id, max_skus=10)
    await seed_items(tenant_id, 2)
    await seed_counter(tenant_id, 2)

    async with SessionLocal() as writer, SessionLocal() as reconciler:
        await writer.begin()
        decision = await get_quota_enforcer().admit(writer, tenant_id)
        assert decision.admitted is True
        writer.add(
            InventoryItem(
                id=uuid4().hex,
                tenant_id=tenant_id,
                item_status="active",
                visibility="public",
                availability="in_stock",
                price_cents=1299,
                currency="USD",
            )
        )
        await writer.flush()

        recount = asyncio.create_task(reconcile(reconciler, tenant_id, trigger="interval"))
        await asyncio.sleep(0.3)
        # The counter row is held by the uncommitted admission.
        assert not recount.done()
        await writer.commit()
        result = await recount
        await reconciler.commit()

    assert result.previous_count == 3
    assert result.billable_count == 3
    assert result.status == STATUS_OK
    assert await _stored(tenant_id) == 3
    await cleanup_tenants(tenant_id)


@pytest.mark.asyncio
async def test_recount_request_raised_during_scan_survives() -> None:
    tenant_id = new_tenant_id()
    await _strict_tenant(tenant_id)
    await seed_counter(tenant_id, 0)
    later = datetime.now(timezone.utc) + timedelta(minutes=5)
    async with SessionLocal() as session:
        counter = await get_counter(session, tenant_id)
        assert counter is not None
        counter.reconcile_requested_at = later
        await session.commit()

    async with SessionLocal() as session:
        await reconcile(session, tenant_id)
        await session.commit()
        counter = await get_counter(session, tenant_id)
    assert counter is not None
    assert counter.reconcile_requested_at == later
    await cleanup_tenants(tenant_id)


@pytest.mark.asyncio
async def test_decrement_below_zero_clamps_and_requests_recount() -> None:
    tenant_id = new_tenant_id()
    async with SessionLocal() as session:
        counter = await apply_delta(session, tenant_id, -1)
        await session.commit()
    assert counter.billable_count == 0
    assert counter.reconcile_requested_at is not None
    assert counters_snapshot()["counter_clamped_total"] == 1

    async with SessionLocal() as session:
        due = await list_tenants_due(session, now=datetime.now(timezone.utc), interval_s=3600, limit=100000)
    assert tenant_id in due
    await cleanup_tenants(tenant_id)


@pytest.mark.asyncio
async def test_count_billable_matches_predicate() -> None:
    tenant_id = new_tenant_id()
    await _strict_tenant(tenant_id)
    await seed_items(tenant_id, 2)
    await seed_items(tenant_id, 2, item_status="trashed")
    async with SessionLocal() as session:
        total, policy_id = await count_billable(session, tenant_id)
    assert total == 2
    assert policy_id is not None
    await cleanup_tenants(tenant_id)
