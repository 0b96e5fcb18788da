from __future__ import annotations

from datetime import timedelta

import pytest

from skugate.domain.billing import BillableItem
from skugate.persistence.db import SessionLocal
from skugate.services.counters import STATUS_CORRECTED, reconcile
from skugate.services.inventory_hook import evaluate
from skugate.services.policy_resolver import resolve
from skugate.services.policy_store import PolicyStore
from skugate.tests.utils.clock import MutableClock
from skugate.tests.utils.seed import (
    cleanup_organization,
    cleanup_tenants,
    clear_global_policy,
    new_organization_id,
    new_tenant_id,
    seed_items,
    seed_organization,
)


pytestmark = pytest.mark.usefixtures("db_ready")

GLOBAL_FLAGS = {
    "count_active_private": False,
    "count_preorder": True,
    "count_zero_price": True,
    "require_image": False,
    "require_currency": False,
}


def _private_item(tenant_id: str) -> BillableItem:
    return BillableItem(
        tenant_id=tenant_id,
        status="active",
        visibility="private",
        price_cents=2500,
        currency="USD",
        has_image=True,
    )


@pytest.mark.asyncio
async def test_tenant_override_applies_from_its_start_without_item_writes() -> None:
    await clear_global_policy()
    tenant_id = new_tenant_id("acme")
    clock = MutableClock()
    clock.advance(days=-10)
    day0 = clock.now
    store = PolicyStore(time_provider=clock)

    async with SessionLocal() as session:
        global_write = await store.write_policy(
            session, scope="global", scope_id="default", flags=GLOBAL_FLAGS, actor_id="ops"
        )
        override = await store.write_policy(
            session,
            scope="tenant",
            scope_id=tenant_id,
            flags={"count_active_private": True},
            actor_id="acme-admin",
            effective_from=day0 + timedelta(days=5),
        )
    assert override.activated is False
    # Omitted flags were inherited from the global layer at the override's start.
    assert override.record.flags.count_zero_price is True

    await seed_items(tenant_id, 1, visibility="private")
    day3 = day0 + timedelta(days=3)
    day6 = day0 + timedelta(days=6)

    async with SessionLocal() as session:
        before = await evaluate(session, _private_item(tenant_id), tenant_id, at=day3)
        after = await evaluate(session, _private_item(tenant_id), tenant_id, at=day6)
    assert before.billable is False
    assert before.reason == "private_not_counted"
    assert before.policy.policy_id == global_write.record.policy_id
    assert after.billable is True
    assert after.policy.source_scope == "tenant"

    async with SessionLocal() as session:
        early = await reconcile(session, tenant_id, now=day3)
        await session.commit()
    assert early.billable_count == 0

    async with SessionLocal() as session:
        late = await reconcile(session, tenant_id, now=day6)
        await session.commit()
    assert late.billable_count == 1
    assert late.status == STATUS_CORRECTED
    assert late.policy_id == override.record.policy_id

    # Later edits never change what an earlier instant resolves to.
    clock.now = day0 + timedelta(days=7)
    async with SessionLocal() as session:
        await store.write_policy(
            session,
            scope="tenant",
            scope_id=tenant_id,
            flags={"count_active_private": False},
            actor_id="acme-admin",
            effective_from=day0 + timedelta(days=8),
        )
        at_day3 = await resolve(session, tenant_id, day3, use_cache=False)
        at_day6 = await resolve(session, tenant_id, day6, use_cache=False)
        at_day9 = await resolve(session, tenant_id, day0 + timedelta(days=9), use_cache=False)
    assert at_day3.policy_id == global_write.record.policy_id
    assert at_day6.policy_id == override.record.policy_id
    assert at_day6.count_active_private is True
    assert at_day9.count_active_private is False

    await cleanup_tenants(tenant_id)
    await clear_global_policy()


@pytest.mark.asyncio
async def test_organization_layer_sits_between_tenant_and_global() -> None:
    await clear_global_policy()
    organization_id = new_organization_id()
    tenant_a = new_tenant_id("loc-a")
    tenant_b = new_tenant_id("loc-b")
    await seed_organization(organization_id, [tenant_a, tenant_b], max_total_skus=100)
    clock = MutableClock()
    store = PolicyStore(time_provider=clock)

    async with SessionLocal() as session:
        await store.write_policy(session, scope="global", scope_id=None, flags=GLOBAL_FLAGS, actor_id="ops")
        clock.advance(seconds=1)
        org_write = await store.write_policy(
            session,
            scope="organization",
            scope_id=organization_id,
            flags={"count_preorder": False},
            actor_id="chain-owner",
        )
        clock.advance(seconds=1)
        await store.write_policy(
            session,
            scope="tenant",
            scope_id=tenant_a,
            flags={"count_preorder": True},
            actor_id="chain-owner",
        )
    assert sorted(org_write.affected_tenant_ids or []) == sorted([tenant_a, tenant_b])

    async with SessionLocal() as session:
        resolved_a = await resolve(session, tenant_a, clock.now, use_cache=False)
        resolved_b = await resolve(session, tenant_b, clock.now, use_cache=False)
        outsider = await resolve(session, new_tenant_id(), clock.now, use_cache=False)

    assert resolved_a.source_scope == "tenant"
    assert resolved_a.count_preorder is True
    assert resolved_b.source_scope == "organization"
    assert resolved_b.source_scope_id == organization_id
    assert resolved_b.count_preorder is False
    assert outsider.source_scope == "global"
    assert outsider.count_preorder is True

    await cleanup_tenants(tenant_a, tenant_b)
    await cleanup_organization(organization_id)
    await clear_global_policy()


@pytest.mark.asyncio
async def test_gap_before_any_policy_uses_conservative_fallback() -> None:
    await clear_global_policy()
    tenant_id = new_tenant_id()
    async with SessionLocal() as session:
        result = await evaluate(
            session,
            BillableItem(tenant_id=tenant_id, status="active", visibility="private", price_cents=0),
            tenant_id,
        )
    assert result.billable is True
    assert result.policy.is_fallback is True
    assert result.as_dict()["source_scope"] == "builtin"
