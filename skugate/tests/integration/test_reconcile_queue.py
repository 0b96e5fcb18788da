from __future__ import annotations

from uuid import uuid4

import pytest
from arq.connections import RedisSettings
from arq.worker import Worker
from redis.exceptions import RedisError

from skugate.core.config import get_settings
from skugate.persistence.db import SessionLocal
from skugate.persistence.repos.counters import get_counter
from skugate.services import reconcile_queue
from skugate.services.policy_store import PolicyStore
from skugate.services.reconcile_queue import schedule_reconcile
from skugate.tests.utils.seed import ALL_FLAGS_OFF, cleanup_tenants, new_tenant_id, seed_counter, seed_items
from skugate.workers.reconcile_worker import WorkerSettings, reconcile_tenant


pytestmark = pytest.mark.usefixtures("db_ready")


@pytest.fixture
async def queue_mode(monkeypatch: pytest.MonkeyPatch) -> str:
    # Each test gets its own arq queue so leftover jobs from other runs stay invisible.
    queue_name = f"skugate-test-{uuid4().hex}"
    monkeypatch.setenv("RECONCILE_EXECUTION_MODE", "queue")
    monkeypatch.setenv("RECONCILE_QUEUE_NAME", queue_name)
    get_settings.cache_clear()
    try:
        pool = await reconcile_queue.get_redis_pool()
        await pool.ping()
    except (OSError, RedisError):
        pytest.skip("Redis is not reachable")
    yield queue_name
    await pool.delete(queue_name)
    await pool.aclose()


async def _drain(queue_name: str) -> None:
    worker = Worker(
        functions=[reconcile_tenant],
        queue_name=queue_name,
        redis_settings=RedisSettings.from_dsn(get_settings().redis_url),
        burst=True,
        handle_signals=False,
        keep_result=WorkerSettings.keep_result,
        poll_delay=0.05,
    )
    try:
        await worker.main()
    finally:
        await worker.close()


async def _stored(tenant_id: str):
    async with SessionLocal() as session:
        return await get_counter(session, tenant_id)


@pytest.mark.asyncio
async def test_queued_requests_coalesce_until_the_job_runs(queue_mode: str) -> None:
    tenant_id = new_tenant_id()
    async with SessionLocal() as session:
        await PolicyStore().write_policy(
            session, scope="tenant", scope_id=tenant_id, flags=ALL_FLAGS_OFF, actor_id="ops"
        )
    await seed_items(tenant_id, 2)
    await seed_counter(tenant_id, 0)
    try:
        assert await schedule_reconcile(tenant_id, trigger="interval") == "enqueued"
        assert await schedule_reconcile(tenant_id, trigger="interval") == "duplicate"

        await _drain(queue_mode)
        counter = await _stored(tenant_id)
        assert counter.billable_count == 2
        assert counter.last_reconciled_at is not None
    finally:
        await cleanup_tenants(tenant_id)


@pytest.mark.asyncio
async def test_tenant_can_be_queued_again_after_its_job_finished(queue_mode: str) -> None:
    tenant_id = new_tenant_id()
    async with SessionLocal() as session:
        await PolicyStore().write_policy(
            session, scope="tenant", scope_id=tenant_id, flags=ALL_FLAGS_OFF, actor_id="ops"
        )
    await seed_items(tenant_id, 2)
    await seed_counter(tenant_id, 0)
    try:
        assert await schedule_reconcile(tenant_id, trigger="interval") == "enqueued"
        await _drain(queue_mode)
        assert (await _stored(tenant_id)).billable_count == 2

        await seed_items(tenant_id, 3)
        assert await schedule_reconcile(tenant_id, trigger="policy_changed") == "enqueued"
        await _drain(queue_mode)
        assert (await _stored(tenant_id)).billable_count == 5
    finally:
        await cleanup_tenants(tenant_id)
