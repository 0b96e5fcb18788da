from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import RedisSettings

from skugate.core.config import get_settings
from skugate.persistence.db import SessionLocal
from skugate.persistence.repos import counters as counters_repo
from skugate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

RECONCILE_JOB = "reconcile_tenant"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


def reconcile_job_id(tenant_id: str) -> str:
    # arq refuses a second job while one with this id is queued or running.
    # The worker keeps no results, so the id frees up once the job finishes.
    return f"reconcile:{tenant_id}"


async def get_redis_pool():
    global _redis_pool, _redis_pool_loop, _redis_lock
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool_loop is not current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
        _redis_lock = asyncio.Lock()
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.reconcile_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def run_inline(tenant_id: str, *, trigger: str) -> dict:
    # Imported lazily: counters imports the resolver, which the handlers also use.
    from skugate.services.counters import reconcile

    async with SessionLocal() as session:
        result = await reconcile(session, tenant_id, trigger=trigger)
        await session.commit()
    return result.as_dict()


async def schedule_reconcile(tenant_id: str, *, trigger: str) -> str:
    """Run or enqueue one tenant recount and report how it was handled.

    Returns ``inline``, ``enqueued``, ``duplicate`` or ``deferred``. Deferred
    requests stay flagged on the counter row and are picked up by the sweep.
    """
    settings = get_settings()
    if settings.reconcile_execution_mode == "inline":
        await run_inline(tenant_id, trigger=trigger)
        return "inline"
    try:
        pool = await get_redis_pool()
        job = await pool.enqueue_job(
            RECONCILE_JOB,
            tenant_id,
            trigger,
            _job_id=reconcile_job_id(tenant_id),
            _queue_name=settings.reconcile_queue_name,
        )
    except Exception as exc:  # noqa: BLE001 - the sweep covers requests we could not enqueue
        increment_counter("reconcile_enqueue_failures_total")
        logger.warning("reconcile_enqueue_failed tenant_id=%s trigger=%s", tenant_id, trigger, exc_info=exc)
        return "deferred"
    if job is None:
        return "duplicate"
    increment_counter("reconcile_enqueued_total")
    return "enqueued"


async def schedule_requested(*, trigger: str, limit: int | None = None) -> int:
    # Counters flagged by a policy write inside the writer's transaction.
    settings = get_settings()
    async with SessionLocal() as session:
        tenant_ids = await counters_repo.list_requested_tenants(
            session, limit=limit or settings.reconcile_sweep_batch_size
        )
    for tenant_id in tenant_ids:
        await schedule_reconcile(tenant_id, trigger=trigger)
    return len(tenant_ids)
