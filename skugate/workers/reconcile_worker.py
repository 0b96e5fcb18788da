from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from skugate.core.config import get_settings
from skugate.core.logging import configure_logging
from skugate.persistence.db import SessionLocal
from skugate.services.counters import list_due_tenants, reconcile
from skugate.services.notifier import get_notifier
from skugate.services.policy_store import get_policy_store
from skugate.services.reconcile_queue import schedule_reconcile
from skugate.services.resilience import close_shared_redis


logger = logging.getLogger(__name__)


async def reconcile_tenant(ctx, tenant_id: str, trigger: str = "scheduled") -> dict:
    async with SessionLocal() as session:
        result = await reconcile(session, tenant_id, trigger=trigger)
        await session.commit()
    logger.info(
        "reconcile_job_done tenant_id=%s status=%s drift=%s job_try=%s",
        tenant_id,
        result.status,
        result.drift,
        ctx.get("job_try", 1),
    )
    return result.as_dict()


async def sweep(ctx) -> dict:
    """Periodic catch-up: open due drafts, then schedule requested and interval-due recounts.

    Anything a lost notification or failed enqueue missed is picked up here,
    which bounds staleness after a policy change to one sweep interval.
    """
    settings = get_settings()
    async with SessionLocal() as session:
        activated = await get_policy_store().activate_due_policies(
            session, limit=settings.reconcile_sweep_batch_size
        )
    async with SessionLocal() as session:
        due = await list_due_tenants(session)
    scheduled = 0
    for tenant_id in due:
        outcome = await schedule_reconcile(tenant_id, trigger="sweep")
        if outcome in {"inline", "enqueued"}:
            scheduled += 1
    logger.info("reconcile_sweep_done activated=%s due=%s scheduled=%s", len(activated), len(due), scheduled)
    return {"activated": len(activated), "due": len(due), "scheduled": scheduled}


async def _startup(ctx) -> None:
    configure_logging()
    # Listen for policy changes published by API processes.
    ctx["listener_task"] = asyncio.create_task(get_notifier().listen())


async def _shutdown(ctx) -> None:
    task = ctx.get("listener_task")
    if task:
        task.cancel()
    await close_shared_redis()


def _sweep_minutes() -> set[int]:
    interval_min = max(1, get_settings().reconcile_sweep_interval_s // 60)
    return set(range(0, 60, interval_min))


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.reconcile_queue_name
    functions = [reconcile_tenant]
    # No stored result: a finished recount must not block the next request for the tenant.
    keep_result = 0
    cron_jobs = [cron(sweep, minute=_sweep_minutes(), run_at_startup=True, unique=True)]
    on_startup = _startup
    on_shutdown = _shutdown
