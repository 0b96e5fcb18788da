from __future__ import annotations

import logging

from skugate.core.config import get_settings
from skugate.domain.billing import scope_key
from skugate.services.billing_webhook import send_billing_webhook_event
from skugate.services.notifier import (
    TOPIC_POLICY_CHANGED,
    TOPIC_QUOTA_EXCEEDED,
    ChangeEvent,
    ChangeNotifier,
)
from skugate.services.policy_resolver import invalidate_policy_cache
from skugate.services.reconcile_queue import schedule_reconcile, schedule_requested


logger = logging.getLogger(__name__)


def _event_scope_key(event: ChangeEvent) -> str | None:
    key = event.payload.get("scope_key")
    if not key and event.scope:
        key = scope_key(event.scope, None if event.scope == "global" else event.scope_id)
    return key


async def invalidate_cached_policy(event: ChangeEvent) -> None:
    # No key drops every cached scope.
    invalidate_policy_cache(_event_scope_key(event))


async def on_policy_changed(event: ChangeEvent) -> None:
    # A policy edit can flip many items at once, so it always means a full recount, not a cache hint.
    key = _event_scope_key(event)
    invalidate_policy_cache(key)
    if not event.payload.get("activated"):
        # Drafts are scheduled when the activation sweep opens them.
        return
    tenant_ids = event.payload.get("tenant_ids")
    if tenant_ids is None:
        scheduled = await schedule_requested(trigger="policy_changed")
        logger.info("policy_change_recounts_scheduled scope_key=%s count=%s", key, scheduled)
        return
    for tenant_id in tenant_ids:
        await schedule_reconcile(tenant_id, trigger="policy_changed")


async def on_quota_exceeded(event: ChangeEvent) -> None:
    if not get_settings().billing_webhook_enabled:
        return
    await send_billing_webhook_event(event_type="billing.quota.exceeded", payload=event.payload)


def register_default_handlers(notifier: ChangeNotifier) -> None:
    notifier.subscribe(TOPIC_POLICY_CHANGED, on_policy_changed)
    notifier.subscribe(TOPIC_QUOTA_EXCEEDED, on_quota_exceeded)


def build_cache_listener(origin: str) -> ChangeNotifier:
    """Listener for API processes: remote policy changes only drop cached windows.

    Sharing ``origin`` with the process notifier skips events this process
    published, which were already dispatched locally. Recounts for remote
    changes are scheduled by the publisher and by the worker, not here.
    """
    listener = ChangeNotifier(origin=origin)
    listener.subscribe(TOPIC_POLICY_CHANGED, invalidate_cached_policy)
    return listener
