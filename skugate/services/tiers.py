from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.core.config import get_settings
from skugate.core.errors import CeilingBelowUsageError, IntegrationUnavailableError
from skugate.domain.models import OrganizationPool, TenantSkuQuota
from skugate.persistence.repos import counters as counters_repo
from skugate.persistence.repos import organizations as organizations_repo
from skugate.services.notifier import TOPIC_QUOTA_CEILING_CHANGED, ChangeEvent, get_notifier
from skugate.services.resilience import is_retryable_http_error, retry_async


logger = logging.getLogger(__name__)

# SKU ceilings per subscription tier; None is unlimited.
TIER_SKU_LIMITS: dict[str, int | None] = {
    "google_only": 250,
    "starter": 500,
    "professional": 5000,
    "enterprise": None,
    "organization": 10000,
    "chain_starter": 2500,
    "chain_professional": 25000,
    "chain_enterprise": None,
}
DEFAULT_TENANT_TIER = "starter"
DEFAULT_POOL_MAX_SKUS = 2500


def is_known_tier(tier: str) -> bool:
    return tier in TIER_SKU_LIMITS


def ceiling_for_tier(tier: str | None) -> int | None:
    if tier is None:
        tier = DEFAULT_TENANT_TIER
    if tier not in TIER_SKU_LIMITS:
        raise ValueError(f"unknown subscription tier {tier}")
    return TIER_SKU_LIMITS[tier]


def tenant_ceiling(quota: TenantSkuQuota | None) -> int | None:
    # Explicit max_skus wins; then the tier; a tenant with no quota row gets the default tier.
    if quota is None:
        return ceiling_for_tier(DEFAULT_TENANT_TIER)
    if quota.max_skus is not None:
        return quota.max_skus
    return ceiling_for_tier(quota.subscription_tier)


def utilization_percent(used: int, ceiling: int | None) -> float | None:
    if not ceiling:
        return None
    return round(used * 100.0 / ceiling, 1)


async def set_tenant_quota(
    session: AsyncSession,
    tenant_id: str,
    *,
    subscription_tier: str | None = None,
    max_skus: int | None = None,
    clear_max_skus: bool = False,
    hard_cap_enabled: bool | None = None,
    force: bool = False,
    actor_id: str | None = None,
) -> TenantSkuQuota:
    """Update a tenant's tier or explicit ceiling; the caller commits.

    Lowering the ceiling below the billable count in use is refused unless
    ``force`` is set, so a downgrade never silently blocks all new items.
    """
    if subscription_tier is not None and not is_known_tier(subscription_tier):
        raise ValueError(f"unknown subscription tier {subscription_tier}")
    quota = await organizations_repo.get_quota(session, tenant_id)
    previous_ceiling = tenant_ceiling(quota)
    if quota is None:
        quota = TenantSkuQuota(tenant_id=tenant_id, subscription_tier=DEFAULT_TENANT_TIER, hard_cap_enabled=True)
        session.add(quota)
    if subscription_tier is not None:
        quota.subscription_tier = subscription_tier
    if clear_max_skus:
        quota.max_skus = None
    elif max_skus is not None:
        quota.max_skus = max_skus
    if hard_cap_enabled is not None:
        quota.hard_cap_enabled = hard_cap_enabled
    quota.updated_by = actor_id

    ceiling = tenant_ceiling(quota)
    counter = await counters_repo.get_counter(session, tenant_id)
    current = counter.billable_count if counter else 0
    if ceiling is not None and current > ceiling and not force:
        raise CeilingBelowUsageError(
            scope="tenant", scope_id=tenant_id, ceiling=ceiling, current_count=current
        )
    quota.updated_at = datetime.now(timezone.utc)
    await session.flush()
    if previous_ceiling != ceiling:
        logger.info(
            "tenant_ceiling_changed tenant_id=%s previous=%s ceiling=%s forced=%s",
            tenant_id,
            previous_ceiling,
            ceiling,
            force,
        )
    return quota


async def set_organization_pool(
    session: AsyncSession,
    organization_id: str,
    *,
    max_total_skus: int | None = None,
    subscription_tier: str | None = None,
    force: bool = False,
    actor_id: str | None = None,
) -> OrganizationPool:
    if subscription_tier is not None and not is_known_tier(subscription_tier):
        raise ValueError(f"unknown subscription tier {subscription_tier}")
    pool = await organizations_repo.get_pool(session, organization_id, lock=True)
    if pool is None:
        pool = OrganizationPool(organization_id=organization_id, max_total_skus=DEFAULT_POOL_MAX_SKUS)
        session.add(pool)
    if subscription_tier is not None:
        pool.subscription_tier = subscription_tier
        if max_total_skus is None:
            tier_ceiling = ceiling_for_tier(subscription_tier)
            if tier_ceiling is not None:
                pool.max_total_skus = tier_ceiling
    if max_total_skus is not None:
        pool.max_total_skus = max_total_skus
    pool.updated_by = actor_id

    members = await organizations_repo.list_member_tenant_ids(session, organization_id)
    total = await counters_repo.sum_billable(session, members)
    if total > pool.max_total_skus and not force:
        raise CeilingBelowUsageError(
            scope="organization",
            scope_id=organization_id,
            ceiling=pool.max_total_skus,
            current_count=total,
        )
    pool.updated_at = datetime.now(timezone.utc)
    await session.flush()
    return pool


async def publish_ceiling_changed(
    *,
    scope: str,
    scope_id: str,
    ceiling: int | None,
    tenant_id: str | None = None,
) -> None:
    await get_notifier().publish(
        ChangeEvent(
            topic=TOPIC_QUOTA_CEILING_CHANGED,
            scope=scope,
            scope_id=scope_id,
            tenant_id=tenant_id,
            payload={"ceiling": ceiling},
        )
    )


async def fetch_purchased_tier(tenant_id: str) -> str:
    """Ask the payment collaborator which tier the tenant has paid for."""
    settings = get_settings()
    if not settings.billing_tier_lookup_url:
        raise IntegrationUnavailableError("Billing tier lookup is not configured")
    headers: dict[str, str] = {"Accept": "application/json"}
    if settings.billing_tier_lookup_token:
        headers["Authorization"] = f"Bearer {settings.billing_tier_lookup_token}"
    url = settings.billing_tier_lookup_url.rstrip("/") + f"/{tenant_id}"
    timeout = settings.ext_call_timeout_ms / 1000.0

    async def _get() -> httpx.Response:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url, headers=headers)
        response.raise_for_status()
        return response

    try:
        response = await retry_async(_get, integration="billing.tier_lookup", retryable=is_retryable_http_error)
    except httpx.HTTPStatusError as exc:
        status_code = exc.response.status_code
        logger.warning("billing_tier_lookup_rejected tenant_id=%s status=%s", tenant_id, status_code)
        raise IntegrationUnavailableError(
            f"Billing tier lookup responded with status {status_code}"
        ) from exc
    except (httpx.HTTPError, TimeoutError) as exc:
        logger.warning("billing_tier_lookup_failed tenant_id=%s", tenant_id, exc_info=exc)
        raise IntegrationUnavailableError("Billing tier lookup failed") from exc

    body: dict[str, Any] = response.json()
    tier = body.get("subscription_tier") or body.get("tier")
    if not isinstance(tier, str) or not is_known_tier(tier):
        raise IntegrationUnavailableError(f"Billing tier lookup returned unknown tier {tier!r}")
    return tier
