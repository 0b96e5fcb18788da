"""Entry points called by the inventory write path.

Both functions run inside the caller's transaction: a ``QuotaExceededError``
raised from ``on_item_written`` must abort the inventory write, and the counter
change commits or rolls back together with it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from skugate.domain.billing import BillableItem, ResolvedPolicy
from skugate.services.billable import billable_delta, exclusion_reason, is_billable
from skugate.services.counters import apply_delta
from skugate.services.policy_resolver import resolve_or_default
from skugate.services.quota import get_quota_enforcer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Evaluation:
    billable: bool
    reason: str | None
    policy: ResolvedPolicy

    def as_dict(self) -> dict[str, Any]:
        return {
            "billable": self.billable,
            "reason": self.reason,
            "policy_id": self.policy.policy_id,
            "source_scope": self.policy.source_scope,
            "is_fallback": self.policy.is_fallback,
        }


async def evaluate(
    session: AsyncSession,
    item: BillableItem,
    tenant_id: str,
    *,
    organization_id: str | None = None,
    at: datetime | None = None,
) -> Evaluation:
    policy = await resolve_or_default(session, tenant_id, at, organization_id=organization_id)
    reason = exclusion_reason(item, policy)
    return Evaluation(billable=reason is None, reason=reason, policy=policy)


async def on_item_written(
    session: AsyncSession,
    tenant_id: str,
    *,
    before: BillableItem | None,
    after: BillableItem | None,
    organization_id: str | None = None,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> int:
    """Apply the billable delta of one create/update/delete and return it.

    ``before`` is None for a creation and ``after`` is None for a deletion.
    Transitions into billable go through admission; transitions out are a
    plain decrement; anything else only ensures the counter row exists.
    """
    policy = await resolve_or_default(session, tenant_id, organization_id=organization_id)
    delta = billable_delta(before, after, policy)
    if delta > 0:
        await get_quota_enforcer().enforce_admission(
            session,
            tenant_id,
            organization_id,
            requested_delta=delta,
            actor_id=actor_id,
            request_id=request_id,
        )
    else:
        await apply_delta(session, tenant_id, delta)
    logger.debug(
        "inventory_item_counted tenant_id=%s delta=%s billable_after=%s",
        tenant_id,
        delta,
        is_billable(after, policy),
    )
    return delta
