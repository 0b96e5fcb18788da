"""Billable-item predicate.

``is_billable`` is the only place that decides whether an inventory item
counts toward a tenant's SKU quota. It is a pure function of the item and the
resolved policy so the admission path, the reconciler and the evaluate
endpoint can never disagree.
"""

from __future__ import annotations

import re
from typing import Protocol

from skugate.domain.billing import (
    NEVER_BILLABLE_STATUSES,
    Availability,
    BillableItem,
    Visibility,
)


_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


class PolicyLike(Protocol):
    count_active_private: bool
    count_preorder: bool
    count_zero_price: bool
    require_image: bool
    require_currency: bool


def exclusion_reason(item: BillableItem, policy: PolicyLike) -> str | None:
    # First rule that excludes the item, or None when it counts.
    if item.status in NEVER_BILLABLE_STATUSES:
        return f"status_{item.status}"
    if item.visibility == Visibility.PRIVATE.value and not policy.count_active_private:
        return "private_not_counted"
    if item.availability == Availability.PREORDER.value and not policy.count_preorder:
        return "preorder_not_counted"
    if not item.price_cents and not policy.count_zero_price:
        return "zero_price_not_counted"
    if policy.require_image and not item.has_image:
        return "missing_image"
    if policy.require_currency and not _CURRENCY_RE.match(item.currency or ""):
        return "missing_currency"
    return None


def is_billable(item: BillableItem | None, policy: PolicyLike) -> bool:
    # Total over all inputs: an absent item (delete side of a write) never counts.
    if item is None:
        return False
    return exclusion_reason(item, policy) is None


def billable_delta(
    before: BillableItem | None,
    after: BillableItem | None,
    policy: PolicyLike,
) -> int:
    # -1, 0 or +1 for a single create/update/delete under one resolved policy.
    return int(is_billable(after, policy)) - int(is_billable(before, policy))
