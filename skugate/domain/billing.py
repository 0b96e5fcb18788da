from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Any


class PolicyScope(str, Enum):
    GLOBAL = "global"
    ORGANIZATION = "organization"
    TENANT = "tenant"


class ItemStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"
    TRASHED = "trashed"
    DRAFT = "draft"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class Availability(str, Enum):
    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    PREORDER = "preorder"


# Statuses that never count, whatever the policy flags say.
NEVER_BILLABLE_STATUSES = frozenset(
    {ItemStatus.ARCHIVED.value, ItemStatus.TRASHED.value, ItemStatus.DRAFT.value}
)

GLOBAL_SCOPE_ID = "default"


def scope_key(scope: PolicyScope | str, scope_id: str | None) -> str:
    # Collapse scope + id into the string used for locking and cache keys.
    value = PolicyScope(scope).value
    if value == PolicyScope.GLOBAL.value:
        return value
    return f"{value}:{scope_id}"


@dataclass(frozen=True)
class PolicyFlags:
    count_active_private: bool
    count_preorder: bool
    count_zero_price: bool
    require_image: bool
    require_currency: bool

    @classmethod
    def names(cls) -> tuple[str, ...]:
        return tuple(field.name for field in fields(cls))

    @classmethod
    def from_object(cls, source: Any) -> "PolicyFlags":
        return cls(**{name: bool(getattr(source, name)) for name in cls.names()})

    def merged(self, patch: dict[str, bool | None]) -> "PolicyFlags":
        # Apply a partial override; None and absent keys keep the current value.
        values = asdict(self)
        for name in self.names():
            if patch.get(name) is not None:
                values[name] = bool(patch[name])
        return PolicyFlags(**values)

    def as_dict(self) -> dict[str, bool]:
        return asdict(self)


# Conservative fail-safe used when no layer has an effective policy: count everything, require nothing.
BUILTIN_FALLBACK_FLAGS = PolicyFlags(
    count_active_private=True,
    count_preorder=True,
    count_zero_price=True,
    require_image=False,
    require_currency=False,
)


@dataclass(frozen=True)
class PolicyWindow:
    """Immutable snapshot of one stored policy record, safe to cache across sessions."""

    policy_id: str
    scope: str
    scope_id: str | None
    version: int
    flags: PolicyFlags
    effective_from: datetime
    effective_to: datetime | None
    note: str | None = None
    updated_by: str | None = None
    updated_at: datetime | None = None

    def contains(self, at: datetime) -> bool:
        if self.effective_from > at:
            return False
        return self.effective_to is None or at < self.effective_to

    def state(self, now: datetime) -> str:
        # draft -> open -> closed, judged at one instant.
        if self.effective_from > now:
            return "draft"
        if self.effective_to is not None and self.effective_to <= now:
            return "closed"
        return "open"


@dataclass(frozen=True)
class ResolvedPolicy:
    """The single effective policy for a tenant at an instant."""

    tenant_id: str
    at: datetime
    flags: PolicyFlags
    source_scope: str
    source_scope_id: str | None = None
    policy_id: str | None = None
    version: int | None = None
    effective_from: datetime | None = None
    effective_to: datetime | None = None
    is_fallback: bool = False

    # Flag accessors let the predicate accept a resolution or a bare PolicyFlags.
    @property
    def count_active_private(self) -> bool:
        return self.flags.count_active_private

    @property
    def count_preorder(self) -> bool:
        return self.flags.count_preorder

    @property
    def count_zero_price(self) -> bool:
        return self.flags.count_zero_price

    @property
    def require_image(self) -> bool:
        return self.flags.require_image

    @property
    def require_currency(self) -> bool:
        return self.flags.require_currency


@dataclass(frozen=True)
class BillableItem:
    """Minimal projection of an inventory item needed by the counting predicate."""

    tenant_id: str
    status: str
    visibility: str = Visibility.PUBLIC.value
    availability: str = Availability.IN_STOCK.value
    price_cents: int | None = 0
    currency: str | None = None
    has_image: bool = False

    @classmethod
    def from_row(cls, row: Any) -> "BillableItem":
        image_url = getattr(row, "image_url", None)
        return cls(
            tenant_id=row.tenant_id,
            status=row.item_status,
            visibility=row.visibility,
            availability=row.availability,
            price_cents=row.price_cents,
            currency=row.currency,
            has_image=bool(image_url and str(image_url).strip()),
        )


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of one admission check; never persisted."""

    tenant_id: str
    requested_delta: int
    current_count: int
    ceiling: int | None
    admitted: bool
    reason: str
    ceiling_scope: str = "tenant"
    organization_id: str | None = None

    @property
    def remaining(self) -> int | None:
        if self.ceiling is None:
            return None
        used = self.current_count + (self.requested_delta if self.admitted else 0)
        return max(self.ceiling - used, 0)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["remaining"] = self.remaining
        return payload
