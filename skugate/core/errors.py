from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from skugate.domain.billing import QuotaDecision


class SkuGateError(Exception):
    """Base error for the SKU billing policy engine."""


class DatabaseError(SkuGateError):
    """Database layer failure."""


class IntegrationUnavailableError(SkuGateError):
    """External collaborator is unconfigured or temporarily unavailable."""


class PolicyScopeError(SkuGateError):
    """Unknown scope or a scope id that does not fit the scope."""


class PolicyValidationError(SkuGateError):
    """Policy write rejected before any state changed."""


class PolicyGapError(SkuGateError):
    """No policy is effective at any scope for the requested instant."""

    def __init__(self, tenant_id: str, at: Any) -> None:
        super().__init__(f"no billing policy effective for tenant {tenant_id} at {at}")
        self.tenant_id = tenant_id
        self.at = at


class PolicyOverlapWarning(Warning):
    """Two windows of one scope key contain the same instant; latest effective_from wins."""

    def __init__(self, scope_key: str, at: Any, policy_ids: list[str]) -> None:
        super().__init__(f"overlapping policy windows for {scope_key} at {at}: {policy_ids}")
        self.scope_key = scope_key
        self.at = at
        self.policy_ids = policy_ids


class ConcurrentPolicyEditConflict(SkuGateError):
    """Another edit won the race on the same scope key."""

    def __init__(
        self,
        scope_key: str,
        *,
        expected_version: int | None = None,
        current_version: int | None = None,
    ) -> None:
        super().__init__(f"concurrent policy edit on {scope_key}")
        self.scope_key = scope_key
        self.expected_version = expected_version
        self.current_version = current_version


class QuotaExceededError(SkuGateError):
    """Admission denied; the caller must abort the inventory write."""

    def __init__(self, decision: "QuotaDecision") -> None:
        super().__init__(
            f"SKU quota exceeded for tenant {decision.tenant_id}: "
            f"{decision.current_count} + {decision.requested_delta} > {decision.ceiling}"
        )
        self.decision = decision


class CounterDriftDetected(SkuGateError):
    """Reconciliation found the stored counter off by more than the tolerance."""

    def __init__(self, tenant_id: str, *, stored: int, recomputed: int) -> None:
        super().__init__(
            f"billable counter drift for tenant {tenant_id}: stored={stored} recomputed={recomputed}"
        )
        self.tenant_id = tenant_id
        self.stored = stored
        self.recomputed = recomputed

    @property
    def drift(self) -> int:
        return self.recomputed - self.stored


class CeilingBelowUsageError(SkuGateError):
    """A new ceiling would sit below the billable count already in use."""

    def __init__(self, *, scope: str, scope_id: str, ceiling: int, current_count: int) -> None:
        super().__init__(
            f"{scope} {scope_id} has {current_count} billable SKUs, above the requested ceiling {ceiling}"
        )
        self.scope = scope
        self.scope_id = scope_id
        self.ceiling = ceiling
        self.current_count = current_count
