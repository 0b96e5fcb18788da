from __future__ import annotations

import pytest

from skugate.persistence.guards import TenantPredicateError
from skugate.persistence.repos import counters as counters_repo
from skugate.persistence.repos import organizations as organizations_repo
from skugate.services.counters import apply_delta


@pytest.mark.asyncio
async def test_counter_repo_requires_tenant_predicate() -> None:
    with pytest.raises(TenantPredicateError):
        await counters_repo.get_counter(None, None)  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await counters_repo.get_or_create_counter(None, "")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_quota_repo_requires_tenant_predicate() -> None:
    with pytest.raises(TenantPredicateError):
        await organizations_repo.get_quota(None, None)  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await organizations_repo.get_organization_id(None, "")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_counter_deltas_are_bounded() -> None:
    with pytest.raises(ValueError):
        await apply_delta(None, "t1", 2)  # type: ignore[arg-type]
