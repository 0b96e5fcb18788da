from __future__ import annotations

import pytest
from sqlalchemy.exc import DBAPIError

from skugate.domain.billing import QuotaDecision
from skugate.domain.models import TenantSkuQuota
from skugate.services.quota import _is_lock_timeout
from skugate.services.tiers import (
    DEFAULT_TENANT_TIER,
    TIER_SKU_LIMITS,
    ceiling_for_tier,
    tenant_ceiling,
    utilization_percent,
)


def test_tier_catalog_ceilings() -> None:
    assert ceiling_for_tier("google_only") == 250
    assert ceiling_for_tier("starter") == 500
    assert ceiling_for_tier("professional") == 5000
    assert ceiling_for_tier("enterprise") is None
    assert ceiling_for_tier(None) == TIER_SKU_LIMITS[DEFAULT_TENANT_TIER]
    with pytest.raises(ValueError):
        ceiling_for_tier("platinum")


def test_explicit_ceiling_wins_over_tier() -> None:
    assert tenant_ceiling(None) == 500
    assert tenant_ceiling(TenantSkuQuota(tenant_id="t1", subscription_tier="professional")) == 5000
    assert tenant_ceiling(TenantSkuQuota(tenant_id="t1", subscription_tier="enterprise", max_skus=40)) == 40


def test_utilization_percent() -> None:
    assert utilization_percent(95, 100) == 95.0
    assert utilization_percent(1, 3) == 33.3
    assert utilization_percent(10, None) is None


def test_decision_remaining_reflects_admission() -> None:
    admitted = QuotaDecision(
        tenant_id="t1", requested_delta=1, current_count=95, ceiling=100, admitted=True, reason="within_quota"
    )
    rejected = QuotaDecision(
        tenant_id="t1", requested_delta=1, current_count=100, ceiling=100, admitted=False, reason="quota_exceeded"
    )
    unlimited = QuotaDecision(
        tenant_id="t1", requested_delta=1, current_count=7, ceiling=None, admitted=True, reason="unlimited"
    )
    assert admitted.remaining == 4
    assert rejected.remaining == 0
    assert unlimited.remaining is None
    assert admitted.as_dict()["remaining"] == 4


def test_lock_timeout_detection_reads_sqlstate() -> None:
    class DriverError(Exception):
        sqlstate = "55P03"

    class OtherError(Exception):
        sqlstate = "40001"

    timeout = DBAPIError("UPDATE ...", None, DriverError())
    serialization = DBAPIError("UPDATE ...", None, OtherError())
    assert _is_lock_timeout(timeout) is True
    assert _is_lock_timeout(serialization) is False
