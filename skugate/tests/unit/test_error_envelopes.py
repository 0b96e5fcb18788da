from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient

from skugate.apps.api.errors import (
    ceiling_below_usage_handler,
    http_exception_handler,
    policy_conflict_handler,
    quota_exceeded_handler,
)
from skugate.core.errors import (
    CeilingBelowUsageError,
    ConcurrentPolicyEditConflict,
    QuotaExceededError,
)
from skugate.domain.billing import QuotaDecision


def _decision(reason: str) -> QuotaDecision:
    return QuotaDecision(
        tenant_id="t1",
        requested_delta=1,
        current_count=500,
        ceiling=500,
        admitted=False,
        reason=reason,
    )


def _app() -> FastAPI:
    app = FastAPI()
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(QuotaExceededError, quota_exceeded_handler)
    app.add_exception_handler(ConcurrentPolicyEditConflict, policy_conflict_handler)
    app.add_exception_handler(CeilingBelowUsageError, ceiling_below_usage_handler)

    @app.post("/items")
    async def create_item() -> dict:
        raise QuotaExceededError(_decision("quota_exceeded"))

    @app.post("/items-slow")
    async def create_item_slow() -> dict:
        raise QuotaExceededError(_decision("admission_timeout"))

    @app.put("/policy")
    async def put_policy() -> dict:
        raise ConcurrentPolicyEditConflict("tenant:t1", expected_version=2, current_version=3)

    @app.put("/quota")
    async def put_quota() -> dict:
        raise CeilingBelowUsageError(scope="tenant", scope_id="t1", ceiling=250, current_count=300)

    @app.get("/forbidden")
    async def forbidden() -> dict:
        raise HTTPException(status_code=403, detail={"code": "AUTH_FORBIDDEN", "message": "nope"})

    return app


@pytest.mark.asyncio
async def test_quota_exceeded_is_actionable_not_500() -> None:
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/items", headers={"X-Request-Id": "req-1"})
    assert response.status_code == 402
    body = response.json()
    assert body["error"]["code"] == "QUOTA_EXCEEDED"
    assert "500 of 500" in body["error"]["message"]
    assert body["error"]["details"]["upgrade_hint"]
    assert body["error"]["details"]["remaining"] == 0
    assert body["meta"]["request_id"] == "req-1"


@pytest.mark.asyncio
async def test_admission_timeout_asks_for_retry() -> None:
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/items-slow")
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    assert response.json()["error"]["code"] == "ADMISSION_TIMEOUT"


@pytest.mark.asyncio
async def test_policy_conflict_and_ceiling_envelopes() -> None:
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        conflict = await client.put("/policy")
        ceiling = await client.put("/quota")
        forbidden = await client.get("/forbidden")

    assert conflict.status_code == 409
    assert conflict.json()["error"]["details"]["current_version"] == 3
    assert ceiling.status_code == 409
    assert ceiling.json()["error"]["code"] == "SKU_LIMIT_EXCEEDED"
    assert ceiling.json()["error"]["details"]["current_count"] == 300
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == {"code": "AUTH_FORBIDDEN", "message": "nope"}
