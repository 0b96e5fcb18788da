from __future__ import annotations

import httpx
import pytest

from skugate.services.resilience import RetryPolicy, is_retryable_http_error, retry_async
from skugate.services.telemetry import counters_snapshot, external_call_summary


FAST = RetryPolicy(timeout_ms=200, max_attempts=3, backoff_ms=1)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://payments.example/tiers/t1")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("status", request=request, response=response)


@pytest.mark.asyncio
async def test_retry_async_retries_transient_then_succeeds() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(flaky, integration="billing.tier_lookup", policy=FAST)

    assert result == "ok"
    assert calls["count"] == 3
    assert counters_snapshot()["external_retries_total"] == 2
    summary = external_call_summary(60)["billing.tier_lookup"]
    assert summary["calls"] == 1
    assert summary["failures"] == 0


@pytest.mark.asyncio
async def test_retry_async_stops_on_client_error() -> None:
    calls = {"count": 0}

    async def rejected() -> None:
        calls["count"] += 1
        raise _status_error(404)

    with pytest.raises(httpx.HTTPStatusError):
        await retry_async(
            rejected,
            integration="billing.webhook",
            policy=FAST,
            retryable=is_retryable_http_error,
        )

    assert calls["count"] == 1
    assert external_call_summary(60)["billing.webhook"]["failures"] == 1


@pytest.mark.asyncio
async def test_retry_async_gives_up_after_max_attempts() -> None:
    calls = {"count": 0}

    async def down() -> None:
        calls["count"] += 1
        raise _status_error(503)

    with pytest.raises(httpx.HTTPStatusError):
        await retry_async(
            down,
            integration="billing.webhook",
            policy=FAST,
            retryable=is_retryable_http_error,
        )

    assert calls["count"] == FAST.max_attempts


def test_retryable_http_errors() -> None:
    assert is_retryable_http_error(_status_error(502)) is True
    assert is_retryable_http_error(_status_error(409)) is False
    assert is_retryable_http_error(httpx.ConnectError("refused")) is True
    assert is_retryable_http_error(ValueError("bad")) is False
