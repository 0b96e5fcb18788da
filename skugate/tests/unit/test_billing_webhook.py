from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest

from skugate.core.config import get_settings
from skugate.core.errors import IntegrationUnavailableError
from skugate.services import billing_webhook, tiers
from skugate.services.billing_webhook import build_billing_signature, send_billing_webhook_event
from skugate.services.tiers import fetch_purchased_tier


def _mock_httpx(monkeypatch: pytest.MonkeyPatch, handler) -> None:
    # Route every client the module builds through an in-memory transport.
    real_client = httpx.AsyncClient

    def _client(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", _client)


def test_build_billing_signature_matches_hmac() -> None:
    secret = "supersecret"
    payload = b'{"event":"test"}'
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    assert build_billing_signature(secret, payload) == expected


@pytest.mark.asyncio
async def test_webhook_disabled_sends_nothing() -> None:
    result = await send_billing_webhook_event(event_type="billing.quota.exceeded", payload={"a": 1})
    assert result.sent is False
    assert result.message == "Billing webhook is disabled"


@pytest.mark.asyncio
async def test_webhook_signs_exact_body(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BILLING_WEBHOOK_ENABLED", "true")
    monkeypatch.setenv("BILLING_WEBHOOK_URL", "https://billing.example/hook")
    monkeypatch.setenv("BILLING_WEBHOOK_SECRET", "s3cret")
    get_settings.cache_clear()
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(204)

    _mock_httpx(monkeypatch, handler)
    result = await billing_webhook.send_billing_webhook_event(
        event_type="billing.quota.exceeded", payload={"tenant_id": "t1", "ceiling": 500}
    )

    assert result.sent is True
    request = captured[0]
    assert request.headers["X-Billing-Event"] == "billing.quota.exceeded"
    assert request.headers["X-Billing-Signature"] == build_billing_signature("s3cret", request.content)
    assert json.loads(request.content) == {"tenant_id": "t1", "ceiling": 500}


@pytest.mark.asyncio
async def test_tier_lookup_requires_configuration() -> None:
    with pytest.raises(IntegrationUnavailableError):
        await fetch_purchased_tier("t1")


@pytest.mark.asyncio
async def test_tier_lookup_reads_known_tier(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BILLING_TIER_LOOKUP_URL", "https://payments.example/tiers/")
    monkeypatch.setenv("BILLING_TIER_LOOKUP_TOKEN", "tok")
    get_settings.cache_clear()

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/tiers/t1"
        assert request.headers["Authorization"] == "Bearer tok"
        return httpx.Response(200, json={"subscription_tier": "professional"})

    _mock_httpx(monkeypatch, handler)
    assert await tiers.fetch_purchased_tier("t1") == "professional"


@pytest.mark.asyncio
async def test_tier_lookup_rejects_unknown_tier(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BILLING_TIER_LOOKUP_URL", "https://payments.example/tiers")
    get_settings.cache_clear()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"tier": "platinum"})

    _mock_httpx(monkeypatch, handler)
    with pytest.raises(IntegrationUnavailableError):
        await tiers.fetch_purchased_tier("t1")


@pytest.mark.asyncio
async def test_webhook_rejection_is_reported_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BILLING_WEBHOOK_ENABLED", "true")
    monkeypatch.setenv("BILLING_WEBHOOK_URL", "https://billing.example/hook")
    monkeypatch.setenv("BILLING_WEBHOOK_SECRET", "s3cret")
    get_settings.cache_clear()
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400)

    _mock_httpx(monkeypatch, handler)
    result = await billing_webhook.send_billing_webhook_event(
        event_type="billing.quota.exceeded", payload={"tenant_id": "t1"}
    )

    assert result.sent is False
    assert result.status_code == 400
    assert len(calls) == 1
