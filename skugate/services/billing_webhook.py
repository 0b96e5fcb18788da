from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
from typing import Any

import httpx

from skugate.core.config import get_settings
from skugate.services.resilience import is_retryable_http_error, retry_async


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookDeliveryResult:
    sent: bool
    status_code: int | None
    message: str


def build_billing_signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the exact body bytes the receiver will see.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def serialize_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


async def send_billing_webhook_event(
    *,
    event_type: str,
    payload: dict[str, Any],
    require_enabled: bool = True,
) -> WebhookDeliveryResult:
    # Alerting only: failures are reported in the result, never raised.
    settings = get_settings()
    if require_enabled and not settings.billing_webhook_enabled:
        return WebhookDeliveryResult(sent=False, status_code=None, message="Billing webhook is disabled")
    if not settings.billing_webhook_url or not settings.billing_webhook_secret:
        return WebhookDeliveryResult(sent=False, status_code=None, message="Billing webhook is not configured")

    body = serialize_payload(payload)
    headers = {
        "Content-Type": "application/json",
        "X-Billing-Signature": build_billing_signature(settings.billing_webhook_secret, body),
        "X-Billing-Event": event_type,
    }
    timeout = min(settings.billing_webhook_timeout_ms, settings.ext_call_timeout_ms) / 1000.0

    async def _post() -> httpx.Response:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(settings.billing_webhook_url, content=body, headers=headers)
        response.raise_for_status()
        return response

    try:
        response = await retry_async(_post, integration="billing.webhook", retryable=is_retryable_http_error)
    except httpx.HTTPStatusError as exc:
        status_code = exc.response.status_code
        logger.warning("billing_webhook_rejected event_type=%s status=%s", event_type, status_code)
        return WebhookDeliveryResult(
            sent=False,
            status_code=status_code,
            message=f"Webhook responded with status {status_code}",
        )
    except (httpx.HTTPError, TimeoutError) as exc:
        logger.warning("billing_webhook_send_failed event_type=%s", event_type, exc_info=exc)
        return WebhookDeliveryResult(sent=False, status_code=None, message=str(exc))

    return WebhookDeliveryResult(
        sent=True,
        status_code=response.status_code,
        message="Webhook delivered successfully",
    )
