from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from redis.asyncio import Redis

from skugate.core.config import get_settings
from skugate.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


_shared_redis: Redis | None = None
_shared_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_shared_redis() -> Redis | None:
    """Return the Redis client used for change notifications in this event loop.

    Returns None outside a running loop or when no client can be built; callers
    treat that as "notifications unavailable" and rely on the sweep.
    """
    global _shared_redis, _shared_redis_loop
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    if _shared_redis is not None and _shared_redis_loop is current_loop:
        return _shared_redis
    # Clients bind to the loop that first awaits them; tests and scripts run fresh loops.
    try:
        _shared_redis = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
    except ValueError as exc:
        logger.warning("shared_redis_unavailable", exc_info=exc)
        _shared_redis = None
        return None
    _shared_redis_loop = current_loop
    return _shared_redis


async def close_shared_redis() -> None:
    global _shared_redis, _shared_redis_loop
    client, _shared_redis, _shared_redis_loop = _shared_redis, None, None
    if client is not None:
        await client.aclose()


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def delay_s(self, attempt: int) -> float:
        # Jittered exponential backoff after the given failed attempt.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=max(settings.ext_retry_max_attempts, 1),
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def _transient(exc: Exception) -> bool:
    return isinstance(exc, (TimeoutError, OSError))


def is_retryable_http_error(exc: Exception) -> bool:
    # A 4xx answer will repeat for the same request; only transport errors and 5xx are retried.
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    integration: str,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    """Call an external collaborator with per-attempt timeouts and retries.

    One external-call sample is recorded per invocation, covering all attempts.
    The last failure is re-raised; non-retryable failures surface immediately.
    """
    policy = policy or default_retry_policy()
    retryable = retryable or _transient
    start = time.monotonic()
    attempt = 1
    while True:
        try:
            result = await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:
            if attempt >= policy.max_attempts or not retryable(exc):
                record_external_call(
                    integration=integration,
                    latency_ms=(time.monotonic() - start) * 1000.0,
                    success=False,
                )
                raise
            increment_counter("external_retries_total")
            logger.info("external_call_retry integration=%s attempt=%s", integration, attempt)
            await asyncio.sleep(policy.delay_s(attempt))
            attempt += 1
            continue
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return result
