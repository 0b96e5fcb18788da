from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from skugate.apps.api.errors import (
    ceiling_below_usage_handler,
    http_exception_handler,
    integration_unavailable_handler,
    policy_conflict_handler,
    policy_invalid_handler,
    quota_exceeded_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from skugate.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from skugate.apps.api.routes.billing import router as billing_router
from skugate.apps.api.routes.health import router as health_router
from skugate.apps.api.routes.ops import router as ops_router
from skugate.apps.api.routes.policy import router as policy_router
from skugate.core.errors import (
    CeilingBelowUsageError,
    ConcurrentPolicyEditConflict,
    IntegrationUnavailableError,
    PolicyScopeError,
    PolicyValidationError,
    QuotaExceededError,
)
from skugate.core.logging import configure_logging
from skugate.persistence.guards import TenantPredicateError
from skugate.services.change_handlers import build_cache_listener
from skugate.services.notifier import get_notifier
from skugate.services.resilience import close_shared_redis
from skugate.services.telemetry import record_request


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Policy edits made by other replicas reach this process only through the channel.
    listener = build_cache_listener(get_notifier().origin)
    task = asyncio.create_task(listener.listen())
    try:
        yield
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await close_shared_redis()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="SKU Billing Policy API", version=API_VERSION, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(QuotaExceededError, quota_exceeded_handler)
    app.add_exception_handler(ConcurrentPolicyEditConflict, policy_conflict_handler)
    app.add_exception_handler(PolicyValidationError, policy_invalid_handler)
    app.add_exception_handler(PolicyScopeError, policy_invalid_handler)
    app.add_exception_handler(CeilingBelowUsageError, ceiling_below_usage_handler)
    app.add_exception_handler(IntegrationUnavailableError, integration_unavailable_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Every route is versioned; there are no legacy aliases to keep.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(policy_router, prefix=f"/{API_VERSION}")
    app.include_router(billing_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
