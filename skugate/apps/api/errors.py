from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from skugate.apps.api.response import error_response
from skugate.core.errors import (
    CeilingBelowUsageError,
    ConcurrentPolicyEditConflict,
    IntegrationUnavailableError,
    PolicyScopeError,
    PolicyValidationError,
    QuotaExceededError,
)
from skugate.persistence.guards import TenantPredicateError
from skugate.services.quota import REASON_TIMEOUT


logger = logging.getLogger(__name__)

UPGRADE_HINT = "Upgrade the subscription tier or archive items to add more."

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "QUOTA_EXCEEDED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Route handlers raise HTTPException(detail={"code", "message", ...extra}).
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _envelope(
    request: Request,
    status_code: int,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(request, exc.status_code, code=code, message=message, details=details, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(request, exc.status_code, code=code, message=message, details=details, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _envelope(
        request,
        422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )


def quota_exceeded_message(exc: QuotaExceededError) -> str:
    decision = exc.decision
    scope = "organization pool" if decision.ceiling_scope == "organization" else "SKU limit"
    return f"{scope} reached: {decision.current_count} of {decision.ceiling} billable SKUs in use"


async def quota_exceeded_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
    # Never a generic 500: the caller gets an actionable upgrade message.
    decision = exc.decision
    if decision.reason == REASON_TIMEOUT:
        return _envelope(
            request,
            503,
            code="ADMISSION_TIMEOUT",
            message="Quota check timed out; the item was not saved. Retry shortly.",
            details=decision.as_dict(),
            headers={"Retry-After": "1"},
        )
    return _envelope(
        request,
        402,
        code="QUOTA_EXCEEDED",
        message=quota_exceeded_message(exc),
        details={**decision.as_dict(), "upgrade_hint": UPGRADE_HINT},
    )


async def policy_conflict_handler(request: Request, exc: ConcurrentPolicyEditConflict) -> JSONResponse:
    return _envelope(
        request,
        409,
        code="POLICY_EDIT_CONFLICT",
        message="Policy was changed by another edit; reload and retry",
        details={
            "scope_key": exc.scope_key,
            "expected_version": exc.expected_version,
            "current_version": exc.current_version,
        },
    )


async def policy_invalid_handler(
    request: Request, exc: PolicyValidationError | PolicyScopeError
) -> JSONResponse:
    return _envelope(request, 422, code="POLICY_INVALID", message=str(exc))


async def ceiling_below_usage_handler(request: Request, exc: CeilingBelowUsageError) -> JSONResponse:
    return _envelope(
        request,
        409,
        code="SKU_LIMIT_EXCEEDED",
        message=str(exc),
        details={
            "scope": exc.scope,
            "scope_id": exc.scope_id,
            "ceiling": exc.ceiling,
            "current_count": exc.current_count,
            "hint": "Archive items first or retry with force=true",
        },
    )


async def integration_unavailable_handler(
    request: Request, exc: IntegrationUnavailableError
) -> JSONResponse:
    return _envelope(request, 503, code="INTEGRATION_UNAVAILABLE", message=str(exc))


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    logger.error("tenant_predicate_missing path=%s", request.url.path)
    return _envelope(request, 400, code="TENANT_REQUIRED", message=exc.message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, code="INTERNAL_ERROR", message="Internal server error")
