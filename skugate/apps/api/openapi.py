from __future__ import annotations

from typing import Any

from skugate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response(
        "Missing actor",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-Actor-Id and X-Actor-Role headers are required"),
    ),
    402: _response(
        "SKU quota exceeded",
        _error_example(
            code="QUOTA_EXCEEDED",
            message="SKU limit reached: 500 of 500 billable SKUs in use",
            details={
                "tenant_id": "t_123",
                "current_count": 500,
                "ceiling": 500,
                "ceiling_scope": "tenant",
                "upgrade_hint": "Upgrade the subscription tier or archive items to add more.",
            },
        ),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Resource not found")),
    409: _response(
        "Conflict",
        _error_example(
            code="POLICY_EDIT_CONFLICT",
            message="Policy was changed by another edit; reload and retry",
            details={"scope_key": "tenant:t_123", "expected_version": 3, "current_version": 4},
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="POLICY_INVALID", message="effective_from is too far in the past"),
    ),
    500: _response("Internal server error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
    503: _response(
        "Service unavailable",
        _error_example(code="SERVICE_UNAVAILABLE", message="Service unavailable"),
    ),
}
