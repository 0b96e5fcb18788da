from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"
# Request ids are copied into audit rows; longer gateway ids are replaced.
MAX_REQUEST_ID_LENGTH = 128

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)
    # Set for list payloads (records, history, audit).
    count: int | None = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def coerce_request_id(candidate: str | None) -> str:
    value = (candidate or "").strip()
    if value and len(value) <= MAX_REQUEST_ID_LENGTH:
        return value
    return str(uuid4())


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = coerce_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
    return request_id


def _meta(request: Request, data: Any = None) -> dict[str, Any]:
    meta = ResponseMeta(
        request_id=get_request_id(request),
        count=len(data) if isinstance(data, list) else None,
    )
    return meta.model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": jsonable_encoder(data), "meta": _meta(request, data)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=jsonable_encoder(details))
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
