from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from skugate.apps.api.deps import deny, get_actor
from skugate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skugate.apps.api.response import SuccessEnvelope, success_response
from skugate.persistence.db import pool_stats
from skugate.services.authz import ROLE_SUPPORT, Actor
from skugate.services.telemetry import (
    admission_latency_summary,
    counters_snapshot,
    external_call_summary,
    gauges_snapshot,
    request_latency_summary,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    requests_5m: dict[str, Any]
    admission_latency_ms: dict[str, Any]
    external_calls_5m: dict[str, Any]
    db_pool: dict[str, Any]


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def metrics(request: Request, actor: Actor = Depends(get_actor)) -> dict:
    if not (actor.is_operator or actor.role == ROLE_SUPPORT):
        raise await deny(request, actor, resource_type="ops_metrics", resource_id=None)
    payload = MetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        requests_5m=request_latency_summary(300),
        admission_latency_ms=admission_latency_summary(),
        external_calls_5m=external_call_summary(300),
        db_pool=pool_stats(),
    )
    return success_response(request=request, data=payload)
