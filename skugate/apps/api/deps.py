from __future__ import annotations

from typing import AsyncGenerator

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.apps.api.response import get_request_id
from skugate.core.config import get_settings
from skugate.persistence.db import get_session
from skugate.services.audit import record_event
from skugate.services.authz import Actor, normalize_role


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def forbidden_error(message: str = "Insufficient role for this operation") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _parse_role(value: str) -> str:
    try:
        return normalize_role(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc


async def get_actor(request: Request) -> Actor:
    # The gateway has already authenticated the caller and forwards who they are.
    settings = get_settings()
    tenant_id = request.headers.get("X-Tenant-Id") or None
    organization_id = request.headers.get("X-Organization-Id") or None
    actor_id = request.headers.get("X-Actor-Id")
    role_header = request.headers.get("X-Actor-Role")
    if not settings.auth_enabled:
        return Actor(
            actor_id=actor_id or "dev-actor",
            role=_parse_role(role_header or settings.auth_dev_actor_role),
            tenant_id=tenant_id,
            organization_id=organization_id,
        )
    if not actor_id or not role_header:
        raise _auth_error("X-Actor-Id and X-Actor-Role headers are required")
    return Actor(
        actor_id=actor_id,
        role=_parse_role(role_header),
        tenant_id=tenant_id,
        organization_id=organization_id,
    )


async def deny(
    request: Request,
    actor: Actor,
    *,
    resource_type: str,
    resource_id: str | None,
    tenant_id: str | None = None,
) -> HTTPException:
    # Record the denial before the caller raises the returned 403.
    await record_event(
        tenant_id=tenant_id,
        actor_type="user",
        actor_id=actor.actor_id,
        actor_role=actor.role,
        event_type="authz.forbidden",
        outcome="failure",
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=get_request_id(request),
        metadata={"path": request.url.path, "method": request.method},
        error_code="AUTH_FORBIDDEN",
    )
    return forbidden_error()