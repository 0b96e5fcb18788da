from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.domain.models import AuditEvent, BillingPolicyAuditEntry
from skugate.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "signature"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub credential-looking fields while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def diff_snapshots(
    before: dict[str, Any] | None,
    after: dict[str, Any],
) -> dict[str, dict[str, Any]]:
    # Field-level {old, new} pairs; unchanged fields are omitted.
    before = before or {}
    changes: dict[str, dict[str, Any]] = {}
    for key in sorted(set(before) | set(after)):
        old = before.get(key)
        new = after.get(key)
        if old != new:
            changes[key] = {"old": old, "new": new}
    return changes


def add_policy_audit_entry(
    session: AsyncSession,
    *,
    occurred_at: datetime,
    scope: str,
    scope_id: str | None,
    scope_key: str,
    policy_id: str,
    version: int,
    action: str,
    actor_id: str,
    actor_role: str | None,
    reason: str | None,
    request_id: str | None,
    before: dict[str, Any] | None,
    after: dict[str, Any],
) -> BillingPolicyAuditEntry:
    """Stage a policy audit row on the caller's transaction.

    Unlike ``record_event`` this is not best-effort: it commits or rolls back
    together with the policy change it describes.
    """
    before_json = sanitize_metadata(before) if before is not None else None
    after_json = sanitize_metadata(after)
    entry = BillingPolicyAuditEntry(
        occurred_at=occurred_at,
        scope=scope,
        scope_id=scope_id,
        scope_key=scope_key,
        policy_id=policy_id,
        version=version,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        reason=reason,
        request_id=request_id,
        before_json=before_json,
        after_json=after_json,
        diff_json=diff_snapshots(before_json, after_json),
    )
    session.add(entry)
    return entry


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner to avoid breaking user flows.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                level = logger.warning if best_effort else logger.error
                level(
                    "audit_event_write_failed event_type=%s request_id=%s",
                    event_type,
                    request_id,
                    exc_info=exc,
                )
        return

    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        level = logger.warning if best_effort else logger.error
        level(
            "audit_event_write_failed event_type=%s request_id=%s",
            event_type,
            request_id,
            exc_info=exc,
        )


async def record_system_event(
    *,
    event_type: str,
    tenant_id: str | None = None,
    outcome: str = "success",
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> None:
    # Background paths (sweeps, reconciliation) audit under a system actor in their own session.
    await record_event(
        tenant_id=tenant_id,
        actor_type="system",
        actor_id=None,
        actor_role=None,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata=metadata,
        error_code=error_code,
    )
