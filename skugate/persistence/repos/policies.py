from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.core.errors import DatabaseError
from skugate.domain.billing import PolicyFlags, PolicyWindow
from skugate.domain.models import (
    BillingPolicy,
    BillingPolicyAuditEntry,
    BillingPolicyHead,
    BillingPolicyHistory,
)


def to_window(record: BillingPolicy) -> PolicyWindow:
    # Detach a record into an immutable snapshot so caches never hold live ORM rows.
    return PolicyWindow(
        policy_id=record.id,
        scope=record.scope,
        scope_id=record.scope_id,
        version=record.version,
        flags=PolicyFlags.from_object(record),
        effective_from=record.effective_from,
        effective_to=record.effective_to,
        note=record.note,
        updated_by=record.updated_by,
        updated_at=record.updated_at,
    )


async def load_windows(session: AsyncSession, scope_key: str) -> list[PolicyWindow]:
    # Every window ever stored for the key, open and closed, oldest first.
    result = await session.execute(
        select(BillingPolicy)
        .where(BillingPolicy.scope_key == scope_key)
        .order_by(BillingPolicy.effective_from, BillingPolicy.version)
    )
    return [to_window(record) for record in result.scalars().all()]


async def lock_head(
    session: AsyncSession,
    *,
    scope_key: str,
    scope: str,
    scope_id: str | None,
) -> BillingPolicyHead:
    # Race-safe create, then lock: concurrent first writers all end up waiting on one row.
    stmt = insert(BillingPolicyHead).values(
        scope_key=scope_key,
        scope=scope,
        scope_id=scope_id,
        current_version=0,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[BillingPolicyHead.scope_key])
    await session.execute(stmt)
    result = await session.execute(
        select(BillingPolicyHead)
        .where(BillingPolicyHead.scope_key == scope_key)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    head = result.scalar_one_or_none()
    if head is None:
        raise DatabaseError(f"policy head for {scope_key} missing after insert")
    return head


async def get_open_policy(
    session: AsyncSession,
    scope_key: str,
    *,
    for_update: bool = False,
) -> BillingPolicy | None:
    stmt = select(BillingPolicy).where(
        BillingPolicy.scope_key == scope_key,
        BillingPolicy.effective_to.is_(None),
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_records(
    session: AsyncSession,
    scope_key: str,
    *,
    limit: int = 50,
) -> list[BillingPolicy]:
    result = await session.execute(
        select(BillingPolicy)
        .where(BillingPolicy.scope_key == scope_key)
        .order_by(BillingPolicy.effective_from.desc(), BillingPolicy.version.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_history(
    session: AsyncSession,
    scope_key: str,
    *,
    limit: int = 50,
) -> list[BillingPolicyHistory]:
    result = await session.execute(
        select(BillingPolicyHistory)
        .where(BillingPolicyHistory.scope_key == scope_key)
        .order_by(BillingPolicyHistory.effective_from.desc(), BillingPolicyHistory.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_audit_entries(
    session: AsyncSession,
    scope_key: str,
    *,
    limit: int = 50,
) -> list[BillingPolicyAuditEntry]:
    result = await session.execute(
        select(BillingPolicyAuditEntry)
        .where(BillingPolicyAuditEntry.scope_key == scope_key)
        .order_by(BillingPolicyAuditEntry.occurred_at.desc(), BillingPolicyAuditEntry.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_due_drafts(
    session: AsyncSession,
    *,
    now: datetime,
    limit: int = 100,
) -> list[BillingPolicy]:
    # Drafts whose effective_from has passed but whose activation has not been observed.
    result = await session.execute(
        select(BillingPolicy)
        .where(
            BillingPolicy.activated_at.is_(None),
            BillingPolicy.effective_from <= now,
        )
        .order_by(BillingPolicy.effective_from)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    return list(result.scalars().all())
