from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.core.config import get_settings
from skugate.core.errors import (
    ConcurrentPolicyEditConflict,
    PolicyScopeError,
    PolicyValidationError,
)
from skugate.domain.billing import (
    BUILTIN_FALLBACK_FLAGS,
    GLOBAL_SCOPE_ID,
    PolicyFlags,
    PolicyScope,
    PolicyWindow,
    scope_key,
)
from skugate.domain.models import (
    BillingPolicy,
    BillingPolicyAuditEntry,
    BillingPolicyHistory,
)
from skugate.persistence.repos import counters as counters_repo
from skugate.persistence.repos import organizations as organizations_repo
from skugate.persistence.repos import policies as policies_repo
from skugate.services.audit import add_policy_audit_entry
from skugate.services.notifier import TOPIC_POLICY_CHANGED, ChangeEvent, get_notifier
from skugate.services.policy_resolver import as_utc, invalidate_policy_cache, resolve_layers
from skugate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_SUPERSEDE = "supersede"
ACTION_ACTIVATE = "activate"


@dataclass(frozen=True)
class PolicyTarget:
    scope: str
    # Stored id; None for the global scope.
    scope_id: str | None

    @property
    def key(self) -> str:
        return scope_key(self.scope, self.scope_id)

    @property
    def public_id(self) -> str:
        return self.scope_id if self.scope_id is not None else GLOBAL_SCOPE_ID


@dataclass(frozen=True)
class PolicyWriteResult:
    record: PolicyWindow
    previous: PolicyWindow | None
    activated: bool
    # None means every tenant was flagged for recount.
    affected_tenant_ids: list[str] | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_target(scope: str, scope_id: str | None) -> PolicyTarget:
    try:
        parsed = PolicyScope(scope)
    except ValueError as exc:
        raise PolicyScopeError(f"unknown policy scope {scope!r}") from exc
    if parsed is PolicyScope.GLOBAL:
        if scope_id not in (None, "", GLOBAL_SCOPE_ID):
            raise PolicyScopeError(f"global scope id must be {GLOBAL_SCOPE_ID!r}")
        return PolicyTarget(scope=parsed.value, scope_id=None)
    if not scope_id or not scope_id.strip():
        raise PolicyScopeError(f"{parsed.value} scope requires an id")
    return PolicyTarget(scope=parsed.value, scope_id=scope_id.strip())


def window_snapshot(window: PolicyWindow) -> dict[str, Any]:
    return {
        "policy_id": window.policy_id,
        "version": window.version,
        **window.flags.as_dict(),
        "effective_from": window.effective_from.isoformat(),
        "effective_to": window.effective_to.isoformat() if window.effective_to else None,
        "note": window.note,
        "updated_by": window.updated_by,
    }


async def _inherited_flags(
    session: AsyncSession,
    target: PolicyTarget,
    at: datetime,
) -> PolicyFlags:
    # Layers strictly below the target scope, read fresh.
    layers: list[tuple[str, str | None]] = []
    if target.scope == PolicyScope.TENANT.value:
        organization_id = await organizations_repo.get_organization_id(session, target.scope_id)
        if organization_id:
            layers.append((PolicyScope.ORGANIZATION.value, organization_id))
    if target.scope != PolicyScope.GLOBAL.value:
        layers.append((PolicyScope.GLOBAL.value, None))
    found = await resolve_layers(session, layers, at, use_cache=False) if layers else None
    if found is None:
        return BUILTIN_FALLBACK_FLAGS
    return found[1].flags


async def _affected_tenants(session: AsyncSession, target: PolicyTarget) -> list[str] | None:
    if target.scope == PolicyScope.GLOBAL.value:
        return None
    if target.scope == PolicyScope.ORGANIZATION.value:
        return await organizations_repo.list_member_tenant_ids(session, target.scope_id)
    return [target.scope_id]


def _validate_flags(flags: dict[str, bool | None]) -> None:
    unknown = sorted(set(flags) - set(PolicyFlags.names()))
    if unknown:
        raise PolicyValidationError(f"unknown policy flags: {', '.join(unknown)}")


class PolicyStore:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._time_provider = time_provider or _utc_now

    async def write_policy(
        self,
        session: AsyncSession,
        *,
        scope: str,
        scope_id: str | None,
        flags: dict[str, bool | None],
        actor_id: str,
        actor_role: str | None = None,
        effective_from: datetime | None = None,
        note: str | None = None,
        reason: str | None = None,
        expected_version: int | None = None,
        request_id: str | None = None,
    ) -> PolicyWriteResult:
        """Insert a new policy version for a scope key and close the open one.

        Closing the prior record, appending its history row, inserting the new
        record and writing the audit entry happen in one transaction under the
        scope-key head lock. ``policy.changed`` is published only after commit.

        The write always ends committed. With no transaction open on ``session``
        the store opens and commits its own. When the caller already has one
        open, the write runs in a savepoint and then commits the caller's
        transaction too, so any pending work of the caller becomes durable with
        the policy. A failed write rolls back only its savepoint.
        """
        target = parse_target(scope, scope_id)
        _validate_flags(flags)
        settings = get_settings()
        attempts = 1 if expected_version is not None else max(settings.policy_write_max_attempts, 1)

        for attempt in range(1, attempts + 1):
            in_transaction = session.in_transaction()
            tx_context = session.begin_nested() if in_transaction else session.begin()
            try:
                async with tx_context:
                    result = await self._write_locked(
                        session,
                        target,
                        flags=flags,
                        actor_id=actor_id,
                        actor_role=actor_role,
                        effective_from=effective_from,
                        note=note,
                        reason=reason,
                        expected_version=expected_version,
                        request_id=request_id,
                    )
                if in_transaction:
                    await session.commit()
                break
            except IntegrityError as exc:
                # The head lock makes this rare; the open-window index is the backstop.
                increment_counter("policy_write_conflicts_total")
                logger.warning(
                    "policy_write_conflict scope_key=%s attempt=%s", target.key, attempt, exc_info=exc
                )
                if attempt >= attempts:
                    raise ConcurrentPolicyEditConflict(
                        target.key, expected_version=expected_version
                    ) from exc

        invalidate_policy_cache(target.key)
        logger.info(
            "policy_written scope_key=%s version=%s policy_id=%s activated=%s",
            target.key,
            result.record.version,
            result.record.policy_id,
            result.activated,
        )
        await get_notifier().publish(
            ChangeEvent(
                topic=TOPIC_POLICY_CHANGED,
                scope=target.scope,
                scope_id=target.public_id,
                payload={
                    "scope_key": target.key,
                    "policy_id": result.record.policy_id,
                    "version": result.record.version,
                    "effective_from": result.record.effective_from.isoformat(),
                    "activated": result.activated,
                    "tenant_ids": result.affected_tenant_ids,
                },
            )
        )
        return result

    async def _write_locked(
        self,
        session: AsyncSession,
        target: PolicyTarget,
        *,
        flags: dict[str, bool | None],
        actor_id: str,
        actor_role: str | None,
        effective_from: datetime | None,
        note: str | None,
        reason: str | None,
        expected_version: int | None,
        request_id: str | None,
    ) -> PolicyWriteResult:
        head = await policies_repo.lock_head(
            session, scope_key=target.key, scope=target.scope, scope_id=target.scope_id
        )
        # Read the clock under the head lock so queued writers get strictly later defaults.
        now = self._time_provider()
        new_from = as_utc(effective_from) if effective_from is not None else now
        if expected_version is not None and head.current_version != expected_version:
            raise ConcurrentPolicyEditConflict(
                target.key,
                expected_version=expected_version,
                current_version=head.current_version,
            )

        # A past start would rewrite what earlier instants already resolved to.
        if new_from < now:
            raise PolicyValidationError("effective_from must not be in the past")
        open_record = await policies_repo.get_open_policy(session, target.key, for_update=True)
        if open_record is not None and new_from <= open_record.effective_from:
            raise PolicyValidationError(
                "effective_from must be later than the current record's effective_from "
                f"({open_record.effective_from.isoformat()})"
            )

        if open_record is not None:
            base_flags = PolicyFlags.from_object(open_record)
        else:
            base_flags = await _inherited_flags(session, target, new_from)
        resolved_flags = base_flags.merged(flags)

        previous: PolicyWindow | None = None
        record = BillingPolicy(
            id=uuid4().hex,
            scope=target.scope,
            scope_id=target.scope_id,
            scope_key=target.key,
            version=head.current_version + 1,
            **resolved_flags.as_dict(),
            effective_from=new_from,
            effective_to=None,
            activated_at=now if new_from <= now else None,
            note=note,
            updated_by=actor_id,
            updated_at=now,
        )
        before_snapshot = None
        if open_record is not None:
            before_snapshot = window_snapshot(policies_repo.to_window(open_record))
            open_record.effective_to = new_from
            # Flush the close before the insert so the open-window index never sees two open rows.
            await session.flush()
            previous = policies_repo.to_window(open_record)
            session.add(
                BillingPolicyHistory(
                    policy_id=open_record.id,
                    scope=open_record.scope,
                    scope_id=open_record.scope_id,
                    scope_key=open_record.scope_key,
                    version=open_record.version,
                    **PolicyFlags.from_object(open_record).as_dict(),
                    effective_from=open_record.effective_from,
                    effective_to=new_from,
                    note=open_record.note,
                    updated_by=open_record.updated_by,
                    updated_at=open_record.updated_at,
                    superseded_by_policy_id=record.id,
                    archived_at=now,
                )
            )
        session.add(record)
        head.current_version = record.version
        head.current_policy_id = record.id
        await session.flush()

        window = policies_repo.to_window(record)
        add_policy_audit_entry(
            session,
            occurred_at=now,
            scope=target.scope,
            scope_id=target.scope_id,
            scope_key=target.key,
            policy_id=record.id,
            version=record.version,
            action=ACTION_SUPERSEDE if previous is not None else ACTION_CREATE,
            actor_id=actor_id,
            actor_role=actor_role,
            reason=reason,
            request_id=request_id,
            before=before_snapshot,
            after=window_snapshot(window),
        )

        activated = record.activated_at is not None
        affected: list[str] | None = []
        if activated:
            affected = await _affected_tenants(session, target)
            await counters_repo.mark_reconcile_requested(session, at=now, tenant_ids=affected)
        await session.flush()
        return PolicyWriteResult(
            record=window,
            previous=previous,
            activated=activated,
            affected_tenant_ids=affected,
        )

    async def activate_due_policies(
        self,
        session: AsyncSession,
        *,
        limit: int = 100,
    ) -> list[PolicyWindow]:
        """Mark drafts whose effective_from has passed as Open and request recounts.

        Commits like ``write_policy``: a caller transaction already open on
        ``session`` is committed along with the activations.
        """
        now = self._time_provider()
        activated: list[tuple[PolicyTarget, PolicyWindow, list[str] | None]] = []
        in_transaction = session.in_transaction()
        tx_context = session.begin_nested() if in_transaction else session.begin()
        async with tx_context:
            drafts = await policies_repo.list_due_drafts(session, now=now, limit=limit)
            for draft in drafts:
                draft.activated_at = now
                target = PolicyTarget(scope=draft.scope, scope_id=draft.scope_id)
                affected = await _affected_tenants(session, target)
                await counters_repo.mark_reconcile_requested(session, at=now, tenant_ids=affected)
                window = policies_repo.to_window(draft)
                add_policy_audit_entry(
                    session,
                    occurred_at=now,
                    scope=draft.scope,
                    scope_id=draft.scope_id,
                    scope_key=draft.scope_key,
                    policy_id=draft.id,
                    version=draft.version,
                    action=ACTION_ACTIVATE,
                    actor_id="system",
                    actor_role=None,
                    reason="effective_from reached",
                    request_id=None,
                    before=None,
                    after=window_snapshot(window),
                )
                activated.append((target, window, affected))
        if in_transaction:
            await session.commit()

        for target, window, affected in activated:
            invalidate_policy_cache(target.key)
            logger.info("policy_activated scope_key=%s policy_id=%s", target.key, window.policy_id)
            await get_notifier().publish(
                ChangeEvent(
                    topic=TOPIC_POLICY_CHANGED,
                    scope=target.scope,
                    scope_id=target.public_id,
                    payload={
                        "scope_key": target.key,
                        "policy_id": window.policy_id,
                        "version": window.version,
                        "effective_from": window.effective_from.isoformat(),
                        "activated": True,
                        "tenant_ids": affected,
                    },
                )
            )
        return [window for _, window, _ in activated]


async def list_policy_records(
    session: AsyncSession, scope: str, scope_id: str | None, *, limit: int = 50
) -> list[BillingPolicy]:
    target = parse_target(scope, scope_id)
    return await policies_repo.list_records(session, target.key, limit=limit)


async def list_policy_history(
    session: AsyncSession, scope: str, scope_id: str | None, *, limit: int = 50
) -> list[BillingPolicyHistory]:
    target = parse_target(scope, scope_id)
    return await policies_repo.list_history(session, target.key, limit=limit)


async def list_policy_audit(
    session: AsyncSession, scope: str, scope_id: str | None, *, limit: int = 50
) -> list[BillingPolicyAuditEntry]:
    target = parse_target(scope, scope_id)
    return await policies_repo.list_audit_entries(session, target.key, limit=limit)


_policy_store: PolicyStore | None = None


def get_policy_store() -> PolicyStore:
    global _policy_store
    if _policy_store is None:
        _policy_store = PolicyStore()
    return _policy_store


def reset_policy_store() -> None:
    global _policy_store
    _policy_store = None
