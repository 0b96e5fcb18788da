from __future__ import annotations

from datetime import datetime, timezone
import logging
import time
from typing import Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from skugate.core.config import get_settings
from skugate.core.errors import PolicyGapError, PolicyOverlapWarning
from skugate.domain.billing import (
    BUILTIN_FALLBACK_FLAGS,
    GLOBAL_SCOPE_ID,
    PolicyScope,
    PolicyWindow,
    ResolvedPolicy,
    scope_key,
)
from skugate.persistence.repos import organizations as organizations_repo
from skugate.persistence.repos import policies as policies_repo
from skugate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

BUILTIN_SOURCE = "builtin"

# scope_key -> (expires_at monotonic, windows); holds detached snapshots only.
_window_cache: dict[str, tuple[float, list[PolicyWindow]]] = {}
_monotonic: Callable[[], float] = time.monotonic


def as_utc(at: datetime | None) -> datetime:
    # Naive instants are treated as UTC so comparisons with stored timestamptz never fail.
    if at is None:
        return datetime.now(timezone.utc)
    if at.tzinfo is None:
        return at.replace(tzinfo=timezone.utc)
    return at.astimezone(timezone.utc)


def select_effective(
    windows: Sequence[PolicyWindow],
    at: datetime,
    *,
    key: str = "",
) -> PolicyWindow | None:
    """Pick the window containing ``at`` from one scope key's records.

    Depends only on the windows and ``at``, never on which record is newest
    overall, so an instant keeps resolving the same way after later edits.
    Overlap breaks ties on the latest ``effective_from`` (then version) and
    is reported, not raised.
    """
    candidates = [window for window in windows if window.contains(at)]
    if not candidates:
        return None
    candidates.sort(key=lambda window: (window.effective_from, window.version))
    if len(candidates) > 1:
        warning = PolicyOverlapWarning(key, at, [window.policy_id for window in candidates])
        increment_counter("policy_overlap_total")
        logger.warning(
            "policy_overlap_detected scope_key=%s at=%s policy_ids=%s",
            warning.scope_key,
            warning.at.isoformat(),
            ",".join(warning.policy_ids),
        )
    return candidates[-1]


async def get_scope_windows(
    session: AsyncSession,
    key: str,
    *,
    use_cache: bool = True,
) -> list[PolicyWindow]:
    now = _monotonic()
    if use_cache:
        cached = _window_cache.get(key)
        if cached and cached[0] > now:
            return cached[1]
    windows = await policies_repo.load_windows(session, key)
    ttl = get_settings().policy_cache_ttl_s
    if ttl > 0:
        _window_cache[key] = (now + ttl, windows)
    return windows


def invalidate_policy_cache(key: str | None = None) -> None:
    # Windows are cached per scope key, so dropping the edited key is sufficient.
    if key is None:
        _window_cache.clear()
        return
    _window_cache.pop(key, None)


def reset_policy_cache() -> None:
    _window_cache.clear()


async def resolution_layers(
    session: AsyncSession,
    tenant_id: str,
    organization_id: str | None,
) -> list[tuple[str, str | None]]:
    # Most specific first: tenant, then the tenant's organization, then global.
    if organization_id is None:
        organization_id = await organizations_repo.get_organization_id(session, tenant_id)
    layers: list[tuple[str, str | None]] = [(PolicyScope.TENANT.value, tenant_id)]
    if organization_id:
        layers.append((PolicyScope.ORGANIZATION.value, organization_id))
    layers.append((PolicyScope.GLOBAL.value, None))
    return layers


async def resolve_layers(
    session: AsyncSession,
    layers: Sequence[tuple[str, str | None]],
    at: datetime,
    *,
    use_cache: bool = True,
) -> tuple[str, PolicyWindow] | None:
    for scope, scope_id in layers:
        key = scope_key(scope, scope_id)
        windows = await get_scope_windows(session, key, use_cache=use_cache)
        window = select_effective(windows, at, key=key)
        if window is not None:
            return scope, window
    return None


async def resolve(
    session: AsyncSession,
    tenant_id: str,
    at: datetime | None = None,
    *,
    organization_id: str | None = None,
    use_cache: bool = True,
) -> ResolvedPolicy:
    at = as_utc(at)
    layers = await resolution_layers(session, tenant_id, organization_id)
    found = await resolve_layers(session, layers, at, use_cache=use_cache)
    if found is None:
        raise PolicyGapError(tenant_id, at)
    scope, window = found
    return ResolvedPolicy(
        tenant_id=tenant_id,
        at=at,
        flags=window.flags,
        source_scope=scope,
        source_scope_id=window.scope_id if scope != PolicyScope.GLOBAL.value else GLOBAL_SCOPE_ID,
        policy_id=window.policy_id,
        version=window.version,
        effective_from=window.effective_from,
        effective_to=window.effective_to,
    )


async def resolve_or_default(
    session: AsyncSession,
    tenant_id: str,
    at: datetime | None = None,
    *,
    organization_id: str | None = None,
    use_cache: bool = True,
) -> ResolvedPolicy:
    # Read paths never block on a gap: count everything, require nothing, and say so loudly.
    at = as_utc(at)
    try:
        return await resolve(
            session,
            tenant_id,
            at,
            organization_id=organization_id,
            use_cache=use_cache,
        )
    except PolicyGapError as exc:
        increment_counter("policy_gap_fallback_total")
        logger.error(
            "policy_gap_fallback tenant_id=%s at=%s",
            exc.tenant_id,
            at.isoformat(),
        )
        return ResolvedPolicy(
            tenant_id=tenant_id,
            at=at,
            flags=BUILTIN_FALLBACK_FLAGS,
            source_scope=BUILTIN_SOURCE,
            is_fallback=True,
        )
