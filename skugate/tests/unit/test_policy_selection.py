from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from skugate.domain.billing import (
    BUILTIN_FALLBACK_FLAGS,
    PolicyFlags,
    PolicyScope,
    PolicyWindow,
    scope_key,
)
from skugate.services.policy_resolver import as_utc, select_effective
from skugate.services.telemetry import counters_snapshot


T0 = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _window(
    policy_id: str,
    start_day: int,
    end_day: int | None,
    *,
    version: int = 1,
    private: bool = False,
) -> PolicyWindow:
    return PolicyWindow(
        policy_id=policy_id,
        scope=PolicyScope.TENANT.value,
        scope_id="acme",
        version=version,
        flags=PolicyFlags(
            count_active_private=private,
            count_preorder=True,
            count_zero_price=False,
            require_image=False,
            require_currency=False,
        ),
        effective_from=T0 + timedelta(days=start_day),
        effective_to=None if end_day is None else T0 + timedelta(days=end_day),
    )


def test_windows_are_half_open() -> None:
    first = _window("p1", 0, 5)
    second = _window("p2", 5, None, version=2)
    boundary = T0 + timedelta(days=5)
    assert select_effective([first, second], boundary - timedelta(microseconds=1)).policy_id == "p1"
    assert select_effective([first, second], boundary).policy_id == "p2"
    assert select_effective([first, second], T0 - timedelta(seconds=1)) is None


def test_past_instants_keep_resolving_to_their_window() -> None:
    windows = [_window("p1", 0, 5), _window("p2", 5, 9, version=2), _window("p3", 9, None, version=3)]
    at = T0 + timedelta(days=3)
    before = select_effective(windows[:1], at)
    after = select_effective(windows, at)
    assert before is not None and after is not None
    assert before.policy_id == after.policy_id == "p1"


def test_overlap_picks_latest_start_and_is_counted() -> None:
    older = _window("p1", 0, None, version=1)
    newer = _window("p2", 2, None, version=2, private=True)
    chosen = select_effective([newer, older], T0 + timedelta(days=3), key="tenant:acme")
    assert chosen is not None
    assert chosen.policy_id == "p2"
    assert counters_snapshot().get("policy_overlap_total") == 1


def test_overlap_tie_on_start_uses_version() -> None:
    low = _window("p1", 0, None, version=4)
    high = _window("p2", 0, None, version=7)
    assert select_effective([high, low], T0 + timedelta(days=1)).policy_id == "p2"
    assert select_effective([low, high], T0 + timedelta(days=1)).policy_id == "p2"


def test_window_state_transitions() -> None:
    window = _window("p1", 2, 4)
    assert window.state(T0) == "draft"
    assert window.state(T0 + timedelta(days=3)) == "open"
    assert window.state(T0 + timedelta(days=4)) == "closed"


def test_scope_keys() -> None:
    assert scope_key("global", None) == "global"
    assert scope_key(PolicyScope.ORGANIZATION, "chain-1") == "organization:chain-1"
    assert scope_key("tenant", "acme") == "tenant:acme"
    with pytest.raises(ValueError):
        scope_key("region", "eu")


def test_flag_merge_keeps_unspecified_values() -> None:
    merged = BUILTIN_FALLBACK_FLAGS.merged({"count_zero_price": False, "require_image": None})
    assert merged.count_zero_price is False
    assert merged.require_image is BUILTIN_FALLBACK_FLAGS.require_image
    assert merged.count_active_private is True


def test_naive_instants_are_treated_as_utc() -> None:
    naive = datetime(2024, 3, 1, 12, 0)
    assert as_utc(naive) == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    offset = datetime(2024, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert as_utc(offset) == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
