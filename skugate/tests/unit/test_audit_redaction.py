from __future__ import annotations

from datetime import datetime, timezone

from skugate.services.audit import diff_snapshots, sanitize_metadata


def test_audit_redacts_tokens_and_secrets() -> None:
    payload = {
        "billing_tier_lookup_token": "tok",
        "webhook_secret": "super-secret",
        "nested": {"authorization": "Bearer abc", "X-Billing-Signature": "deadbeef"},
        "items": [{"password": "p"}],
        "at": datetime(2024, 1, 2, tzinfo=timezone.utc),
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["billing_tier_lookup_token"] == "[REDACTED]"
    assert sanitized["webhook_secret"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["nested"]["X-Billing-Signature"] == "[REDACTED]"
    assert sanitized["items"][0]["password"] == "[REDACTED]"
    assert sanitized["at"] == "2024-01-02T00:00:00+00:00"
    assert sanitized["safe"] == "value"


def test_policy_diff_lists_changed_fields_only() -> None:
    before = {"version": 1, "count_active_private": False, "count_preorder": True}
    after = {"version": 2, "count_active_private": True, "count_preorder": True}
    assert diff_snapshots(before, after) == {
        "count_active_private": {"old": False, "new": True},
        "version": {"old": 1, "new": 2},
    }
    assert diff_snapshots(None, {"version": 1}) == {"version": {"old": None, "new": 1}}
