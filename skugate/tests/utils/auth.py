from __future__ import annotations


def actor_headers(
    role: str,
    *,
    actor_id: str = "u-test",
    tenant_id: str | None = None,
    organization_id: str | None = None,
) -> dict[str, str]:
    # Gateway-forwarded identity headers for API tests.
    headers = {"X-Actor-Id": actor_id, "X-Actor-Role": role}
    if tenant_id:
        headers["X-Tenant-Id"] = tenant_id
    if organization_id:
        headers["X-Organization-Id"] = organization_id
    return headers


def operator_headers() -> dict[str, str]:
    return actor_headers("platform_operator", actor_id="op-test")
