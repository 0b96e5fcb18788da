from __future__ import annotations

from dataclasses import dataclass

from skugate.domain.billing import PolicyScope


ROLE_PLATFORM_OPERATOR = "platform_operator"
ROLE_SUPPORT = "support"
ROLE_ORG_OWNER = "org_owner"
ROLE_TENANT_OWNER = "tenant_owner"
ROLE_TENANT_ADMIN = "tenant_admin"
ROLE_TENANT_MEMBER = "tenant_member"

KNOWN_ROLES = frozenset(
    {
        ROLE_PLATFORM_OPERATOR,
        ROLE_SUPPORT,
        ROLE_ORG_OWNER,
        ROLE_TENANT_OWNER,
        ROLE_TENANT_ADMIN,
        ROLE_TENANT_MEMBER,
    }
)
TENANT_MANAGER_ROLES = frozenset({ROLE_TENANT_OWNER, ROLE_TENANT_ADMIN})
TENANT_READER_ROLES = frozenset({ROLE_TENANT_OWNER, ROLE_TENANT_ADMIN, ROLE_TENANT_MEMBER})


@dataclass(frozen=True)
class Actor:
    # Identity as verified and forwarded by the gateway; authentication happens upstream.
    actor_id: str
    role: str
    tenant_id: str | None = None
    organization_id: str | None = None

    @property
    def is_operator(self) -> bool:
        return self.role == ROLE_PLATFORM_OPERATOR

    def owns_organization(self, organization_id: str | None) -> bool:
        return (
            self.role == ROLE_ORG_OWNER
            and organization_id is not None
            and self.organization_id == organization_id
        )


def normalize_role(value: str) -> str:
    role = value.strip().lower()
    if role not in KNOWN_ROLES:
        raise ValueError(f"unknown role {value!r}")
    return role


def can_write_policy(
    actor: Actor,
    scope: str,
    scope_id: str | None,
    *,
    tenant_organization_id: str | None = None,
) -> bool:
    # Global: operators only. Organization: its owner. Tenant: its owner/admin or its org owner.
    if actor.is_operator:
        return True
    if scope == PolicyScope.ORGANIZATION.value:
        return actor.owns_organization(scope_id)
    if scope == PolicyScope.TENANT.value:
        if actor.role in TENANT_MANAGER_ROLES and actor.tenant_id == scope_id:
            return True
        return actor.owns_organization(tenant_organization_id)
    return False


def can_read_policy(
    actor: Actor,
    scope: str,
    scope_id: str | None,
    *,
    tenant_organization_id: str | None = None,
) -> bool:
    if actor.is_operator or actor.role == ROLE_SUPPORT:
        return True
    if scope == PolicyScope.GLOBAL.value:
        return True
    if scope == PolicyScope.ORGANIZATION.value:
        return actor.owns_organization(scope_id) or (
            actor.organization_id == scope_id and actor.role in TENANT_READER_ROLES
        )
    return can_read_tenant_billing(actor, scope_id, tenant_organization_id=tenant_organization_id)


def can_read_tenant_billing(
    actor: Actor,
    tenant_id: str | None,
    *,
    tenant_organization_id: str | None = None,
) -> bool:
    if actor.is_operator or actor.role == ROLE_SUPPORT:
        return True
    if actor.role in TENANT_READER_ROLES and tenant_id is not None and actor.tenant_id == tenant_id:
        return True
    return actor.owns_organization(tenant_organization_id)


def can_force_reconcile(actor: Actor) -> bool:
    return actor.is_operator or actor.role == ROLE_SUPPORT


def can_manage_ceilings(actor: Actor) -> bool:
    # Ceilings follow the purchased tier; only the platform adjusts them.
    return actor.is_operator


def can_read_pool(actor: Actor, organization_id: str) -> bool:
    return actor.is_operator or actor.role == ROLE_SUPPORT or actor.owns_organization(organization_id)
