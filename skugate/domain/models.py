from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class BillingPolicy(Base):
    __tablename__ = "sku_billing_policies"
    __table_args__ = (
        # At most one open window per scope key.
        Index(
            "uq_sku_billing_policies_open_scope",
            "scope_key",
            unique=True,
            postgresql_where=text("effective_to IS NULL"),
        ),
        Index("ix_sku_billing_policies_scope_window", "scope_key", "effective_from"),
        CheckConstraint(
            "effective_to IS NULL OR effective_to > effective_from",
            name="ck_sku_billing_policies_window",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    scope: Mapped[str] = mapped_column(String)
    # Null for the global scope; organization or tenant id otherwise.
    scope_id: Mapped[str | None] = mapped_column(String, nullable=True)
    scope_key: Mapped[str] = mapped_column(String)
    # Monotonic per scope key; exposed for optimistic concurrency on writes.
    version: Mapped[int] = mapped_column(Integer)
    count_active_private: Mapped[bool] = mapped_column(Boolean, nullable=False)
    count_preorder: Mapped[bool] = mapped_column(Boolean, nullable=False)
    count_zero_price: Mapped[bool] = mapped_column(Boolean, nullable=False)
    require_image: Mapped[bool] = mapped_column(Boolean, nullable=False)
    require_currency: Mapped[bool] = mapped_column(Boolean, nullable=False)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    effective_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set once the record is observed Open, immediately or by the activation sweep.
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class BillingPolicyHistory(Base):
    __tablename__ = "sku_billing_policy_history"
    __table_args__ = (
        Index("ix_sku_billing_policy_history_scope_from", "scope_key", "effective_from"),
    )

    # Append-only copy of a record at the instant it stopped being current.
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    policy_id: Mapped[str] = mapped_column(String, index=True)
    scope: Mapped[str] = mapped_column(String)
    scope_id: Mapped[str | None] = mapped_column(String, nullable=True)
    scope_key: Mapped[str] = mapped_column(String)
    version: Mapped[int] = mapped_column(Integer)
    count_active_private: Mapped[bool] = mapped_column(Boolean, nullable=False)
    count_preorder: Mapped[bool] = mapped_column(Boolean, nullable=False)
    count_zero_price: Mapped[bool] = mapped_column(Boolean, nullable=False)
    require_image: Mapped[bool] = mapped_column(Boolean, nullable=False)
    require_currency: Mapped[bool] = mapped_column(Boolean, nullable=False)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    effective_to: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    superseded_by_policy_id: Mapped[str | None] = mapped_column(String, nullable=True)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class BillingPolicyHead(Base):
    __tablename__ = "sku_billing_policy_heads"

    # Row locked FOR UPDATE to serialize writes to one scope key, even before any record exists.
    scope_key: Mapped[str] = mapped_column(String, primary_key=True)
    scope: Mapped[str] = mapped_column(String)
    scope_id: Mapped[str | None] = mapped_column(String, nullable=True)
    current_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_policy_id: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BillingPolicyAuditEntry(Base):
    __tablename__ = "sku_billing_policy_audit"

    # Written in the same transaction as the policy change it describes; never updated.
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    scope: Mapped[str] = mapped_column(String)
    scope_id: Mapped[str | None] = mapped_column(String, nullable=True)
    scope_key: Mapped[str] = mapped_column(String, index=True)
    policy_id: Mapped[str] = mapped_column(String)
    version: Mapped[int] = mapped_column(Integer)
    action: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str] = mapped_column(String)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    before_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    after_json: Mapped[dict[str, Any]] = mapped_column(JSONB)
    diff_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Allow null tenant_id for platform-level events.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Keep metadata sanitized and JSONB for flexible investigation.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantCounter(Base):
    __tablename__ = "tenant_sku_counters"
    __table_args__ = (
        CheckConstraint("billable_count >= 0", name="ck_tenant_sku_counters_non_negative"),
    )

    # Hot row: locked for every admission and delta against this tenant.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    billable_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Non-null means a policy change asked for a recount that has not run yet.
    reconcile_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    last_delta_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reconciled_policy_id: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CounterDriftEvent(Base):
    __tablename__ = "tenant_sku_counter_drift"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    stored_count: Mapped[int] = mapped_column(Integer)
    recomputed_count: Mapped[int] = mapped_column(Integer)
    drift: Mapped[int] = mapped_column(Integer)
    trigger: Mapped[str] = mapped_column(String)
    policy_id: Mapped[str | None] = mapped_column(String, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TenantSkuQuota(Base):
    __tablename__ = "tenant_sku_quotas"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    subscription_tier: Mapped[str | None] = mapped_column(String, nullable=True)
    # Explicit ceiling wins over the tier catalog; null falls back to the tier.
    max_skus: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Observe mode admits and reports overage instead of rejecting.
    hard_cap_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OrganizationMember(Base):
    __tablename__ = "organization_members"

    # A tenant (location) belongs to at most one organization (chain).
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OrganizationPool(Base):
    __tablename__ = "organization_sku_pools"

    # Locked FOR UPDATE during pooled admissions; the shared ceiling for all members.
    organization_id: Mapped[str] = mapped_column(String, primary_key=True)
    max_total_skus: Mapped[int] = mapped_column(Integer, default=2500, nullable=False)
    subscription_tier: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class InventoryItem(Base):
    __tablename__ = "inventory_items"
    __table_args__ = (Index("ix_inventory_items_tenant", "tenant_id"),)

    # Read-only projection of the inventory subsystem's table; the engine never writes it.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    item_status: Mapped[str] = mapped_column(String, default="active")
    visibility: Mapped[str] = mapped_column(String, default="public")
    availability: Mapped[str] = mapped_column(String, default="in_stock")
    price_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

