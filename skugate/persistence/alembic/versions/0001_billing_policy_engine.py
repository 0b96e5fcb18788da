"""add sku billing policy, counter and quota tables

Revision ID: 0001_billing_policy_engine
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_billing_policy_engine"
down_revision = None
branch_labels = None
depends_on = None


_FLAG_COLUMNS = (
    "count_active_private",
    "count_preorder",
    "count_zero_price",
    "require_image",
    "require_currency",
)


def _flag_columns() -> list[sa.Column]:
    return [sa.Column(name, sa.Boolean(), nullable=False) for name in _FLAG_COLUMNS]


def upgrade() -> None:
    # Current and scheduled policy windows; at most one open window per scope key.
    op.create_table(
        "sku_billing_policies",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=True),
        sa.Column("scope_key", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        *_flag_columns(),
        sa.Column("effective_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("effective_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "effective_to IS NULL OR effective_to > effective_from",
            name="ck_sku_billing_policies_window",
        ),
    )
    op.create_index(
        "uq_sku_billing_policies_open_scope",
        "sku_billing_policies",
        ["scope_key"],
        unique=True,
        postgresql_where=sa.text("effective_to IS NULL"),
    )
    op.create_index(
        "ix_sku_billing_policies_scope_window",
        "sku_billing_policies",
        ["scope_key", "effective_from"],
        unique=False,
    )

    # Append-only snapshots of superseded records.
    op.create_table(
        "sku_billing_policy_history",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("policy_id", sa.String(), nullable=False),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=True),
        sa.Column("scope_key", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        *_flag_columns(),
        sa.Column("effective_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("effective_to", sa.DateTime(timezone=True), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("superseded_by_policy_id", sa.String(), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_sku_billing_policy_history_policy_id",
        "sku_billing_policy_history",
        ["policy_id"],
        unique=False,
    )
    op.create_index(
        "ix_sku_billing_policy_history_scope_from",
        "sku_billing_policy_history",
        ["scope_key", "effective_from"],
        unique=False,
    )

    # One lockable row per scope key serializes edits even before the first record exists.
    op.create_table(
        "sku_billing_policy_heads",
        sa.Column("scope_key", sa.String(), primary_key=True, nullable=False),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=True),
        sa.Column("current_version", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("current_policy_id", sa.String(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )

    op.create_table(
        "sku_billing_policy_audit",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=True),
        sa.Column("scope_key", sa.String(), nullable=False),
        sa.Column("policy_id", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("before_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("after_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("diff_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    )
    op.create_index(
        "ix_sku_billing_policy_audit_occurred_at",
        "sku_billing_policy_audit",
        ["occurred_at"],
        unique=False,
    )
    op.create_index(
        "ix_sku_billing_policy_audit_scope_key",
        "sku_billing_policy_audit",
        ["scope_key"],
        unique=False,
    )

    # General audit trail for quota, reconciliation and access events.
    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"], unique=False)

    # Hot per-tenant billable counters.
    op.create_table(
        "tenant_sku_counters",
        sa.Column("tenant_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("billable_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconcile_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_delta_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciled_policy_id", sa.String(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
        sa.CheckConstraint("billable_count >= 0", name="ck_tenant_sku_counters_non_negative"),
    )
    op.create_index(
        "ix_tenant_sku_counters_reconcile_requested_at",
        "tenant_sku_counters",
        ["reconcile_requested_at"],
        unique=False,
    )

    op.create_table(
        "tenant_sku_counter_drift",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("stored_count", sa.Integer(), nullable=False),
        sa.Column("recomputed_count", sa.Integer(), nullable=False),
        sa.Column("drift", sa.Integer(), nullable=False),
        sa.Column("trigger", sa.String(), nullable=False),
        sa.Column("policy_id", sa.String(), nullable=True),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_tenant_sku_counter_drift_tenant_id",
        "tenant_sku_counter_drift",
        ["tenant_id"],
        unique=False,
    )

    # Per-tenant ceilings; null max_skus defers to the subscription tier catalog.
    op.create_table(
        "tenant_sku_quotas",
        sa.Column("tenant_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("subscription_tier", sa.String(), nullable=True),
        sa.Column("max_skus", sa.Integer(), nullable=True),
        sa.Column("hard_cap_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )

    op.create_table(
        "organization_members",
        sa.Column("tenant_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_organization_members_organization_id",
        "organization_members",
        ["organization_id"],
        unique=False,
    )

    op.create_table(
        "organization_sku_pools",
        sa.Column("organization_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("max_total_skus", sa.Integer(), server_default=sa.text("2500"), nullable=False),
        sa.Column("subscription_tier", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )

    # The inventory subsystem owns inventory_items; create it only for standalone installs.
    inspector = sa.inspect(op.get_bind())
    if not inspector.has_table("inventory_items"):
        op.create_table(
            "inventory_items",
            sa.Column("id", sa.String(), primary_key=True, nullable=False),
            sa.Column("tenant_id", sa.String(), nullable=False),
            sa.Column("item_status", sa.String(), nullable=False),
            sa.Column("visibility", sa.String(), nullable=False),
            sa.Column("availability", sa.String(), nullable=False),
            sa.Column("price_cents", sa.Integer(), nullable=True),
            sa.Column("currency", sa.String(length=3), nullable=True),
            sa.Column("image_url", sa.Text(), nullable=True),
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.func.now(),
                onupdate=sa.func.now(),
            ),
        )
        op.create_index("ix_inventory_items_tenant", "inventory_items", ["tenant_id"], unique=False)


def downgrade() -> None:
    # inventory_items is left in place; it may belong to the inventory subsystem.
    op.drop_table("organization_sku_pools")
    op.drop_index("ix_organization_members_organization_id", table_name="organization_members")
    op.drop_table("organization_members")
    op.drop_table("tenant_sku_quotas")
    op.drop_index("ix_tenant_sku_counter_drift_tenant_id", table_name="tenant_sku_counter_drift")
    op.drop_table("tenant_sku_counter_drift")
    op.drop_index(
        "ix_tenant_sku_counters_reconcile_requested_at", table_name="tenant_sku_counters"
    )
    op.drop_table("tenant_sku_counters")
    op.drop_index("ix_audit_events_request_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_id", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_sku_billing_policy_audit_scope_key", table_name="sku_billing_policy_audit")
    op.drop_index("ix_sku_billing_policy_audit_occurred_at", table_name="sku_billing_policy_audit")
    op.drop_table("sku_billing_policy_audit")
    op.drop_table("sku_billing_policy_heads")
    op.drop_index(
        "ix_sku_billing_policy_history_scope_from", table_name="sku_billing_policy_history"
    )
    op.drop_index(
        "ix_sku_billing_policy_history_policy_id", table_name="sku_billing_policy_history"
    )
    op.drop_table("sku_billing_policy_history")
    op.drop_index("ix_sku_billing_policies_scope_window", table_name="sku_billing_policies")
    op.drop_index("uq_sku_billing_policies_open_scope", table_name="sku_billing_policies")
    op.drop_table("sku_billing_policies")
