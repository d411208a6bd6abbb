"""add subscription lifecycle tables

Revision ID: 0001_subscription_lifecycle
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_subscription_lifecycle"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Store one lifecycle record per clinic, versioned for optimistic concurrency.
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("intelligence_addon", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("billing_cycle", sa.String(), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("price_at_snapshot", sa.BigInteger(), nullable=True),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("auto_pay_enabled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("grace_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_method_token", sa.String(), nullable=True),
        sa.Column("payment_method_type", sa.String(), nullable=True),
        sa.Column("tier_selected", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("renewal_attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_renewal_error", sa.String(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_tenant_id", "subscriptions", ["tenant_id"], unique=False)
    op.create_index(
        "uq_subscriptions_tenant_open",
        "subscriptions",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'CANCELLED'"),
    )
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"], unique=False)
    op.create_index(
        "ix_subscriptions_current_period_end", "subscriptions", ["current_period_end"], unique=False
    )
    op.create_index("ix_subscriptions_grace_started_at", "subscriptions", ["grace_started_at"], unique=False)

    # Append-only payment ledger keyed by the gateway's payment id.
    op.create_table(
        "payments",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("subscription_id", sa.String(), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("gateway_payment_id", sa.String(), nullable=True),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("tier", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_payments_tenant_id", "payments", ["tenant_id"], unique=False)
    op.create_index(
        "ix_payments_subscription_created", "payments", ["subscription_id", "created_at"], unique=False
    )
    op.create_index(
        "uq_payments_gateway_paid",
        "payments",
        ["gateway_payment_id"],
        unique=True,
        postgresql_where=sa.text("status = 'paid'"),
    )

    # Operator overrides per tenant and feature.
    op.create_table(
        "tenant_feature_overrides",
        sa.Column("tenant_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("feature_key", sa.String(), primary_key=True, nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Transition history for billing investigations.
    op.create_table(
        "subscription_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("subscription_id", sa.String(), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("from_status", sa.String(), nullable=True),
        sa.Column("to_status", sa.String(), nullable=False),
        sa.Column("from_tier", sa.String(), nullable=True),
        sa.Column("to_tier", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_subscription_events_subscription_id", "subscription_events", ["subscription_id"], unique=False
    )
    op.create_index("ix_subscription_events_tenant_id", "subscription_events", ["tenant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_subscription_events_tenant_id", table_name="subscription_events")
    op.drop_index("ix_subscription_events_subscription_id", table_name="subscription_events")
    op.drop_table("subscription_events")
    op.drop_table("tenant_feature_overrides")
    op.drop_index("uq_payments_gateway_paid", table_name="payments")
    op.drop_index("ix_payments_subscription_created", table_name="payments")
    op.drop_index("ix_payments_tenant_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_subscriptions_grace_started_at", table_name="subscriptions")
    op.drop_index("ix_subscriptions_current_period_end", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_index("uq_subscriptions_tenant_open", table_name="subscriptions")
    op.drop_index("ix_subscriptions_tenant_id", table_name="subscriptions")
    op.drop_table("subscriptions")
