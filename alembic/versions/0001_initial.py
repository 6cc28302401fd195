"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade():
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False, unique=True),
        sa.Column("balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("payment_customer_id", sa.String(64), nullable=True, unique=True),
        sa.Column("hypervisor_user_id", sa.Integer, nullable=True),
        sa.Column("auto_topup_enabled", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("auto_topup_threshold", sa.Integer, nullable=True),
        sa.Column("auto_topup_amount", sa.Integer, nullable=True),
        sa.Column("auto_topup_payment_method_id", sa.String(64), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
        *_timestamps(),
    )
    op.create_index("ix_wallets_owner_id", "wallets", ["owner_id"], unique=False)
    op.create_index("ix_wallets_deleted_at", "wallets", ["deleted_at"], unique=False)

    op.create_table(
        "wallet_ledger",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("entry_type", sa.String(24), nullable=False),
        sa.Column("resource_id", sa.String(64), nullable=True),
        sa.Column("external_event_id", sa.String(128), nullable=True, unique=True),
        sa.Column("idempotency_key", sa.String(191), nullable=True, unique=True),
        sa.Column("description", sa.String(255), nullable=False, server_default=""),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_wallet_ledger_owner_created", "wallet_ledger", ["owner_id", "created_at"], unique=False)
    op.create_index("ix_wallet_ledger_resource_id", "wallet_ledger", ["resource_id"], unique=False)

    op.create_table(
        "resource_billing",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("resource_id", sa.String(64), nullable=False, unique=True),
        sa.Column("plan_id", sa.Integer, nullable=False),
        sa.Column("monthly_price", sa.Integer, nullable=False),
        sa.Column("status", sa.String(24), nullable=False, server_default="active"),
        sa.Column("deployed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_billed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_charge_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("suspend_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("overdue_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renew", sa.Boolean, nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_resource_billing_owner_id", "resource_billing", ["owner_id"], unique=False)
    op.create_index("ix_resource_billing_status_next_charge", "resource_billing", ["status", "next_charge_at"], unique=False)
    op.create_index("ix_resource_billing_status_suspend_at", "resource_billing", ["status", "suspend_at"], unique=False)

    op.create_table(
        "cancellation_requests",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("resource_id", sa.String(64), nullable=False),
        sa.Column("mode", sa.String(16), nullable=False, server_default="grace"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("scheduled_deletion_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_cancellation_requests_owner_id", "cancellation_requests", ["owner_id"], unique=False)
    op.create_index(
        "ix_cancellation_requests_status_scheduled",
        "cancellation_requests",
        ["status", "scheduled_deletion_at"],
        unique=False,
    )
    op.create_index(
        "uq_cancellation_requests_pending_resource",
        "cancellation_requests",
        ["resource_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "deploy_orders",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("plan_id", sa.Integer, nullable=False),
        sa.Column("location_code", sa.String(16), nullable=False, server_default="BNE"),
        sa.Column("hostname", sa.String(255), nullable=True),
        sa.Column("price", sa.Integer, nullable=False),
        sa.Column("status", sa.String(24), nullable=False, server_default="pending_payment"),
        sa.Column("resource_id", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_deploy_orders_owner_status", "deploy_orders", ["owner_id", "status"], unique=False)


def downgrade():
    op.drop_index("ix_deploy_orders_owner_status", table_name="deploy_orders")
    op.drop_table("deploy_orders")

    op.drop_index("uq_cancellation_requests_pending_resource", table_name="cancellation_requests")
    op.drop_index("ix_cancellation_requests_status_scheduled", table_name="cancellation_requests")
    op.drop_index("ix_cancellation_requests_owner_id", table_name="cancellation_requests")
    op.drop_table("cancellation_requests")

    op.drop_index("ix_resource_billing_status_suspend_at", table_name="resource_billing")
    op.drop_index("ix_resource_billing_status_next_charge", table_name="resource_billing")
    op.drop_index("ix_resource_billing_owner_id", table_name="resource_billing")
    op.drop_table("resource_billing")

    op.drop_index("ix_wallet_ledger_resource_id", table_name="wallet_ledger")
    op.drop_index("ix_wallet_ledger_owner_created", table_name="wallet_ledger")
    op.drop_table("wallet_ledger")

    op.drop_index("ix_wallets_deleted_at", table_name="wallets")
    op.drop_index("ix_wallets_owner_id", table_name="wallets")
    op.drop_table("wallets")
