"""credit ledger schema: users, accounts, reservations, ledger, subscriptions, webhook events

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("hashed_password", sa.String(length=1024), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_superuser", sa.Boolean(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(op.f("ix_users_id"), "users", ["id"], unique=False)
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)
    op.create_index(op.f("ix_users_stripe_customer_id"), "users", ["stripe_customer_id"], unique=False)

    op.create_table(
        "credit_accounts",
        sa.Column("account_id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("monthly_allocated", sa.Integer(), nullable=False),
        sa.Column("monthly_used", sa.Integer(), nullable=False),
        sa.Column("monthly_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rollover_amount", sa.Integer(), nullable=False),
        sa.Column("rollover_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("purchased_amount", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False),
        sa.Column("lifetime_spent", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("monthly_allocated >= 0", name="ck_credit_accounts_monthly_allocated_nonneg"),
        sa.CheckConstraint("monthly_used >= 0", name="ck_credit_accounts_monthly_used_nonneg"),
        sa.CheckConstraint("monthly_used <= monthly_allocated", name="ck_credit_accounts_monthly_used_le_allocated"),
        sa.CheckConstraint("rollover_amount >= 0", name="ck_credit_accounts_rollover_nonneg"),
        sa.CheckConstraint("purchased_amount >= 0", name="ck_credit_accounts_purchased_nonneg"),
        sa.CheckConstraint(
            "balance = (monthly_allocated - monthly_used) + rollover_amount + purchased_amount",
            name="ck_credit_accounts_balance_sum",
        ),
    )
    op.create_index(op.f("ix_credit_accounts_monthly_reset_at"), "credit_accounts", ["monthly_reset_at"], unique=False)
    op.create_index(
        op.f("ix_credit_accounts_rollover_expires_at"), "credit_accounts", ["rollover_expires_at"], unique=False
    )

    op.create_table(
        "reservations",
        sa.Column("reservation_id", sa.String(length=36), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("amount_reserved", sa.Integer(), nullable=False),
        sa.Column("from_monthly", sa.Integer(), nullable=False),
        sa.Column("from_rollover", sa.Integer(), nullable=False),
        sa.Column("from_purchased", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount_reserved > 0", name="ck_reservations_amount_positive"),
        sa.CheckConstraint(
            "amount_reserved = from_monthly + from_rollover + from_purchased",
            name="ck_reservations_breakdown_sum",
        ),
    )
    op.create_index(op.f("ix_reservations_account_id"), "reservations", ["account_id"], unique=False)
    op.create_index("ix_reservations_status_expires_at", "reservations", ["status", "expires_at"], unique=False)

    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("pool", sa.String(length=32), nullable=True),
        sa.Column("breakdown", sa.JSON(), nullable=True),
        sa.Column("related_reservation_id", sa.String(length=36), nullable=True),
        sa.Column("related_event_id", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("related_reservation_id", "kind", name="uq_ledger_transactions_reservation_kind"),
        sa.UniqueConstraint("related_event_id", "kind", name="uq_ledger_transactions_event_kind"),
        sa.CheckConstraint("balance_after >= 0", name="ck_ledger_transactions_balance_after_nonneg"),
    )
    op.create_index(op.f("ix_ledger_transactions_id"), "ledger_transactions", ["id"], unique=False)
    op.create_index(op.f("ix_ledger_transactions_account_id"), "ledger_transactions", ["account_id"], unique=False)
    op.create_index(op.f("ix_ledger_transactions_kind"), "ledger_transactions", ["kind"], unique=False)
    op.create_index(
        op.f("ix_ledger_transactions_related_reservation_id"),
        "ledger_transactions",
        ["related_reservation_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_ledger_transactions_related_event_id"), "ledger_transactions", ["related_event_id"], unique=False
    )
    op.create_index(op.f("ix_ledger_transactions_created_at"), "ledger_transactions", ["created_at"], unique=False)

    op.create_table(
        "subscriptions",
        sa.Column("account_id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("external_subscription_id", sa.String(), nullable=True),
        sa.Column("external_customer_id", sa.String(), nullable=True),
        sa.Column("plan_price_id", sa.String(), nullable=True),
        sa.Column("monthly_allocation", sa.Integer(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        op.f("ix_subscriptions_external_subscription_id"), "subscriptions", ["external_subscription_id"], unique=True
    )
    op.create_index(
        op.f("ix_subscriptions_external_customer_id"), "subscriptions", ["external_customer_id"], unique=False
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_event_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
    )
    op.create_index(op.f("ix_webhook_events_id"), "webhook_events", ["id"], unique=False)
    op.create_index(op.f("ix_webhook_events_external_event_id"), "webhook_events", ["external_event_id"], unique=True)


def downgrade() -> None:
    op.drop_index(op.f("ix_webhook_events_external_event_id"), table_name="webhook_events")
    op.drop_index(op.f("ix_webhook_events_id"), table_name="webhook_events")
    op.drop_table("webhook_events")

    op.drop_index(op.f("ix_subscriptions_external_customer_id"), table_name="subscriptions")
    op.drop_index(op.f("ix_subscriptions_external_subscription_id"), table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index(op.f("ix_ledger_transactions_created_at"), table_name="ledger_transactions")
    op.drop_index(op.f("ix_ledger_transactions_related_event_id"), table_name="ledger_transactions")
    op.drop_index(op.f("ix_ledger_transactions_related_reservation_id"), table_name="ledger_transactions")
    op.drop_index(op.f("ix_ledger_transactions_kind"), table_name="ledger_transactions")
    op.drop_index(op.f("ix_ledger_transactions_account_id"), table_name="ledger_transactions")
    op.drop_index(op.f("ix_ledger_transactions_id"), table_name="ledger_transactions")
    op.drop_table("ledger_transactions")

    op.drop_index("ix_reservations_status_expires_at", table_name="reservations")
    op.drop_index(op.f("ix_reservations_account_id"), table_name="reservations")
    op.drop_table("reservations")

    op.drop_index(op.f("ix_credit_accounts_rollover_expires_at"), table_name="credit_accounts")
    op.drop_index(op.f("ix_credit_accounts_monthly_reset_at"), table_name="credit_accounts")
    op.drop_table("credit_accounts")

    op.drop_index(op.f("ix_users_stripe_customer_id"), table_name="users")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_index(op.f("ix_users_id"), table_name="users")
    op.drop_table("users")
