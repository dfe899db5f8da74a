"""create_billing_core_tables

Revision ID: 4c1e9a7d2b10
Revises:
Create Date: 2026-10-17 09:12:40.118203

Creates the credit ledger, subscription and payment tables.

Tables:
- subscription_plans: Plan catalog keyed by plan code
- payments / payment_refunds / payment_webhooks: Provider payments, refund attempts, webhook audit
- credit_reservations / credit_transactions: Append-only ledger and time-boxed holds
- subscriptions / subscription_changes / subscription_dunning: Recurring billing state
- scheduled_actions: Durable due-queue for time-triggered transitions
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4c1e9a7d2b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(updated: bool = True):
    columns = [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]
    if updated:
        columns.append(
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    """Create billing tables with indexes and constraints."""

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(14, 2), nullable=False),
        sa.Column('interval', sa.String(32), nullable=False),
        sa.Column('credits_included', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('trial_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('features', sa.JSON(), nullable=False),
        sa.Column('limits', sa.JSON(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.BigInteger(), nullable=False, autoincrement=True),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('method', sa.String(32), nullable=False),
        # Amounts in cents
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('provider_payment_id', sa.String(255), nullable=True),
        sa.Column('provider_data', sa.JSON(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payments_id', 'payments', ['id'])
    op.create_index('ix_payments_tenant_id', 'payments', ['tenant_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_provider_payment_id', 'payments', ['provider_payment_id'], unique=True)
    op.create_index('idx_payment_tenant_created', 'payments', ['tenant_id', 'created_at'])

    op.create_table(
        'payment_refunds',
        sa.Column('id', sa.BigInteger(), nullable=False, autoincrement=True),
        sa.Column('payment_id', sa.BigInteger(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(255), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('provider_refund_id', sa.String(255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_payment_refunds_id', 'payment_refunds', ['id'])
    op.create_index('ix_payment_refunds_payment_id', 'payment_refunds', ['payment_id'])

    op.create_table(
        'payment_webhooks',
        sa.Column('id', sa.BigInteger(), nullable=False, autoincrement=True),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('event_type', sa.String(128), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_webhooks_id', 'payment_webhooks', ['id'])
    op.create_index('ix_payment_webhooks_provider', 'payment_webhooks', ['provider'])

    op.create_table(
        'credit_reservations',
        sa.Column('id', sa.BigInteger(), nullable=False, autoincrement=True),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('purpose', sa.String(255), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('release_reason', sa.String(255), nullable=True),
        sa.Column('transaction_id', sa.BigInteger(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_credit_reservations_id', 'credit_reservations', ['id'])
    op.create_index('ix_credit_reservations_tenant_id', 'credit_reservations', ['tenant_id'])
    op.create_index('ix_credit_reservations_status', 'credit_reservations', ['status'])
    op.create_index('idx_credit_reservation_tenant_status', 'credit_reservations', ['tenant_id', 'status'])
    op.create_index('idx_credit_reservation_expiry', 'credit_reservations', ['status', 'expires_at'])

    # Append-only: balance = SUM(amount) over completed rows
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.BigInteger(), nullable=False, autoincrement=True),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('reservation_id', sa.BigInteger(), nullable=True),
        sa.Column('payment_id', sa.BigInteger(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['reservation_id'], ['credit_reservations.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_credit_transactions_id', 'credit_transactions', ['id'])
    op.create_index('ix_credit_transactions_tenant_id', 'credit_transactions', ['tenant_id'])
    op.create_index('ix_credit_transactions_status', 'credit_transactions', ['status'])
    op.create_index('ix_credit_transactions_payment_id', 'credit_transactions', ['payment_id'])
    op.create_index('idx_credit_tx_tenant_status', 'credit_transactions', ['tenant_id', 'status'])
    op.create_index('idx_credit_tx_tenant_created', 'credit_transactions', ['tenant_id', 'created_at'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.BigInteger(), nullable=False, autoincrement=True),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('plan_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),

        # Billing cycle dates
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),

        # Lifecycle
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id']),
    )
    op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
    op.create_index('ix_subscriptions_tenant_id', 'subscriptions', ['tenant_id'])
    op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('idx_subscription_tenant_status', 'subscriptions', ['tenant_id', 'status'])
    op.create_index('idx_subscription_status_period_end', 'subscriptions', ['status', 'current_period_end'])
    op.create_index('uq_subscription_tenant_open', 'subscriptions', ['tenant_id'], unique=True, postgresql_where=sa.text("status <> 'canceled'"))

    op.create_table(
        'subscription_changes',
        sa.Column('id', sa.BigInteger(), nullable=False, autoincrement=True),
        sa.Column('subscription_id', sa.BigInteger(), nullable=False),
        sa.Column('from_plan_id', sa.String(64), nullable=False),
        sa.Column('to_plan_id', sa.String(64), nullable=False),
        sa.Column('proration_amount', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('change_type', sa.String(32), nullable=False),
        sa.Column('immediate', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_subscription_changes_id', 'subscription_changes', ['id'])
    op.create_index('ix_subscription_changes_subscription_id', 'subscription_changes', ['subscription_id'])

    op.create_table(
        'subscription_dunning',
        sa.Column('id', sa.BigInteger(), nullable=False, autoincrement=True),
        sa.Column('subscription_id', sa.BigInteger(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('amount_due', sa.Numeric(14, 2), nullable=False),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_subscription_dunning_id', 'subscription_dunning', ['id'])
    op.create_index('ix_subscription_dunning_subscription_id', 'subscription_dunning', ['subscription_id'])
    op.create_index('ix_subscription_dunning_status', 'subscription_dunning', ['status'])

    op.create_table(
        'scheduled_actions',
        sa.Column('id', sa.BigInteger(), nullable=False, autoincrement=True),
        sa.Column('action_type', sa.String(64), nullable=False),
        sa.Column('entity_id', sa.BigInteger(), nullable=False),
        sa.Column('due_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_scheduled_actions_id', 'scheduled_actions', ['id'])
    op.create_index('idx_scheduled_action_due', 'scheduled_actions', ['status', 'due_at'])
    op.create_index('idx_scheduled_action_entity', 'scheduled_actions', ['action_type', 'entity_id', 'status'])


def downgrade() -> None:
    """Drop billing tables in dependency order."""
    op.drop_table('scheduled_actions')
    op.drop_table('subscription_dunning')
    op.drop_table('subscription_changes')
    op.drop_table('subscriptions')
    op.drop_table('credit_transactions')
    op.drop_table('credit_reservations')
    op.drop_table('payment_webhooks')
    op.drop_table('payment_refunds')
    op.drop_table('payments')
    op.drop_table('subscription_plans')
