"""Billing ledger migration.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create subscriptions table
    op.create_table(
        'subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('plan', sa.String(50), nullable=False, server_default='free'),
        sa.Column('status', sa.String(50), nullable=False, server_default='active'),
        sa.Column('gateway_customer_id', sa.String(255), nullable=True),
        sa.Column('gateway_subscription_id', sa.String(255), nullable=True),
        sa.Column('billing_cycle', sa.String(20), nullable=False, server_default='monthly'),
        sa.Column('amount', sa.Float(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('usage_limits', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('current_usage', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('usage_history', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('features', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('add_ons', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('total_discount', sa.Float(), nullable=False, server_default='0'),
        sa.Column('renewal_amount', sa.Float(), nullable=False, server_default='0'),
        sa.Column('renewal_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('last_payment_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_payment_amount', sa.Float(), nullable=True),
        sa.Column('payment_failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
        sa.UniqueConstraint('gateway_subscription_id'),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_plan', 'subscriptions', ['plan'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_gateway_customer_id', 'subscriptions', ['gateway_customer_id'])
    op.create_index('ix_subscriptions_current_period_end', 'subscriptions', ['current_period_end'])
    op.create_index('ix_subscriptions_status_plan', 'subscriptions', ['status', 'plan'])

    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('gateway_payment_intent_id', sa.String(255), nullable=True),
        sa.Column('gateway_charge_id', sa.String(255), nullable=True),
        sa.Column('gateway_customer_id', sa.String(255), nullable=True),
        sa.Column('payment_type', sa.String(50), nullable=False, server_default='payment'),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('amount_received', sa.Float(), nullable=False, server_default='0'),
        sa.Column('gateway_fee', sa.Float(), nullable=False, server_default='0'),
        sa.Column('application_fee', sa.Float(), nullable=False, server_default='0'),
        sa.Column('net_amount', sa.Float(), nullable=False, server_default='0'),
        sa.Column('refund_amount', sa.Float(), nullable=False, server_default='0'),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        sa.Column('attempted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_code', sa.String(100), nullable=True),
        sa.Column('failure_message', sa.Text(), nullable=True),
        sa.Column('retry_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retry_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_history', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('retry_claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('risk_score', sa.Integer(), nullable=True),
        sa.Column('risk_level', sa.String(20), nullable=True),
        sa.Column('fraud_flagged', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('fraud_reason', sa.Text(), nullable=True),
        sa.Column('fraud_review_status', sa.String(20), nullable=True),
        sa.Column('dispute_status', sa.String(50), nullable=False, server_default='none'),
        sa.Column('dispute_amount', sa.Float(), nullable=True),
        sa.Column('dispute_reason', sa.Text(), nullable=True),
        sa.Column('webhook_events', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.UniqueConstraint('gateway_payment_intent_id'),
        sa.CheckConstraint('amount >= 0', name='ck_payments_amount_non_negative'),
        sa.CheckConstraint('refund_amount <= amount_received', name='ck_payments_refund_le_received'),
        sa.CheckConstraint(
            'risk_score IS NULL OR (risk_score >= 0 AND risk_score <= 100)',
            name='ck_payments_risk_score_range',
        ),
    )
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
    op.create_index('ix_payments_gateway_payment_intent_id', 'payments', ['gateway_payment_intent_id'])
    op.create_index('ix_payments_gateway_charge_id', 'payments', ['gateway_charge_id'])
    op.create_index('ix_payments_gateway_customer_id', 'payments', ['gateway_customer_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_next_retry_at', 'payments', ['next_retry_at'])
    op.create_index('ix_payments_user_created', 'payments', ['user_id', 'created_at'])
    op.create_index('ix_payments_status_next_retry', 'payments', ['status', 'next_retry_at'])
    op.create_index('ix_payments_fraud', 'payments', ['fraud_flagged', 'risk_level'])

    # Create credit_accounts table
    op.create_table(
        'credit_accounts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('total_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('used_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('available_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('plan_type', sa.String(50), nullable=False),
        sa.Column('plan_start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('plan_end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('features', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('payment_history', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('updated_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
        sa.CheckConstraint('used_credits >= 0', name='ck_credit_accounts_used_non_negative'),
    )
    op.create_index('ix_credit_accounts_user_id', 'credit_accounts', ['user_id'])
    op.create_index('ix_credit_accounts_plan_end_date', 'credit_accounts', ['plan_end_date'])
    op.create_index('ix_credit_accounts_is_active', 'credit_accounts', ['is_active'])

    # Create manual_payment_requests table
    op.create_table(
        'manual_payment_requests',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('plan_type', sa.String(50), nullable=False),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('payment_method', sa.String(50), nullable=False),
        sa.Column('payment_proof', sa.Text(), nullable=True),
        sa.Column('reference_number', sa.String(64), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('bank_details', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verified_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('credits_granted', sa.Integer(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference_number'),
    )
    op.create_index('ix_manual_payment_requests_user_id', 'manual_payment_requests', ['user_id'])
    op.create_index('ix_manual_payment_requests_plan_type', 'manual_payment_requests', ['plan_type'])
    op.create_index('ix_manual_payment_requests_reference_number', 'manual_payment_requests', ['reference_number'])
    op.create_index('ix_manual_payment_requests_status', 'manual_payment_requests', ['status'])


def downgrade() -> None:
    op.drop_table('manual_payment_requests')
    op.drop_table('credit_accounts')
    op.drop_table('payments')
    op.drop_table('subscriptions')
