"""Create billing tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tables may already exist if they were created by Base.metadata.create_all
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'plans' not in existing_tables:
        op.create_table(
            'plans',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('slug', sa.String(length=64), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('price_cents', sa.Integer(), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='BRL'),
            sa.Column('interval', sa.String(length=32), nullable=False, server_default='monthly'),
            sa.Column('trial_days', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('stripe_price_id', sa.String(length=255), nullable=True),
            sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_plans_id', 'plans', ['id'])
        op.create_index('ix_plans_slug', 'plans', ['slug'], unique=True)

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('owner_id', sa.String(length=64), nullable=False),
            sa.Column('plan_id', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(length=32), nullable=False),
            sa.Column('gateway', sa.String(length=32), nullable=False, server_default='none'),
            sa.Column('gateway_recurrence_id', sa.String(length=255), nullable=True),
            sa.Column('gateway_customer_id', sa.String(length=255), nullable=True),
            sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('trial_end_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('past_due_since', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancel_reason', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
        op.create_index('ix_subscriptions_owner_id', 'subscriptions', ['owner_id'])
        op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
        op.create_index('ix_subscriptions_gateway_recurrence_id', 'subscriptions', ['gateway_recurrence_id'], unique=True)

    if 'payment_records' not in existing_tables:
        op.create_table(
            'payment_records',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('subscription_id', sa.Integer(), nullable=False),
            sa.Column('amount_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('gateway', sa.String(length=32), nullable=False),
            sa.Column('gateway_payment_id', sa.String(length=255), nullable=True),
            sa.Column('status', sa.String(length=32), nullable=False),
            sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('gateway_payment_id')
        )
        op.create_index('ix_payment_records_id', 'payment_records', ['id'])
        op.create_index('ix_payment_records_subscription_id', 'payment_records', ['subscription_id'])
        op.create_index('ix_payment_records_subscription_created', 'payment_records', ['subscription_id', 'created_at'])

    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('gateway', sa.String(length=32), nullable=False),
            sa.Column('event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=64), nullable=False),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('raw_payload', sa.JSON(), nullable=True),
            sa.Column('headers', sa.JSON(), nullable=True),
            sa.Column('status', sa.String(length=32), nullable=False),
            sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('subscription_id', sa.Integer(), nullable=True),
            sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('gateway', 'event_id', name='uq_webhook_events_gateway_event_id')
        )
        op.create_index('ix_webhook_events_id', 'webhook_events', ['id'])
        op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
        op.create_index('ix_webhook_events_subscription_id', 'webhook_events', ['subscription_id'])
        op.create_index('ix_webhook_events_status_next_retry', 'webhook_events', ['status', 'next_retry_at'])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    for table in ('webhook_events', 'payment_records', 'subscriptions', 'plans'):
        if table in existing_tables:
            op.drop_table(table)
