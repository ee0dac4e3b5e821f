"""Create accounts, subscriptions, ledger, parked event and review flag tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

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
    # Tables may already exist if Base.metadata.create_all ran first
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'accounts' not in existing_tables:
        op.create_table(
            'accounts',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('name', sa.String(length=255), nullable=True),
            sa.Column('external_customer_id', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_accounts_email', 'accounts', ['email'])
        op.create_index('ix_accounts_external_customer_id', 'accounts', ['external_customer_id'], unique=True)

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('account_id', sa.String(length=64), nullable=False),
            sa.Column('external_customer_id', sa.String(length=255), nullable=True),
            sa.Column('external_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('plan_id', sa.String(length=50), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='none'),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('last_applied_event_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('account_id')
        )
        op.create_index('ix_subscriptions_external_customer_id', 'subscriptions', ['external_customer_id'], unique=True)
        op.create_index('ix_subscriptions_external_subscription_id', 'subscriptions', ['external_subscription_id'])

    if 'billing_event_ledger' not in existing_tables:
        op.create_table(
            'billing_event_ledger',
            sa.Column('external_event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('account_id', sa.String(length=64), nullable=True),
            sa.Column('outcome', sa.String(length=32), nullable=False),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('external_event_id')
        )
        op.create_index('ix_billing_event_ledger_account_id', 'billing_event_ledger', ['account_id'])
        op.create_index('ix_billing_event_ledger_processed_at', 'billing_event_ledger', ['processed_at'])

    if 'parked_events' not in existing_tables:
        op.create_table(
            'parked_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('external_event_id', sa.String(length=255), nullable=False),
            sa.Column('account_id', sa.String(length=64), nullable=False),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('resolution', sa.String(length=32), nullable=True),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_parked_events_id', 'parked_events', ['id'])
        op.create_index('ix_parked_events_external_event_id', 'parked_events', ['external_event_id'], unique=True)
        op.create_index('ix_parked_events_account_id', 'parked_events', ['account_id'])
        op.create_index('ix_parked_events_occurred_at', 'parked_events', ['occurred_at'])
        op.create_index('ix_parked_events_status', 'parked_events', ['status'])

    if 'review_flags' not in existing_tables:
        op.create_table(
            'review_flags',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('account_id', sa.String(length=64), nullable=False),
            sa.Column('external_event_id', sa.String(length=255), nullable=True),
            sa.Column('reason', sa.String(length=50), nullable=False),
            sa.Column('detail', sa.Text(), nullable=True),
            sa.Column('resolved', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_review_flags_id', 'review_flags', ['id'])
        op.create_index('ix_review_flags_account_id', 'review_flags', ['account_id'])


def downgrade() -> None:
    op.drop_table('review_flags')
    op.drop_table('parked_events')
    op.drop_table('billing_event_ledger')
    op.drop_table('subscriptions')
    op.drop_table('accounts')
