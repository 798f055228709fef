"""Initial migration - create plans, users, transactions, and subscription_grants tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PAID_PAIR_WHERE = "status = 'PAID'"
PAYME_PENDING_PAIR_WHERE = "status = 'PENDING' AND provider = 'payme'"


def upgrade() -> None:
    # Create plans table
    op.create_table(
        'plans',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('duration_days', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('telegram_id', sa.BigInteger(), nullable=True, unique=True),
        sa.Column('username', sa.String(255), nullable=True),
        sa.Column('subscription_start', sa.DateTime(), nullable=True),
        sa.Column('subscription_end', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_kicked_out', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_subscription_end', 'users', ['subscription_end'])
    op.create_index('ix_users_is_active', 'users', ['is_active'])

    # Create transactions table
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('plan_id', sa.String(36), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('amount_unit', sa.String(10), nullable=False, server_default='minor'),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('state', sa.Integer(), nullable=True),
        sa.Column('reason', sa.Integer(), nullable=True),
        sa.Column('prepare_id', sa.BigInteger(), nullable=True, unique=True),
        sa.Column('provider_time', sa.BigInteger(), nullable=True),
        sa.Column('sign_time', sa.String(32), nullable=True),
        sa.Column('perform_time', sa.DateTime(), nullable=True),
        sa.Column('cancel_time', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('provider', 'external_id', name='uq_transactions_provider_external_id'),
    )

    # Create indexes for transactions
    op.create_index('ix_transactions_user_plan', 'transactions', ['user_id', 'plan_id'])
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_created_at', 'transactions', ['created_at'])
    op.create_index(
        'uq_transactions_paid_pair',
        'transactions',
        ['user_id', 'plan_id'],
        unique=True,
        sqlite_where=sa.text(PAID_PAIR_WHERE),
        postgresql_where=sa.text(PAID_PAIR_WHERE),
    )
    op.create_index(
        'uq_transactions_payme_pending_pair',
        'transactions',
        ['user_id', 'plan_id'],
        unique=True,
        sqlite_where=sa.text(PAYME_PENDING_PAIR_WHERE),
        postgresql_where=sa.text(PAYME_PENDING_PAIR_WHERE),
    )

    # Create subscription_grants table
    op.create_table(
        'subscription_grants',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('plan_id', sa.String(36), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('transaction_id', sa.String(36), sa.ForeignKey('transactions.id'), nullable=False, unique=True),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('granted_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_subscription_grants_user_id', 'subscription_grants', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_subscription_grants_user_id', table_name='subscription_grants')
    op.drop_table('subscription_grants')

    op.drop_index('uq_transactions_payme_pending_pair', table_name='transactions')
    op.drop_index('uq_transactions_paid_pair', table_name='transactions')
    op.drop_index('ix_transactions_created_at', table_name='transactions')
    op.drop_index('ix_transactions_status', table_name='transactions')
    op.drop_index('ix_transactions_user_plan', table_name='transactions')
    op.drop_table('transactions')

    op.drop_index('ix_users_is_active', table_name='users')
    op.drop_index('ix_users_subscription_end', table_name='users')
    op.drop_table('users')

    op.drop_table('plans')
