"""billing core schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('username', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('is_banned', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('balance_credits', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table(
        'credit_packages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(length=128), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='usd'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default=sa.text('0')),
    )

    op.create_table(
        'credit_ledger',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('entry_type', sa.String(length=32), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('meta', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('source_payment_id', sa.String(length=255), nullable=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_ledger_idempotency_key'),
        sa.UniqueConstraint('source_payment_id', 'entry_type', name='uq_credit_ledger_source_payment_type'),
    )
    op.create_index('ix_credit_ledger_user_id', 'credit_ledger', ['user_id'])
    op.create_index('ix_credit_ledger_entry_type', 'credit_ledger', ['entry_type'])
    op.create_index('ix_credit_ledger_source_payment_id', 'credit_ledger', ['source_payment_id'])

    op.create_table(
        'payment_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('stripe_session_id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('package_id', sa.Integer(), nullable=True),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='usd'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['package_id'], ['credit_packages.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('stripe_session_id', name='uq_payment_records_stripe_session_id'),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name='ck_payment_records_status',
        ),
    )
    op.create_index('ix_payment_records_stripe_session_id', 'payment_records', ['stripe_session_id'])
    op.create_index('ix_payment_records_user_id', 'payment_records', ['user_id'])
    op.create_index('ix_payment_records_status', 'payment_records', ['status'])
    op.create_index('ix_payment_records_stripe_payment_intent_id', 'payment_records', ['stripe_payment_intent_id'])

    op.create_table(
        'promo_codes',
        sa.Column('code', sa.String(length=32), primary_key=True),
        sa.Column('credits_amount', sa.Integer(), nullable=False),
        sa.Column('created_by_admin', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('redeemed_by_user_id', sa.Integer(), nullable=True),
        sa.Column('redeemed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('batch_id', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['redeemed_by_user_id'], ['users.id'], ondelete='SET NULL'),
    )


def downgrade() -> None:
    op.drop_table('promo_codes')
    op.drop_index('ix_payment_records_stripe_payment_intent_id', table_name='payment_records')
    op.drop_index('ix_payment_records_status', table_name='payment_records')
    op.drop_index('ix_payment_records_user_id', table_name='payment_records')
    op.drop_index('ix_payment_records_stripe_session_id', table_name='payment_records')
    op.drop_table('payment_records')
    op.drop_index('ix_credit_ledger_source_payment_id', table_name='credit_ledger')
    op.drop_index('ix_credit_ledger_entry_type', table_name='credit_ledger')
    op.drop_index('ix_credit_ledger_user_id', table_name='credit_ledger')
    op.drop_table('credit_ledger')
    op.drop_table('credit_packages')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
