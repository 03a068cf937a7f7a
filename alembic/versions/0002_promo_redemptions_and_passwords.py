"""multi-use promo codes and password login

Revision ID: 0002_promo_redemptions_and_passwords
Revises: 0001_initial
Create Date: 2026-10-20
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = '0002_promo_redemptions_and_passwords'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('users', sa.Column('password_hash', sa.String(length=255), nullable=True))

    op.alter_column('promo_codes', 'code', type_=sa.String(length=50), existing_type=sa.String(length=32))
    op.add_column('promo_codes', sa.Column('max_redemptions', sa.Integer(), nullable=True))
    op.add_column(
        'promo_codes',
        sa.Column('current_redemptions', sa.Integer(), nullable=False, server_default=sa.text('0')),
    )
    op.add_column('promo_codes', sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True))

    op.create_table(
        'promo_redemptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('promo_code', sa.String(length=50), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['promo_code'], ['promo_codes.code'], ondelete='CASCADE'),
        sa.UniqueConstraint('user_id', 'promo_code', name='uq_promo_redemptions_user_code'),
    )
    op.create_index('ix_promo_redemptions_user_id', 'promo_redemptions', ['user_id'])
    op.create_index('ix_promo_redemptions_promo_code', 'promo_redemptions', ['promo_code'])

    # Single-use redemptions recorded on the code itself move to the new table.
    op.execute(
        """
        INSERT INTO promo_redemptions (user_id, promo_code, credits, created_at)
        SELECT redeemed_by_user_id, code, credits_amount, COALESCE(redeemed_at, created_at)
        FROM promo_codes
        WHERE redeemed_by_user_id IS NOT NULL
        """
    )
    op.execute(
        """
        UPDATE promo_codes
        SET max_redemptions = 1,
            current_redemptions = CASE WHEN redeemed_by_user_id IS NULL THEN 0 ELSE 1 END
        """
    )
    op.drop_column('promo_codes', 'redeemed_at')
    op.drop_column('promo_codes', 'redeemed_by_user_id')


def downgrade() -> None:
    op.add_column('promo_codes', sa.Column('redeemed_by_user_id', sa.Integer(), nullable=True))
    op.add_column('promo_codes', sa.Column('redeemed_at', sa.DateTime(timezone=True), nullable=True))
    op.create_foreign_key(
        'promo_codes_redeemed_by_user_id_fkey',
        'promo_codes',
        'users',
        ['redeemed_by_user_id'],
        ['id'],
        ondelete='SET NULL',
    )
    op.drop_index('ix_promo_redemptions_promo_code', table_name='promo_redemptions')
    op.drop_index('ix_promo_redemptions_user_id', table_name='promo_redemptions')
    op.drop_table('promo_redemptions')
    op.drop_column('promo_codes', 'expires_at')
    op.drop_column('promo_codes', 'current_redemptions')
    op.drop_column('promo_codes', 'max_redemptions')
    op.alter_column('promo_codes', 'code', type_=sa.String(length=32), existing_type=sa.String(length=50))
    op.drop_column('users', 'password_hash')
