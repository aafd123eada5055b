"""initial schema

Revision ID: 2026_03_02_0000
Revises:
Create Date: 2026-03-02 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_03_02_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create profiles, usage ledger, payment event dedup and referrals."""

    # ========================================================================
    # Create profiles table
    # ========================================================================
    op.create_table(
        'profiles',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('subscription_tier', sa.String(32), nullable=False, server_default='free'),
        sa.Column('timezone', sa.String(64), nullable=False, server_default='Europe/London'),
        sa.Column('referral_code', sa.String(32), nullable=False),
        sa.Column('first_item_pass_used', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('email', name='uq_profiles_email'),
        sa.UniqueConstraint('referral_code', name='uq_profiles_referral_code'),
    )
    op.create_index('idx_profiles_subscription_tier', 'profiles', ['subscription_tier'])

    # ========================================================================
    # Create usage_credits table (one ledger row per account)
    # ========================================================================
    op.create_table(
        'usage_credits',
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('profiles.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('price_checks_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('optimizations_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('vintography_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credits_limit', sa.BigInteger(), nullable=False, server_default='5'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('price_checks_used >= 0', name='ck_price_checks_non_negative'),
        sa.CheckConstraint('optimizations_used >= 0', name='ck_optimizations_non_negative'),
        sa.CheckConstraint('vintography_used >= 0', name='ck_vintography_non_negative'),
        sa.CheckConstraint('credits_limit >= 0', name='ck_credits_limit_non_negative'),
    )

    # ========================================================================
    # Create payment_events table (webhook dedup ledger)
    # ========================================================================
    op.create_table(
        'payment_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('dedup_key', sa.String(255), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(32), nullable=False),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', sa.String(255), nullable=True),
        sa.Column('transaction_id', sa.String(255), nullable=False),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('dedup_key', name='uq_payment_events_dedup_key'),
        sa.CheckConstraint(
            "event_type IN ('activated', 'updated', 'cancelled', 'credit_pack_purchased')",
            name='ck_payment_events_type',
        ),
    )
    op.create_index('idx_payment_events_account_id', 'payment_events', ['account_id'])
    op.create_index('idx_payment_events_applied_at', 'payment_events', ['applied_at'])

    # ========================================================================
    # Create referrals table
    # ========================================================================
    op.create_table(
        'referrals',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('referrer_id', UUID(as_uuid=True), sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('referee_id', UUID(as_uuid=True), sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('referral_code', sa.String(32), nullable=False),
        sa.Column('credits_awarded', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('referee_id', name='uq_referrals_referee'),
        sa.CheckConstraint('referrer_id <> referee_id', name='ck_referrals_not_self'),
        sa.CheckConstraint('credits_awarded >= 0', name='ck_referrals_credits_non_negative'),
    )
    op.create_index('idx_referrals_referrer_id', 'referrals', ['referrer_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('idx_referrals_referrer_id', table_name='referrals')
    op.drop_table('referrals')
    op.drop_index('idx_payment_events_applied_at', table_name='payment_events')
    op.drop_index('idx_payment_events_account_id', table_name='payment_events')
    op.drop_table('payment_events')
    op.drop_table('usage_credits')
    op.drop_index('idx_profiles_subscription_tier', table_name='profiles')
    op.drop_table('profiles')
