"""Initial schema - queue, accounts, transactions, referrals, health

Revision ID: 001
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='Row modification time'),
    ]


def upgrade() -> None:
    # Create queue table
    op.create_table('queue',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_ref', sa.String(length=100), nullable=False, comment='External payment identifier (transaction hash)'),
        sa.Column('agent_id', sa.String(length=64), nullable=False, comment='Agent the work is for'),
        sa.Column('tier', sa.String(length=20), nullable=False, comment='regular, premium, vip or gas_bundle'),
        sa.Column('priority', sa.Integer(), nullable=False, comment='Tier rank at enqueue time, higher is served first'),
        sa.Column('amount', sa.DECIMAL(precision=18, scale=6), nullable=False, comment='Paid amount in USDC'),
        sa.Column('position', sa.Integer(), nullable=False, comment='Ordering key, lower is served first'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='pending, processing, completed or failed'),
        sa.Column('referral_code', sa.String(length=20), nullable=True, comment='Referral code supplied with the request'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='Why provisioning failed'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='When the entry reached a terminal state'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_ref')
    )
    op.create_index(op.f('ix_queue_agent_id'), 'queue', ['agent_id'], unique=False)
    op.create_index('idx_queue_status_position', 'queue', ['status', 'position'], unique=False)
    op.create_index('idx_queue_status_priority', 'queue', ['status', 'priority'], unique=False)

    # Create accounts table
    op.create_table('accounts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('agent_id', sa.String(length=64), nullable=False, comment='Agent that owns the account'),
        sa.Column('tier', sa.String(length=20), nullable=False, comment='Tier the account was opened with'),
        sa.Column('address', sa.String(length=128), nullable=False, comment='NXT Layer address'),
        sa.Column('nft_entitled', sa.Boolean(), nullable=False, comment='Premium and vip accounts are entitled to an NFT'),
        sa.Column('gas_bundle_sent', sa.Boolean(), nullable=False, comment='Multi-chain gas bundle delivered at opening'),
        sa.Column('referral_code', sa.String(length=20), nullable=False, comment='Code other agents use to name this account as referrer'),
        sa.Column('referred_by', sa.String(length=64), nullable=True, comment='Agent id of the referrer'),
        sa.Column('referral_count', sa.Integer(), nullable=False, comment='Rewarded referrals made by this account'),
        sa.Column('last_active', sa.DateTime(timezone=True), nullable=False, comment='Last activity timestamp'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('agent_id'),
        sa.UniqueConstraint('referral_code')
    )
    op.create_index(op.f('ix_accounts_referred_by'), 'accounts', ['referred_by'], unique=False)

    # Create transactions table
    op.create_table('transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False, comment='Account the movement belongs to'),
        sa.Column('payment_ref', sa.String(length=100), nullable=True, comment='Payment that triggered the movement'),
        sa.Column('type', sa.String(length=20), nullable=False, comment='payment or gas_bundle'),
        sa.Column('amount', sa.DECIMAL(precision=18, scale=6), nullable=False, comment='Amount in USDC'),
        sa.Column('destination', sa.String(length=128), nullable=True, comment='Receiving address'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='Movement status'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_transactions_account', 'transactions', ['account_id', 'type'], unique=False)

    # Create referral_payouts table
    op.create_table('referral_payouts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('referrer_id', sa.String(length=64), nullable=False, comment='Agent id of the referrer'),
        sa.Column('referred_id', sa.String(length=64), nullable=False, comment='Agent id of the referred account'),
        sa.Column('referred_tier', sa.String(length=20), nullable=False, comment='Tier of the referred account'),
        sa.Column('usdc_amount', sa.DECIMAL(precision=18, scale=6), nullable=False, comment='USDC owed to the referrer'),
        sa.Column('points_amount', sa.Integer(), nullable=False, comment='Leaderboard points awarded'),
        sa.Column('points_paid', sa.Boolean(), nullable=False, comment='Points credited to the leaderboard'),
        sa.Column('usdc_paid', sa.Boolean(), nullable=False, comment='USDC disbursed'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('referred_id')
    )
    op.create_index('idx_referral_payouts_referrer', 'referral_payouts', ['referrer_id', 'usdc_paid'], unique=False)

    # Create leaderboard table
    op.create_table('leaderboard',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('agent_id', sa.String(length=64), nullable=False, comment='Agent id'),
        sa.Column('total_points', sa.BigInteger(), nullable=False, comment='Points accumulated'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('agent_id')
    )
    op.create_index('idx_leaderboard_points', 'leaderboard', ['total_points'], unique=False)

    # Create agent_health table
    op.create_table('agent_health',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('agent_name', sa.String(length=64), nullable=False),
        sa.Column('agent_role', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('last_heartbeat', sa.DateTime(timezone=True), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('agent_name')
    )


def downgrade() -> None:
    op.drop_table('agent_health')
    op.drop_index('idx_leaderboard_points', table_name='leaderboard')
    op.drop_table('leaderboard')
    op.drop_index('idx_referral_payouts_referrer', table_name='referral_payouts')
    op.drop_table('referral_payouts')
    op.drop_index('idx_transactions_account', table_name='transactions')
    op.drop_table('transactions')
    op.drop_index(op.f('ix_accounts_referred_by'), table_name='accounts')
    op.drop_table('accounts')
    op.drop_index('idx_queue_status_priority', table_name='queue')
    op.drop_index('idx_queue_status_position', table_name='queue')
    op.drop_index(op.f('ix_queue_agent_id'), table_name='queue')
    op.drop_table('queue')
