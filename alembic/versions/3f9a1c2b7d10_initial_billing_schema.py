"""initial_billing_schema

Revision ID: 3f9a1c2b7d10
Revises:
Create Date: 2026-10-12 09:14:27.418306

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f9a1c2b7d10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(updated: bool = True) -> list:
    columns = [sa.Column('created_at', sa.DateTime(timezone=True), nullable=False)]
    if updated:
        columns.append(sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False))
    return columns


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('username', sa.String(length=255), nullable=False, comment='Display name'),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('is_admin', sa.Boolean(), nullable=False),
        sa.Column('billing_enabled', sa.Boolean(), nullable=False, comment='Weekly performance fee is charged only when enabled'),
        sa.Column('gateway_customer_id', sa.String(length=255), nullable=True, comment='Payment gateway customer ID (cus_...)'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_billing_enabled', 'users', ['billing_enabled'])
    op.create_index('ix_users_gateway_customer_id', 'users', ['gateway_customer_id'])

    op.create_table(
        'brokerage_credentials',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('platform', sa.String(length=50), nullable=False),
        sa.Column('account_number', sa.String(length=64), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True, comment='Last successful gain/loss sync'),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'platform', name='uq_brokerage_credentials_user_platform'),
    )
    op.create_index('ix_brokerage_credentials_user_id', 'brokerage_credentials', ['user_id'])

    op.create_table(
        'trades',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('symbol', sa.String(length=32), nullable=False),
        sa.Column('direction', sa.String(length=10), nullable=False, comment='LONG, SHORT, CALL, PUT'),
        sa.Column('asset_class', sa.String(length=20), nullable=False, comment='stock, option, future, crypto'),
        sa.Column('strike', sa.Numeric(precision=12, scale=4), nullable=True),
        sa.Column('expiry', sa.Date(), nullable=True),
        sa.Column('entry_price', sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column('exit_price', sa.Numeric(precision=12, scale=4), nullable=True),
        sa.Column('quantity', sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column('entry_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('exit_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pnl', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('pnl_percent', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('pnl_source', sa.String(length=20), nullable=True, comment='brokerage, calculated, manual'),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('external_position_id', sa.String(length=255), nullable=True, comment='Stable brokerage position identifier used for idempotent import'),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('open', 'closed', 'stopped')", name='ck_trades_status'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_position_id'),
    )
    op.create_index('ix_trades_user_id', 'trades', ['user_id'])
    op.create_index('ix_trades_entry_date', 'trades', ['entry_date'])
    op.create_index('ix_trades_status', 'trades', ['status'])
    op.create_index('ix_trades_user_entry_date', 'trades', ['user_id', 'entry_date'])

    op.create_table(
        'trade_pnl_adjustments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('trade_id', sa.Integer(), nullable=False),
        sa.Column('previous_pnl', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('new_pnl', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('previous_source', sa.String(length=20), nullable=True),
        sa.Column('new_source', sa.String(length=20), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(['trade_id'], ['trades.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_trade_pnl_adjustments_trade_id', 'trade_pnl_adjustments', ['trade_id'])

    op.create_table(
        'billing_periods',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('week_start', sa.Date(), nullable=False, comment='Monday'),
        sa.Column('week_end', sa.Date(), nullable=False, comment='Friday'),
        sa.Column('total_pnl', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('trade_count', sa.Integer(), nullable=False),
        sa.Column('fee_percentage', sa.Numeric(precision=5, scale=2), nullable=False),
        sa.Column('fee_amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, comment='pending, paid, failed, waived'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, comment='Number of failed charge attempts'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('gateway_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('gateway_charge_id', sa.String(length=255), nullable=True),
        *_timestamps(updated=False),
        sa.CheckConstraint("status IN ('pending', 'paid', 'failed', 'waived')", name='ck_billing_periods_status'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'week_start', 'week_end', name='uq_billing_periods_user_week'),
    )
    op.create_index('ix_billing_periods_user_id', 'billing_periods', ['user_id'])
    op.create_index('ix_billing_periods_status', 'billing_periods', ['status'])
    op.create_index('ix_billing_periods_week', 'billing_periods', ['week_start', 'week_end'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('billing_period_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('gateway_payment_intent_id', sa.String(length=255), nullable=True, comment='PaymentIntent ID (pi_...). Null when the gateway never answered.'),
        sa.Column('gateway_charge_id', sa.String(length=255), nullable=True),
        sa.Column('payment_method_id', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, comment='pending, succeeded, failed, refunded'),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('receipt_url', sa.Text(), nullable=True),
        sa.Column('amount_refunded', sa.Numeric(precision=10, scale=2), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('pending', 'succeeded', 'failed', 'refunded')", name='ck_payments_status'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['billing_period_id'], ['billing_periods.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_payment_intent_id'),
    )
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_billing_period_id', 'payments', ['billing_period_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    # At most one succeeded payment per billing period
    op.create_index(
        'uq_payments_one_succeeded_per_period',
        'payments',
        ['billing_period_id'],
        unique=True,
        postgresql_where=sa.text("status = 'succeeded'"),
        sqlite_where=sa.text("status = 'succeeded'"),
    )

    op.create_table(
        'payment_methods',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('gateway_customer_id', sa.String(length=255), nullable=False),
        sa.Column('gateway_payment_method_id', sa.String(length=255), nullable=False, comment='pm_...'),
        sa.Column('payment_method_type', sa.String(length=30), nullable=False),
        sa.Column('card_brand', sa.String(length=30), nullable=True),
        sa.Column('card_last4', sa.String(length=4), nullable=True),
        sa.Column('card_exp_month', sa.Integer(), nullable=True),
        sa.Column('card_exp_year', sa.Integer(), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('billing_email', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_payment_method_id'),
    )
    op.create_index('ix_payment_methods_user_id', 'payment_methods', ['user_id'])
    op.create_index('ix_payment_methods_gateway_customer_id', 'payment_methods', ['gateway_customer_id'])
    # At most one default payment method per user
    op.create_index(
        'uq_payment_methods_one_default_per_user',
        'payment_methods',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text('is_default = true'),
        sqlite_where=sa.text('is_default = 1'),
    )

    op.create_table(
        'billing_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('billing_period_id', sa.Integer(), nullable=True),
        sa.Column('event_type', sa.String(length=40), nullable=False),
        sa.Column('event_data', sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'), nullable=True),
        sa.Column('external_event_id', sa.String(length=255), nullable=True, comment='Gateway webhook event ID (evt_...)'),
        *_timestamps(updated=False),
        sa.CheckConstraint(
            "event_type IN ('period_created', 'charge_attempted', 'charge_succeeded', 'charge_failed', "
            "'refund_issued', 'period_waived', 'payment_method_added', 'payment_method_removed', "
            "'billing_enabled', 'billing_disabled')",
            name='ck_billing_events_type',
        ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['billing_period_id'], ['billing_periods.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_event_id'),
    )
    op.create_index('ix_billing_events_user_id', 'billing_events', ['user_id'])
    op.create_index('ix_billing_events_billing_period_id', 'billing_events', ['billing_period_id'])
    op.create_index('ix_billing_events_event_type', 'billing_events', ['event_type'])
    op.create_index('ix_billing_events_created_at', 'billing_events', ['created_at'])

    op.create_table(
        'sync_status',
        sa.Column('sync_type', sa.String(length=50), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('users_processed', sa.Integer(), nullable=False),
        sa.Column('trades_synced', sa.Integer(), nullable=False),
        sa.Column('errors', sa.Integer(), nullable=False),
        sa.Column('total_pnl', sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('sync_type'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('sync_status')
    op.drop_table('billing_events')
    op.drop_index('uq_payment_methods_one_default_per_user', table_name='payment_methods')
    op.drop_table('payment_methods')
    op.drop_index('uq_payments_one_succeeded_per_period', table_name='payments')
    op.drop_table('payments')
    op.drop_table('billing_periods')
    op.drop_table('trade_pnl_adjustments')
    op.drop_table('trades')
    op.drop_table('brokerage_credentials')
    op.drop_table('users')
