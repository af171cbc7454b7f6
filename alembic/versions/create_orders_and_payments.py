"""Create orders and payments tables.

Revision ID: create_orders_and_payments
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'create_orders_and_payments'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('order_number', sa.String(32), nullable=False, unique=True, index=True),
        sa.Column('user_id', sa.String(64), nullable=True, index=True),
        sa.Column('session_id', sa.String(128), nullable=True, index=True),
        sa.Column('items', sa.JSON(), nullable=False),
        sa.Column('shipping_address', sa.JSON(), nullable=False),
        sa.Column('guest_info', sa.JSON(), nullable=True),
        sa.Column('total_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('status', sa.String(30), nullable=False, server_default='created', index=True),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('cancel_reason', sa.String(500), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            '(user_id IS NULL) <> (session_id IS NULL)',
            name='ck_orders_single_owner',
        ),
        sa.CheckConstraint('total_amount > 0', name='ck_orders_positive_total'),
    )

    op.create_table(
        'payments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('order_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('order_number', sa.String(32), nullable=False, index=True),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('session_id', sa.String(128), nullable=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('method', sa.String(30), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending', index=True),
        sa.Column('gateway_order_id', sa.String(255), nullable=True, unique=True),
        sa.Column('checkout_id', sa.String(255), nullable=True, unique=True),
        sa.Column('checkout_url', sa.String(500), nullable=True),
        sa.Column('transaction_id', sa.String(255), nullable=True, index=True),
        sa.Column('gateway_transaction_id', sa.String(255), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('error_message', sa.String(500), nullable=True),
        sa.Column('failure_reason', sa.String(255), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('refund_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('refund_transaction_id', sa.String(255), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
    )

    # Stale pending sweep
    op.create_index(
        'ix_payments_pending_updated_at',
        'payments',
        ['updated_at'],
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index('ix_payments_pending_updated_at', table_name='payments')
    op.drop_table('payments')
    op.drop_table('orders')
