"""create settlement tables

Revision ID: 0001_init
Revises:
Create Date: 2026-09-14

"""
from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('full_name', sa.String(200), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('active', sa.Boolean, nullable=False, server_default=sa.true())
    )
    op.create_table(
        'catalog_services',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('base_price', sa.Integer, nullable=False),
        sa.Column('active', sa.Boolean, nullable=False, server_default=sa.true())
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_number', sa.String(50), nullable=False),
        sa.Column('customer_id', sa.Integer, nullable=False),
        sa.Column('agent_id', sa.Integer, nullable=True),
        sa.Column('provider_id', sa.Integer, nullable=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('subtotal', sa.Integer, nullable=False),
        sa.Column('delivery_fee', sa.Integer, nullable=False),
        sa.Column('total', sa.Integer, nullable=False),
        sa.Column('pickup_date', sa.Date, nullable=True),
        sa.Column('pickup_slot', sa.String(20), nullable=True),
        sa.Column('delivery_address', sa.JSON, nullable=False),
        sa.Column('customer_phone', sa.String(50), nullable=True),
        sa.Column('customer_notes', sa.Text, nullable=True),
        sa.Column('cancel_reason', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.Column('pickup_scheduled_at', sa.DateTime, nullable=True),
        sa.Column('collected_at', sa.DateTime, nullable=True),
        sa.Column('ready_at', sa.DateTime, nullable=True),
        sa.Column('delivered_at', sa.DateTime, nullable=True),
        sa.Column('completed_at', sa.DateTime, nullable=True),
        sa.Column('cancelled_at', sa.DateTime, nullable=True),
        sa.Column('version', sa.Integer, nullable=False),
        sa.CheckConstraint('total = subtotal + delivery_fee', name='ck_orders_total')
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'], unique=True)
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_agent_id', 'orders', ['agent_id'])
    op.create_index('ix_orders_provider_id', 'orders', ['provider_id'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('service_id', sa.Integer, nullable=False),
        sa.Column('service_name', sa.String(200), nullable=False),
        sa.Column('unit_price', sa.Integer, nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('price', sa.Integer, nullable=False),
        sa.Column('garment_description', sa.String(255), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('provider_notes', sa.Text, nullable=True)
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'order_timeline',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('from_status', sa.String(30), nullable=True),
        sa.Column('to_status', sa.String(30), nullable=False),
        sa.Column('actor_id', sa.Integer, nullable=True),
        sa.Column('actor_role', sa.String(20), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('override', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, nullable=False)
    )
    op.create_index('ix_order_timeline_order_id', 'order_timeline', ['order_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('processor_session_id', sa.String(255), nullable=True, unique=True),
        sa.Column('processor_payment_intent_id', sa.String(255), nullable=True),
        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column('refunded_amount', sa.Integer, nullable=False, server_default='0'),
        sa.Column('currency', sa.String(8), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('metadata', sa.JSON, nullable=False),
        sa.Column('succeeded_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.CheckConstraint('refunded_amount >= 0 AND refunded_amount <= amount', name='ck_payments_refunded')
    )
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])
    op.create_index('ix_payments_processor_payment_intent_id', 'payments', ['processor_payment_intent_id'])

    op.create_table(
        'processed_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('payment_id', sa.Integer, sa.ForeignKey('payments.id'), nullable=True),
        sa.Column('received_at', sa.DateTime, nullable=False)
    )

    op.create_table(
        'payouts',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('user_id', sa.Integer, nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('payment_method', sa.String(30), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('paid_at', sa.DateTime, nullable=True),
        sa.Column('paid_by', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('order_id', 'user_id', name='uq_payouts_order_user'),
        sa.UniqueConstraint('order_id', 'role', name='uq_payouts_order_role'),
        sa.CheckConstraint('amount >= 0', name='ck_payouts_amount')
    )
    op.create_index('ix_payouts_order_id', 'payouts', ['order_id'])
    op.create_index('ix_payouts_user_id', 'payouts', ['user_id'])


def downgrade() -> None:
    op.drop_table('payouts')
    op.drop_table('processed_events')
    op.drop_table('payments')
    op.drop_table('order_timeline')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('catalog_services')
    op.drop_table('users')
