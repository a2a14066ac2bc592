"""Initial schema: shops, customers, customer_stats, orders, vouchers, courier_events

Revision ID: a1c0e7d2f301
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers
revision: str = 'a1c0e7d2f301'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(table_name):
    bind = op.get_bind()
    insp = inspect(bind)
    return table_name in insp.get_table_names()


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # ── shops ──
    if not _has_table('shops'):
        op.create_table(
            'shops',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('slug', sa.String(), nullable=False),
            sa.Column('api_key', sa.String(64), nullable=False),
            sa.Column('api_secret', sa.String(128), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
        )
        op.create_index('ix_shops_id', 'shops', ['id'])
        op.create_index('ix_shops_slug', 'shops', ['slug'], unique=True)
        op.create_index('ix_shops_api_key', 'shops', ['api_key'], unique=True)

    # ── customers ──
    if not _has_table('customers'):
        op.create_table(
            'customers',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('customer_hash', sa.String(64), nullable=False),
            sa.Column('first_seen_at', sa.DateTime(), nullable=True),
            sa.Column('last_seen_at', sa.DateTime(), nullable=True),
            sa.Column('meta', sa.JSON(), nullable=True),
            *_timestamps(),
        )
        op.create_index('ix_customers_id', 'customers', ['id'])
        op.create_index('ix_customers_customer_hash', 'customers', ['customer_hash'], unique=True)

    # ── customer_stats ──
    if not _has_table('customer_stats'):
        op.create_table(
            'customer_stats',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('customer_id', sa.Integer(),
                      sa.ForeignKey('customers.id', ondelete='CASCADE'), nullable=False),
            sa.Column('customer_hash', sa.String(64), nullable=False),
            sa.Column('total_orders', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('returns', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('late_deliveries', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('first_order_at', sa.DateTime(), nullable=True),
            sa.Column('last_order_at', sa.DateTime(), nullable=True),
            sa.Column('delivery_risk_score', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('meta', sa.JSON(), nullable=True),
            *_timestamps(),
        )
        op.create_index('ix_customer_stats_id', 'customer_stats', ['id'])
        op.create_index('ix_customer_stats_customer_id', 'customer_stats', ['customer_id'])
        op.create_index('ix_customer_stats_customer_hash', 'customer_stats', ['customer_hash'], unique=True)

    # ── orders ──
    if not _has_table('orders'):
        op.create_table(
            'orders',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('shop_id', sa.Integer(),
                      sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False),
            sa.Column('customer_id', sa.Integer(),
                      sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
            sa.Column('customer_hash', sa.String(64), nullable=False),
            sa.Column('external_order_id', sa.String(), nullable=False),
            sa.Column('customer_name_hash', sa.String(64), nullable=True),
            sa.Column('customer_phone_hash', sa.String(64), nullable=True),
            sa.Column('shipping_address_line1_hash', sa.String(64), nullable=True),
            sa.Column('shipping_address_line2_hash', sa.String(64), nullable=True),
            sa.Column('shipping_city', sa.String(), nullable=True),
            sa.Column('shipping_postcode', sa.String(), nullable=True),
            sa.Column('shipping_country', sa.String(), nullable=True),
            sa.Column('total_amount', sa.Numeric(10, 2), nullable=True),
            sa.Column('currency', sa.String(3), nullable=True),
            sa.Column('status', sa.String(), nullable=True),
            sa.Column('payment_method', sa.String(), nullable=True),
            sa.Column('payment_method_title', sa.String(), nullable=True),
            sa.Column('shipping_method', sa.String(), nullable=True),
            sa.Column('items_count', sa.Integer(), nullable=True),
            sa.Column('ordered_at', sa.DateTime(), nullable=True),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('meta', sa.JSON(), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint('shop_id', 'external_order_id', name='uq_orders_shop_external_id'),
        )
        op.create_index('ix_orders_id', 'orders', ['id'])
        op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
        op.create_index('ix_orders_customer_hash', 'orders', ['customer_hash'])
        op.create_index('ix_orders_external_order_id', 'orders', ['external_order_id'])
        op.create_index('ix_orders_status', 'orders', ['status'])
        op.create_index('ix_orders_ordered_at', 'orders', ['ordered_at'])
        op.create_index('ix_orders_shop_customer_hash', 'orders', ['shop_id', 'customer_hash'])

    # ── vouchers ──
    if not _has_table('vouchers'):
        op.create_table(
            'vouchers',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('shop_id', sa.Integer(),
                      sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False),
            sa.Column('order_id', sa.Integer(),
                      sa.ForeignKey('orders.id', ondelete='SET NULL'), nullable=True),
            sa.Column('customer_id', sa.Integer(),
                      sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
            sa.Column('customer_hash', sa.String(64), nullable=True),
            sa.Column('voucher_number', sa.String(), nullable=False),
            sa.Column('courier_name', sa.String(), nullable=True),
            sa.Column('courier_service', sa.String(), nullable=True),
            sa.Column('tracking_url', sa.String(), nullable=True),
            sa.Column('status', sa.String(), nullable=False, server_default='created'),
            sa.Column('shipped_at', sa.DateTime(), nullable=True),
            sa.Column('delivered_at', sa.DateTime(), nullable=True),
            sa.Column('returned_at', sa.DateTime(), nullable=True),
            sa.Column('failed_at', sa.DateTime(), nullable=True),
            sa.Column('meta', sa.JSON(), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint('shop_id', 'voucher_number', name='uq_vouchers_shop_voucher_number'),
        )
        op.create_index('ix_vouchers_id', 'vouchers', ['id'])
        op.create_index('ix_vouchers_shop_id', 'vouchers', ['shop_id'])
        op.create_index('ix_vouchers_order_id', 'vouchers', ['order_id'])
        op.create_index('ix_vouchers_customer_id', 'vouchers', ['customer_id'])
        op.create_index('ix_vouchers_customer_hash', 'vouchers', ['customer_hash'])
        op.create_index('ix_vouchers_voucher_number', 'vouchers', ['voucher_number'])
        op.create_index('ix_vouchers_status', 'vouchers', ['status'])

    # ── courier_events ──
    if not _has_table('courier_events'):
        op.create_table(
            'courier_events',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('voucher_id', sa.Integer(),
                      sa.ForeignKey('vouchers.id', ondelete='CASCADE'), nullable=False),
            sa.Column('courier_name', sa.String(), nullable=True),
            sa.Column('event_code', sa.String(), nullable=True),
            sa.Column('event_description', sa.String(), nullable=True),
            sa.Column('location', sa.String(), nullable=True),
            sa.Column('event_time', sa.DateTime(), nullable=True),
            sa.Column('raw_payload', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        )
        op.create_index('ix_courier_events_id', 'courier_events', ['id'])
        op.create_index('ix_courier_events_voucher_time', 'courier_events', ['voucher_id', 'event_time'])


def downgrade() -> None:
    for table in ('courier_events', 'vouchers', 'orders', 'customer_stats', 'customers', 'shops'):
        if _has_table(table):
            op.drop_table(table)
