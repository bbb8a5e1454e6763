"""Create marketplace tables

Revision ID: create_marketplace_tables
Revises:
Create Date: 2026-06-01 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'create_marketplace_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
Money = sa.Numeric(18, 2)
StatusType = sa.String(length=40)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='更新时间'),
    ]


def upgrade() -> None:
    """Create users, catalog, orders, shipments, returns, wallet and withdrawals tables"""

    op.create_table('users',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('username', sa.String(length=100), nullable=False, comment='用户名'),
        sa.Column('email', sa.String(length=255), nullable=True, comment='邮箱'),
        sa.Column('phone', sa.String(length=32), nullable=True, comment='手机号'),
        sa.Column('role', StatusType, nullable=False, comment='角色'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('wallet_balance', Money, nullable=False, server_default='0', comment='钱包余额'),
        sa.Column('cart', JSONType, nullable=False, comment='购物车'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username')
    )

    op.create_table('seller_profiles',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('shop_name', sa.String(length=200), nullable=False, comment='店铺名称'),
        sa.Column('contact_name', sa.String(length=200), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('address', JSONType, nullable=False, comment='发货地址'),
        sa.Column('pickup_location_name', sa.Text(), nullable=True, comment='承运商取件点名称'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id')
    )

    op.create_table('products',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('seller_id', sa.BigInteger(), nullable=False, comment='商家ID'),
        sa.Column('name', sa.String(length=300), nullable=False),
        sa.Column('sku', sa.String(length=100), nullable=True),
        sa.Column('image', sa.Text(), nullable=True),
        sa.Column('price', Money, nullable=False),
        sa.Column('stock', sa.Integer(), nullable=False, comment='库存'),
        sa.Column('total_sold', sa.Integer(), nullable=False, comment='累计销量'),
        sa.Column('weight_kg', Money, nullable=True, comment='单件重量'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['seller_id'], ['seller_profiles.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_products_seller_id', 'products', ['seller_id'])

    op.create_table('coupons',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('code', sa.String(length=50), nullable=False, comment='券码（大写）'),
        sa.Column('usage_limit', sa.Integer(), nullable=True, comment='总使用次数上限，空表示不限'),
        sa.Column('used_count', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code')
    )

    op.create_table('coupon_redemptions',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('coupon_id', sa.BigInteger(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('redeemed_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('coupon_id', 'user_id', name='uq_coupon_redemption_user')
    )

    op.create_table('orders',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_number', sa.String(length=40), nullable=False, comment='对商家和承运商展示的订单号'),
        sa.Column('buyer_id', sa.BigInteger(), nullable=False, comment='买家'),
        sa.Column('seller_id', sa.BigInteger(), nullable=False, comment='商家'),
        sa.Column('shipping_address', JSONType, nullable=False, comment='收货地址快照'),
        sa.Column('payment_method', StatusType, nullable=False),
        sa.Column('items_price', Money, nullable=False),
        sa.Column('tax_price', Money, nullable=False),
        sa.Column('shipping_price', Money, nullable=False),
        sa.Column('discount', Money, nullable=False),
        sa.Column('total_price', Money, nullable=False),
        sa.Column('coupon_code', sa.String(length=50), nullable=True),
        sa.Column('commission', Money, nullable=True),
        sa.Column('seller_earnings', Money, nullable=True),
        sa.Column('seller_credited', sa.Boolean(), nullable=False, server_default=sa.false(), comment='收益是否已入账'),
        sa.Column('order_status', StatusType, nullable=False),
        sa.Column('payment_status', StatusType, nullable=False),
        sa.Column('shipping_status', StatusType, nullable=False),
        sa.Column('gateway_order_id', sa.String(length=100), nullable=True),
        sa.Column('payment_id', sa.String(length=100), nullable=True),
        sa.Column('payment_signature', sa.String(length=256), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_by', sa.BigInteger(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancellation_request_reason', sa.Text(), nullable=True),
        sa.Column('cancellation_requested_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_approved_by', sa.BigInteger(), nullable=True),
        sa.Column('cancellation_approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_status', StatusType, nullable=False),
        sa.Column('refunded_amount', Money, nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('gateway_refund_id', sa.String(length=100), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('estimated_delivery', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['buyer_id'], ['users.id']),
        sa.ForeignKeyConstraint(['seller_id'], ['seller_profiles.id']),
        sa.ForeignKeyConstraint(['cancelled_by'], ['users.id']),
        sa.ForeignKeyConstraint(['cancellation_approved_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_number'),
        sa.UniqueConstraint('payment_id', 'seller_id', name='uq_orders_payment_seller')
    )
    op.create_index('ix_orders_buyer_created', 'orders', ['buyer_id', 'created_at'])
    op.create_index('ix_orders_seller_status', 'orders', ['seller_id', 'order_status'])

    op.create_table('order_items',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('product_id', sa.BigInteger(), nullable=True),
        sa.Column('name', sa.String(length=300), nullable=False),
        sa.Column('image', sa.Text(), nullable=True),
        sa.Column('sku', sa.String(length=100), nullable=True),
        sa.Column('unit_price', Money, nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table('order_shipments',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('shipment_id', sa.String(length=100), nullable=True, comment='承运商运单ID'),
        sa.Column('carrier_order_id', sa.String(length=100), nullable=True),
        sa.Column('awb', sa.String(length=100), nullable=True, comment='运单号'),
        sa.Column('courier_name', sa.String(length=100), nullable=True),
        sa.Column('courier_code', sa.String(length=50), nullable=True),
        sa.Column('tracking_url', sa.Text(), nullable=True),
        sa.Column('label_url', sa.Text(), nullable=True),
        sa.Column('manifest_url', sa.Text(), nullable=True),
        sa.Column('courier_cost', Money, nullable=True, comment='正向运费'),
        sa.Column('status_code', sa.String(length=40), nullable=True),
        sa.Column('status_description', sa.String(length=200), nullable=True),
        sa.Column('is_returning', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('pickup_scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pickup_reference', sa.String(length=100), nullable=True),
        sa.Column('rto_shipment_id', sa.String(length=100), nullable=True),
        sa.Column('rto_awb', sa.String(length=100), nullable=True),
        sa.Column('rto_delivered_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id')
    )
    op.create_index('ix_order_shipments_shipment_id', 'order_shipments', ['shipment_id'])
    op.create_index('ix_order_shipments_awb', 'order_shipments', ['awb'])

    op.create_table('shipment_events',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('raw', JSONType, nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_shipment_events_order_id', 'shipment_events', ['order_id'])

    op.create_table('return_requests',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('buyer_id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('type', StatusType, nullable=False),
        sa.Column('reason_category', StatusType, nullable=False),
        sa.Column('reason_text', sa.Text(), nullable=True),
        sa.Column('refund_details', JSONType, nullable=False),
        sa.Column('status', StatusType, nullable=False),
        sa.Column('reverse_shipment_id', sa.String(length=100), nullable=True),
        sa.Column('reverse_awb', sa.String(length=100), nullable=True),
        sa.Column('reverse_tracking_url', sa.Text(), nullable=True),
        sa.Column('pickup_scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('forward_shipping_charge', Money, nullable=True),
        sa.Column('return_shipping_charge', Money, nullable=True),
        sa.Column('charge_scenario', StatusType, nullable=True),
        sa.Column('vendor_charge', Money, nullable=True),
        sa.Column('platform_charge', Money, nullable=True),
        sa.Column('total_return_charge', Money, nullable=True),
        sa.Column('allocation_applied', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('admin_note', sa.Text(), nullable=True),
        sa.Column('approved_by', sa.BigInteger(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('picked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['buyer_id'], ['users.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['approved_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_return_requests_order_id', 'return_requests', ['order_id'])
    op.create_index('ix_return_requests_status', 'return_requests', ['status'])
    # 同一买家同一订单只能有一个进行中的申请
    op.create_index(
        'uq_return_requests_open', 'return_requests', ['buyer_id', 'order_id'], unique=True,
        postgresql_where=sa.text("status IN ('requested', 'approved', 'picked')"),
    )

    op.create_table('wallet_transactions',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('kind', StatusType, nullable=False),
        sa.Column('amount', Money, nullable=False),
        sa.Column('balance_after', Money, nullable=True, comment='本次变动后的余额'),
        sa.Column('reference_type', sa.String(length=40), nullable=False),
        sa.Column('reference_id', sa.BigInteger(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=120), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key')
    )
    op.create_index('ix_wallet_tx_user_created', 'wallet_transactions', ['user_id', 'created_at'])
    op.create_index('ix_wallet_tx_reference', 'wallet_transactions', ['reference_type', 'reference_id'])

    op.create_table('withdrawals',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('seller_user_id', sa.BigInteger(), nullable=False),
        sa.Column('amount', Money, nullable=False),
        sa.Column('method', StatusType, nullable=False),
        sa.Column('payment_details', JSONType, nullable=False),
        sa.Column('status', StatusType, nullable=False),
        sa.Column('payout_contact_id', sa.String(length=100), nullable=True),
        sa.Column('payout_fund_account_id', sa.String(length=100), nullable=True),
        sa.Column('payout_id', sa.String(length=100), nullable=True),
        sa.Column('payout_status', sa.String(length=40), nullable=True, comment='服务商状态，人工打款为 manual'),
        sa.Column('payout_utr', sa.String(length=100), nullable=True),
        sa.Column('transaction_id', sa.String(length=100), nullable=True),
        sa.Column('seller_notes', sa.Text(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('approved_by', sa.BigInteger(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_by', sa.BigInteger(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['seller_user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['approved_by'], ['users.id']),
        sa.ForeignKeyConstraint(['processed_by'], ['users.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_withdrawals_seller_status', 'withdrawals', ['seller_user_id', 'status'])


def downgrade() -> None:
    """Drop all marketplace tables"""
    op.drop_table('withdrawals')
    op.drop_table('wallet_transactions')
    op.drop_index('uq_return_requests_open', table_name='return_requests')
    op.drop_table('return_requests')
    op.drop_table('shipment_events')
    op.drop_table('order_shipments')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('coupon_redemptions')
    op.drop_table('coupons')
    op.drop_table('products')
    op.drop_table('seller_profiles')
    op.drop_table('users')
