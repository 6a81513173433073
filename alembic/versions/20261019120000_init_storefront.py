from alembic import op
import sqlalchemy as sa

revision = "20261019120000"
down_revision = None

UTC_NOW = sa.text("(now() at time zone 'utc')")

def upgrade():
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(length=240), nullable=False),
        sa.Column('category', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('price_cents', sa.BigInteger(), nullable=False),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_nonnegative'),
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('shopper_id', sa.String(length=255), nullable=True, index=True),
        sa.Column('cart_id', sa.String(length=64), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=False),
        sa.Column('customer_phone', sa.String(length=64), nullable=False, server_default=''),
        sa.Column('address', sa.String(length=255), nullable=False),
        sa.Column('city', sa.String(length=120), nullable=False),
        sa.Column('postcode', sa.String(length=32), nullable=False, server_default=''),
        sa.Column('phone', sa.String(length=64), nullable=False, server_default=''),
        sa.Column('notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('shipment_method', sa.String(length=32), nullable=False),
        sa.Column('order_status', sa.String(length=32), nullable=False, server_default='Pending'),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='Pending', index=True),
        sa.Column('original_cents', sa.BigInteger(), nullable=False),
        sa.Column('discount_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='KES'),
        sa.Column('gateway_reference', sa.String(length=100), nullable=True, unique=True),
        sa.Column('redirect_url', sa.String(length=1024), nullable=True),
        sa.Column('authorization_token', sa.String(length=255), nullable=True),
        sa.Column('coupon_code', sa.String(length=64), nullable=True),
        sa.Column('confirm_claim', sa.String(length=64), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('inventory_committed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stock_shortfall', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_orphaned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
    )
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('title_snapshot', sa.String(length=255), nullable=False),
        sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
        sa.Column('size', sa.String(length=32), nullable=False, server_default=''),
        sa.Column('qty', sa.Integer(), nullable=False),
    )
    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
        sa.UniqueConstraint('order_id', 'product_id', name='uq_stock_movement_order_product'),
    )
    op.create_table(
        'coupons',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=64), nullable=False, unique=True, index=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('discount_type', sa.String(length=32), nullable=False, server_default='percentage'),
        sa.Column('value', sa.BigInteger(), nullable=False),
        sa.Column('customer_type', sa.String(length=32), nullable=False, server_default='general'),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('per_user_limit', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('minimum_order_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('valid_from', sa.DateTime(), nullable=False, server_default=UTC_NOW),
        sa.Column('valid_until', sa.DateTime(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('applicable_categories', sa.JSON(), nullable=False),
        sa.Column('excluded_categories', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
    )
    op.create_table(
        'coupon_usages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('coupon_id', sa.Integer(), sa.ForeignKey('coupons.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('shopper_id', sa.String(length=255), nullable=True, index=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('discount_cents', sa.BigInteger(), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
        sa.UniqueConstraint('coupon_id', 'order_id', name='uq_coupon_usage_order'),
    )
    op.create_table(
        'newsletter_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False, unique=True, index=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
    )

def downgrade():
    op.drop_table('newsletter_subscriptions')
    op.drop_table('coupon_usages')
    op.drop_table('coupons')
    op.drop_table('stock_movements')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('products')
