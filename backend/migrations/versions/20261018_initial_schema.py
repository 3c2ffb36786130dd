"""Initial schema: offers, inventory holds, orders, payments, waitlist, quality badge

Revision ID: 20261018_initial
Revises:
Create Date: 2026-10-18

This migration creates:
1. businesses (with quality badge fields) and reviews
2. offers (quantity_available >= 0 enforced by CHECK)
3. reservations and availability_events (inventory ledger)
4. cart_items (unique per customer/offer) and carts (single-business claim)
5. orders, order_items, order_events (append-only audit)
6. payments (unique provider reference)
7. waitlist_subscriptions and waitlist_notification_logs (anti-spam bucket key)
8. security_events
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. BUSINESSES
    # ==========================================================================
    op.create_table('businesses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('quality_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('total_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('repeat_customers', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('avg_rating', sa.Float(), nullable=False, server_default='0'),
        sa.Column('is_top', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('quality_updated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_businesses_location', 'businesses', ['latitude', 'longitude'])
    op.create_index('ix_businesses_is_top', 'businesses', ['is_top'])

    # ==========================================================================
    # 2. OFFERS
    # ==========================================================================
    op.create_table('offers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('business_id', sa.Integer(), sa.ForeignKey('businesses.id'), nullable=False),
        sa.Column('category_id', sa.Integer(), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('original_price_cents', sa.Integer(), nullable=False),
        sa.Column('discounted_price_cents', sa.Integer(), nullable=False),
        sa.Column('quantity_available', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pickup_time_start', sa.Time(), nullable=False),
        sa.Column('pickup_time_end', sa.Time(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('publish_at', sa.DateTime(), nullable=True),
        sa.Column('unpublish_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('quantity_available >= 0', name='ck_offers_quantity_nonnegative'),
        sa.CheckConstraint('discounted_price_cents <= original_price_cents', name='ck_offers_discount_le_original'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_offers_business_id', 'offers', ['business_id'])
    op.create_index('ix_offers_category_id', 'offers', ['category_id'])
    op.create_index('ix_offers_is_active', 'offers', ['is_active'])
    op.create_index('ix_offers_publish_at', 'offers', ['publish_at'])
    op.create_index('ix_offers_unpublish_at', 'offers', ['unpublish_at'])
    op.create_index('ix_offers_business_active', 'offers', ['business_id', 'is_active'])

    # ==========================================================================
    # 3. ORDERS
    # ==========================================================================
    op.create_table('orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('business_id', sa.Integer(), sa.ForeignKey('businesses.id'), nullable=False),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='draft'),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('service_fee_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pickup_time_start', sa.Time(), nullable=True),
        sa.Column('pickup_time_end', sa.Time(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('pickup_code', sa.String(length=16), nullable=True),
        sa.Column('pickup_verified_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('ready_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint(
            "status IN ('draft', 'confirmed', 'paid', 'ready_for_pickup', 'completed', 'cancelled')",
            name='ck_orders_status_valid',
        ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_business_id', 'orders', ['business_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_customer_created', 'orders', ['customer_id', 'created_at'])
    op.create_index('ix_orders_business_status', 'orders', ['business_id', 'status'])

    # ==========================================================================
    # 4. INVENTORY LEDGER
    # ==========================================================================
    op.create_table('reservations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('token', sa.String(length=36), nullable=False),
        sa.Column('offer_id', sa.Integer(), sa.ForeignKey('offers.id'), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='HELD'),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('committed_at', sa.DateTime(), nullable=True),
        sa.Column('released_at', sa.DateTime(), nullable=True),
        sa.Column('release_reason', sa.String(length=64), nullable=True),
        sa.CheckConstraint('quantity > 0', name='ck_reservations_quantity_positive'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_reservations_offer_id', 'reservations', ['offer_id'])
    op.create_index('ix_reservations_order_id', 'reservations', ['order_id'])
    op.create_index('ix_reservations_status', 'reservations', ['status'])
    op.create_index('ix_reservations_status_expires', 'reservations', ['status', 'expires_at'])

    op.create_table('availability_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('offer_id', sa.Integer(), sa.ForeignKey('offers.id'), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('quantity_before', sa.Integer(), nullable=False),
        sa.Column('quantity_after', sa.Integer(), nullable=False),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_availability_events_offer_id', 'availability_events', ['offer_id'])
    op.create_index('ix_availability_events_pending', 'availability_events', ['processed_at', 'id'])

    # ==========================================================================
    # 5. CART AND ORDER LINES
    # ==========================================================================
    op.create_table('cart_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('offer_id', sa.Integer(), sa.ForeignKey('offers.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('quantity > 0', name='ck_cart_items_quantity_positive'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('customer_id', 'offer_id', name='uq_cart_items_customer_offer'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_cart_items_customer_id', 'cart_items', ['customer_id'])

    op.create_table('carts',
        sa.Column('customer_id', sa.Integer(), autoincrement=False, nullable=False),
        sa.Column('business_id', sa.Integer(), sa.ForeignKey('businesses.id'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('customer_id'),
    )

    op.create_table('order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('offer_id', sa.Integer(), sa.ForeignKey('offers.id'), nullable=False),
        sa.Column('reservation_id', sa.Integer(), sa.ForeignKey('reservations.id'), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('line_total_cents', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_offer_id', 'order_items', ['offer_id'])

    op.create_table('order_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('from_status', sa.String(length=24), nullable=True),
        sa.Column('to_status', sa.String(length=24), nullable=True),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('actor_type', sa.String(length=16), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_order_events_order_id', 'order_events', ['order_id'])
    op.create_index('ix_order_events_event_type', 'order_events', ['event_type'])
    op.create_index('ix_order_events_order_created', 'order_events', ['order_id', 'created_at'])

    # ==========================================================================
    # 6. PAYMENTS
    # ==========================================================================
    op.create_table('payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='RUB'),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('idempotence_key', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_reference', sa.String(length=128), nullable=True),
        sa.Column('confirmation_url', sa.String(length=1024), nullable=True),
        sa.Column('return_url', sa.String(length=1024), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('refund_required', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotence_key'),
        sa.UniqueConstraint('provider_reference', name='uq_payments_provider_reference'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])
    op.create_index('ix_payments_customer_id', 'payments', ['customer_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_status_created', 'payments', ['status', 'created_at'])

    # ==========================================================================
    # 7. WAITLIST
    # ==========================================================================
    op.create_table('waitlist_subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('scope_type', sa.String(length=16), nullable=False),
        sa.Column('scope_id', sa.Integer(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('radius_km', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_waitlist_subscriptions_user_id', 'waitlist_subscriptions', ['user_id'])
    op.create_index('ix_waitlist_subscriptions_scope', 'waitlist_subscriptions', ['scope_type', 'scope_id'])
    op.create_index('ix_waitlist_subscriptions_area', 'waitlist_subscriptions', ['scope_type', 'latitude'])

    op.create_table('waitlist_notification_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('offer_id', sa.Integer(), sa.ForeignKey('offers.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('notification_type', sa.String(length=32), nullable=False),
        sa.Column('matched_scope', sa.String(length=16), nullable=False),
        sa.Column('time_bucket', sa.Integer(), nullable=False),
        sa.Column('delivered', sa.Boolean(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('offer_id', 'user_id', 'notification_type', 'time_bucket',
                            name='uq_waitlist_notification_bucket'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_waitlist_notification_logs_user_id', 'waitlist_notification_logs', ['user_id'])
    op.create_index('ix_waitlist_notification_offer_user_sent', 'waitlist_notification_logs',
                    ['offer_id', 'user_id', 'sent_at'])

    # ==========================================================================
    # 8. REVIEWS AND SECURITY EVENTS
    # ==========================================================================
    op.create_table('reviews',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('business_id', sa.Integer(), sa.ForeignKey('businesses.id'), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('is_published', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('rating >= 1 AND rating <= 5', name='ck_reviews_rating_range'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', name='uq_reviews_order'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_reviews_business_id', 'reviews', ['business_id'])
    op.create_index('ix_reviews_user_id', 'reviews', ['user_id'])

    op.create_table('security_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('actor_type', sa.String(length=16), nullable=True),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('resource', sa.String(length=128), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_security_events_event_type', 'security_events', ['event_type'])
    op.create_index('ix_security_events_occurred_at', 'security_events', ['occurred_at'])
    op.create_index('ix_security_events_type_occurred', 'security_events', ['event_type', 'occurred_at'])


def downgrade():
    for table in (
        'security_events',
        'reviews',
        'waitlist_notification_logs',
        'waitlist_subscriptions',
        'payments',
        'order_events',
        'order_items',
        'carts',
        'cart_items',
        'availability_events',
        'reservations',
        'orders',
        'offers',
        'businesses',
    ):
        op.drop_table(table)
