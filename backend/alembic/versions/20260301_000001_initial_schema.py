"""Initial schema: tenants, store entities, checkouts, refunds

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 09:00:00.000000

WHAT:
    Creates the multi-tenant ingestion schema:
    - tenants: registered Shopify stores (webhook secret, API token)
    - customers / orders / products: denormalized store entities
    - checkouts: checkout state machine (PENDING/COMPLETED/ABANDONED)
    - refunds: refunds against orders

WHY:
    Every uniqueness constraint includes tenant_id so the same Shopify id in
    two stores never collides; the upsert layer relies on these constraints
    as ON CONFLICT targets.

REFERENCES:
    - storepulse/models.py
    - storepulse/services/upsert_service.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


def _uuid():
    return postgresql.UUID(as_uuid=True)


def _tenant_fk():
    return sa.Column(
        'tenant_id', _uuid(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False,
    )


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # =========================================================================
    # STEP 1: tenants
    # =========================================================================
    op.create_table(
        'tenants',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('shop_domain', sa.String(), nullable=False, unique=True),
        sa.Column('webhook_secret', sa.String(), nullable=False),
        sa.Column('access_token', sa.String(), nullable=True),
        *_timestamps(),
    )

    # =========================================================================
    # STEP 2: customers
    # =========================================================================
    # WHAT: Customer master with derived totals
    # WHY: Email is unique per tenant but nullable (guests)
    op.create_table(
        'customers',
        sa.Column('id', _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column('external_customer_id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('total_spent', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('orders_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('raw_json', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'external_customer_id', name='uq_customer_external_id'),
        sa.UniqueConstraint('tenant_id', 'email', name='uq_customer_email'),
    )

    # =========================================================================
    # STEP 3: orders
    # =========================================================================
    # WHAT: Order facts; customer reference is weak (no FK)
    # WHY: orders/create can arrive before customers/create
    op.create_table(
        'orders',
        sa.Column('id', _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column('external_order_id', sa.String(), nullable=False),
        sa.Column('order_number', sa.Integer(), nullable=True),
        sa.Column('external_customer_id', sa.String(), nullable=True),
        sa.Column('total', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(), nullable=False, server_default='USD'),
        sa.Column('checkout_token', sa.String(), nullable=True),
        sa.Column('raw_json', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'external_order_id', name='uq_order_external_id'),
    )
    op.create_index('ix_orders_tenant_created_at', 'orders', ['tenant_id', 'created_at'])
    op.create_index('ix_orders_tenant_customer', 'orders', ['tenant_id', 'external_customer_id'])

    # =========================================================================
    # STEP 4: products
    # =========================================================================
    op.create_table(
        'products',
        sa.Column('id', _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column('external_product_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('vendor', sa.String(), nullable=True),
        sa.Column('product_type', sa.String(), nullable=True),
        sa.Column('price', sa.Numeric(18, 4), nullable=True),
        sa.Column('raw_json', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'external_product_id', name='uq_product_external_id'),
    )

    # =========================================================================
    # STEP 5: checkouts (+ checkout_status enum)
    # =========================================================================
    # WHAT: Checkout lifecycle for conversion/abandonment analytics
    # WHY: Status + created_at index serves the abandonment sweep
    checkout_status = postgresql.ENUM('PENDING', 'COMPLETED', 'ABANDONED', name='checkout_status')
    op.create_table(
        'checkouts',
        sa.Column('id', _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column('shopify_checkout_id', sa.String(), nullable=False),
        sa.Column('shopify_cart_token', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('total_price', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(), nullable=False, server_default='USD'),
        sa.Column('line_items_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', checkout_status, nullable=False, server_default='PENDING'),
        sa.Column('raw_json', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('abandoned_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('tenant_id', 'shopify_checkout_id', name='uq_checkout_shopify_id'),
    )
    op.create_index('ix_checkouts_tenant_status', 'checkouts', ['tenant_id', 'status'])
    op.create_index('ix_checkouts_tenant_created_at', 'checkouts', ['tenant_id', 'created_at'])
    op.create_index('ix_checkouts_tenant_cart_token', 'checkouts', ['tenant_id', 'shopify_cart_token'])

    # =========================================================================
    # STEP 6: refunds
    # =========================================================================
    op.create_table(
        'refunds',
        sa.Column('id', _uuid(), primary_key=True),
        _tenant_fk(),
        sa.Column('shopify_refund_id', sa.String(), nullable=False),
        sa.Column('shopify_order_id', sa.String(), nullable=True),
        sa.Column('amount', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(), nullable=False, server_default='USD'),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('raw_json', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'shopify_refund_id', name='uq_refund_shopify_id'),
    )
    op.create_index('ix_refunds_tenant_created_at', 'refunds', ['tenant_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_refunds_tenant_created_at', table_name='refunds')
    op.drop_table('refunds')

    op.drop_index('ix_checkouts_tenant_cart_token', table_name='checkouts')
    op.drop_index('ix_checkouts_tenant_created_at', table_name='checkouts')
    op.drop_index('ix_checkouts_tenant_status', table_name='checkouts')
    op.drop_table('checkouts')
    op.execute("DROP TYPE IF EXISTS checkout_status")

    op.drop_table('products')

    op.drop_index('ix_orders_tenant_customer', table_name='orders')
    op.drop_index('ix_orders_tenant_created_at', table_name='orders')
    op.drop_table('orders')

    op.drop_table('customers')
    op.drop_table('tenants')
