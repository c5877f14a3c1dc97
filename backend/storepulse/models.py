"""SQLAlchemy ORM models and enums.

Every store entity is tenant-scoped: each row carries a `tenant_id` and all
uniqueness constraints include it. Source-system identifiers (Shopify ids)
are stored as strings in `external_*_id` columns; references between store
entities (order -> customer, refund -> order) are weak lookups by those ids
with no enforced foreign key, because Shopify does not guarantee the
delivery order of related webhooks.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Text, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.utcnow()


# Enums ---------------------------------------------------------

class CheckoutStatusEnum(str, enum.Enum):
    """Checkout lifecycle state.

    WHAT: PENDING -> COMPLETED | ABANDONED
    WHY: Conversion and abandonment analytics are derived from these states.
         COMPLETED is terminal; ABANDONED can still be recovered to COMPLETED
         by a completion signal (checkout completed_at or a matching order).
    """
    pending = "PENDING"
    completed = "COMPLETED"
    abandoned = "ABANDONED"


# Tenants -------------------------------------------------------

class Tenant(Base):
    """A registered Shopify store.

    WHAT: Unit of data partitioning; owns the webhook secret and API token
    WHY: Webhooks are attributed to a tenant by X-Shopify-Shop-Domain and
         authenticated with that tenant's secret
    """
    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    shop_domain = Column(String, nullable=False, unique=True)  # e.g., "mystore.myshopify.com"
    webhook_secret = Column(String, nullable=False)  # HMAC key for inbound webhooks
    access_token = Column(String, nullable=True)  # Admin API token; gates backfill sync

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    customers = relationship("Customer", back_populates="tenant", cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="tenant", cascade="all, delete-orphan")
    products = relationship("Product", back_populates="tenant", cascade="all, delete-orphan")
    checkouts = relationship("Checkout", back_populates="tenant", cascade="all, delete-orphan")
    refunds = relationship("Refund", back_populates="tenant", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.name} ({self.shop_domain})"


# Store entities ------------------------------------------------
# WHAT: Denormalized copies of Shopify customers, orders, products, refunds
# WHY: Analytics read from local state; webhooks keep it fresh, backfill
#      sync repairs drift

class Customer(Base):
    """Customer with derived lifetime totals.

    WHAT: Latest profile fields from Shopify plus order aggregates
    WHY: total_spent/orders_count are recomputed from the orders table after
         every order upsert; payload totals only seed a brand-new row
    """
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_customer_id", name="uq_customer_external_id"),
        UniqueConstraint("tenant_id", "email", name="uq_customer_email"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)

    external_customer_id = Column(String, nullable=False)  # Shopify customer id

    email = Column(String, nullable=True)  # Null for guests / customers without email
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)

    total_spent = Column(Numeric(18, 4), nullable=False, default=0)
    orders_count = Column(Integer, nullable=False, default=0)

    raw_json = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Tenant", back_populates="customers")

    def __str__(self):
        name = f"{self.first_name or ''} {self.last_name or ''}".strip() or "Guest"
        return f"{name} ({self.email or 'No email'}) - ${self.total_spent}"


class Order(Base):
    """Order facts with the raw payload retained for replay."""
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_order_id", name="uq_order_external_id"),
        Index("ix_orders_tenant_created_at", "tenant_id", "created_at"),
        Index("ix_orders_tenant_customer", "tenant_id", "external_customer_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)

    external_order_id = Column(String, nullable=False)  # Shopify order id
    order_number = Column(Integer, nullable=True)  # Human-readable (#1001)

    # Weak reference to Customer.external_customer_id (no FK)
    external_customer_id = Column(String, nullable=True)

    total = Column(Numeric(18, 4), nullable=False, default=0)
    currency = Column(String, nullable=False, default="USD")

    # Correlates the order with Checkout.shopify_checkout_id
    checkout_token = Column(String, nullable=True)

    raw_json = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)  # Order placed at (Shopify created_at)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Tenant", back_populates="orders")

    def __str__(self):
        return f"Order #{self.order_number or self.external_order_id} - ${self.total}"


class Product(Base):
    """Product catalog entry.

    Created either by products/* webhooks or opportunistically from order and
    checkout line items (title, vendor, price only).
    """
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_product_id", name="uq_product_external_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)

    external_product_id = Column(String, nullable=False)  # Shopify product id

    title = Column(String, nullable=False)
    vendor = Column(String, nullable=True)
    product_type = Column(String, nullable=True)
    price = Column(Numeric(18, 4), nullable=True)  # First variant price

    raw_json = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Tenant", back_populates="products")

    def __str__(self):
        return f"{self.title} (${self.price})"


class Checkout(Base):
    """Checkout tracked through the abandonment state machine.

    WHAT: One row per (tenant, Shopify checkout token)
    WHY: Conversion vs. abandonment analytics
    INVARIANT: completed_at is set only when status=COMPLETED, abandoned_at
               only when status=ABANDONED
    """
    __tablename__ = "checkouts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "shopify_checkout_id", name="uq_checkout_shopify_id"),
        Index("ix_checkouts_tenant_status", "tenant_id", "status"),
        Index("ix_checkouts_tenant_created_at", "tenant_id", "created_at"),
        Index("ix_checkouts_tenant_cart_token", "tenant_id", "shopify_cart_token"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)

    shopify_checkout_id = Column(String, nullable=False)  # Checkout token (matches order.checkout_token)
    shopify_cart_token = Column(String, nullable=True)  # Correlation key for carts/* events

    email = Column(String, nullable=True)
    total_price = Column(Numeric(18, 4), nullable=False, default=0)
    currency = Column(String, nullable=False, default="USD")
    line_items_count = Column(Integer, nullable=False, default=0)

    status = Column(
        Enum(CheckoutStatusEnum, name="checkout_status", values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=CheckoutStatusEnum.pending,
    )

    raw_json = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)  # Drives abandonment age
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)  # Liveness (cart events)
    completed_at = Column(DateTime, nullable=True)
    abandoned_at = Column(DateTime, nullable=True)

    tenant = relationship("Tenant", back_populates="checkouts")

    def __str__(self):
        return f"Checkout {self.shopify_checkout_id} [{self.status}]"


class Refund(Base):
    """Refund issued against an order (weak reference by Shopify order id)."""
    __tablename__ = "refunds"
    __table_args__ = (
        UniqueConstraint("tenant_id", "shopify_refund_id", name="uq_refund_shopify_id"),
        Index("ix_refunds_tenant_created_at", "tenant_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)

    shopify_refund_id = Column(String, nullable=False)
    shopify_order_id = Column(String, nullable=True)

    amount = Column(Numeric(18, 4), nullable=False, default=0)
    currency = Column(String, nullable=False, default="USD")
    reason = Column(Text, nullable=True)  # Merchant note

    raw_json = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Tenant", back_populates="refunds")

    def __str__(self):
        return f"Refund {self.shopify_refund_id} - ${self.amount}"
