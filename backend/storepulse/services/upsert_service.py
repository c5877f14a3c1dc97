"""Entity upsert layer for customers, orders, products and refunds.

WHAT:
    Idempotent create-or-update of the denormalized store entities from
    webhook (or backfill) payloads, keyed by (tenant_id, Shopify id).

WHY:
    Webhooks are at-least-once and unordered, and several handlers may run
    concurrently for the same tenant. Every write is therefore a single
    INSERT ... ON CONFLICT DO UPDATE or a set-based UPDATE; nothing here
    reads a row, changes it in Python and writes it back.

POLICY:
    - Customer: profile fields follow the latest payload (a field missing
      from a partial payload keeps its stored value). total_spent and
      orders_count are seeded from the payload on insert only and are
      afterwards recomputed from the orders table.
    - Order: total/currency/raw_json overwritten on every upsert; the
      customer link is kept when a later payload omits it.
    - Product: overwritten by product events; line items from orders and
      checkouts refresh title/vendor/price only.
    - Refund: amount = sum(transactions) or else sum(refund line items).

Functions here do not commit; callers own the transaction.

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/queryguide/dml.html#orm-upsert-statements
    - storepulse/webhooks/dispatcher.py
    - storepulse/services/shopify_sync_service.py
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from storepulse.models import Customer, Order, Product, Refund, utcnow
from storepulse.webhooks.payloads import (
    CustomerPayload,
    LineItemPayload,
    OrderPayload,
    ProductPayload,
    RefundPayload,
)

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"


# =============================================================================
# HELPERS
# =============================================================================

def dialect_insert(db: Session, model):
    """Return an INSERT supporting on_conflict_do_update for the bound dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upserts are not supported on {dialect}")


def refund_amount(payload: RefundPayload) -> Decimal:
    """Refunded amount: transactions first, refund line items as fallback."""
    transactions_total = sum((t.amount for t in payload.transactions), Decimal("0"))
    if transactions_total:
        return transactions_total
    return sum((li.subtotal for li in payload.refund_line_items), Decimal("0"))


# =============================================================================
# CUSTOMERS
# =============================================================================

def _email_taken(db: Session, tenant_id: UUID, email: str, external_customer_id: str) -> bool:
    return db.execute(
        select(Customer.id).where(
            Customer.tenant_id == tenant_id,
            Customer.email == email,
            Customer.external_customer_id != external_customer_id,
        ).limit(1)
    ).first() is not None


def upsert_customer(
    db: Session,
    tenant_id: UUID,
    payload: CustomerPayload,
    raw: Optional[Dict[str, Any]] = None,
) -> str:
    """Create or update a customer; returns the Shopify customer id.

    An email already held by another customer of the tenant is not written;
    the row is stored without it so the surrounding order or sync item is kept.
    """
    now = utcnow()
    table = Customer.__table__
    email = payload.email or None
    if email and _email_taken(db, tenant_id, email, payload.id):
        logger.warning(
            f"[UPSERT] Customer {payload.id} email already used by another customer "
            f"(tenant {tenant_id}); storing without email"
        )
        email = None

    stmt = dialect_insert(db, Customer).values(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        external_customer_id=payload.id,
        email=email,
        first_name=payload.first_name,
        last_name=payload.last_name,
        total_spent=payload.total_spent or Decimal("0"),
        orders_count=payload.orders_count or 0,
        raw_json=raw,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["tenant_id", "external_customer_id"],
        set_={
            "email": func.coalesce(stmt.excluded.email, table.c.email),
            "first_name": func.coalesce(stmt.excluded.first_name, table.c.first_name),
            "last_name": func.coalesce(stmt.excluded.last_name, table.c.last_name),
            "raw_json": stmt.excluded.raw_json,
            "updated_at": now,
        },
    )
    db.execute(stmt)
    return payload.id


def recompute_customer_totals(db: Session, tenant_id: UUID, external_customer_id: str) -> None:
    """Set total_spent/orders_count from the customer's current orders."""
    order_filter = (
        Order.tenant_id == tenant_id,
        Order.external_customer_id == external_customer_id,
    )
    total_spent = select(func.coalesce(func.sum(Order.total), 0)).where(*order_filter).scalar_subquery()
    orders_count = select(func.count(Order.id)).where(*order_filter).scalar_subquery()

    db.execute(
        update(Customer)
        .where(
            Customer.tenant_id == tenant_id,
            Customer.external_customer_id == external_customer_id,
        )
        .values(total_spent=total_spent, orders_count=orders_count, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


def recompute_all_customer_totals(db: Session, tenant_id: UUID) -> int:
    """Recompute aggregates for every customer of a tenant in one statement.

    Returns:
        Number of customers updated
    """
    order_filter = (
        Order.tenant_id == Customer.tenant_id,
        Order.external_customer_id == Customer.external_customer_id,
    )
    total_spent = select(func.coalesce(func.sum(Order.total), 0)).where(*order_filter).scalar_subquery()
    orders_count = select(func.count(Order.id)).where(*order_filter).scalar_subquery()

    result = db.execute(
        update(Customer)
        .where(Customer.tenant_id == tenant_id)
        .values(total_spent=total_spent, orders_count=orders_count, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


# =============================================================================
# PRODUCTS
# =============================================================================

def upsert_product(
    db: Session,
    tenant_id: UUID,
    payload: ProductPayload,
    raw: Optional[Dict[str, Any]] = None,
) -> str:
    """Create or fully overwrite a product from a product event."""
    now = utcnow()
    price = payload.variants[0].price if payload.variants else None

    stmt = dialect_insert(db, Product).values(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        external_product_id=payload.id,
        title=payload.title or "",
        vendor=payload.vendor,
        product_type=payload.product_type,
        price=price,
        raw_json=raw,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["tenant_id", "external_product_id"],
        set_={
            "title": stmt.excluded.title,
            "vendor": stmt.excluded.vendor,
            "product_type": stmt.excluded.product_type,
            "price": stmt.excluded.price,
            "raw_json": stmt.excluded.raw_json,
            "updated_at": now,
        },
    )
    db.execute(stmt)
    return payload.id


def upsert_products_from_line_items(db: Session, tenant_id: UUID, line_items: Iterable[LineItemPayload]) -> int:
    """Refresh title/vendor/price of products referenced by line items.

    Returns:
        Number of distinct products upserted
    """
    # Last occurrence wins; one statement per product keeps each
    # ON CONFLICT from touching the same row twice
    by_product: Dict[str, LineItemPayload] = {}
    for item in line_items:
        if item.product_id:
            by_product[item.product_id] = item

    table = Product.__table__
    now = utcnow()
    for product_id, item in by_product.items():
        stmt = dialect_insert(db, Product).values(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            external_product_id=product_id,
            title=item.title or "",
            vendor=item.vendor,
            price=item.price,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "external_product_id"],
            set_={
                "title": func.coalesce(func.nullif(stmt.excluded.title, ""), table.c.title),
                "vendor": func.coalesce(stmt.excluded.vendor, table.c.vendor),
                "price": func.coalesce(stmt.excluded.price, table.c.price),
                "updated_at": now,
            },
        )
        db.execute(stmt)

    return len(by_product)


# =============================================================================
# ORDERS
# =============================================================================

def upsert_order(
    db: Session,
    tenant_id: UUID,
    payload: OrderPayload,
    raw: Optional[Dict[str, Any]] = None,
) -> str:
    """Upsert an order with its customer and line-item products.

    WHAT:
        1. Upsert the embedded customer (if any)
        2. Upsert the order row
        3. Refresh products referenced by line items
        4. Recompute aggregates for the customer(s) the order belongs to

    WHY:
        The customer's totals must equal the sum of its orders after every
        order upsert. If an update moves the order to another customer, the
        previous customer's totals are recomputed as well.

    Returns:
        The Shopify order id
    """
    customer_id = None
    if payload.customer is not None:
        customer_raw = raw.get("customer") if isinstance(raw, dict) else None
        customer_id = upsert_customer(db, tenant_id, payload.customer, customer_raw)

    previous_customer_id = db.execute(
        select(Order.external_customer_id).where(
            Order.tenant_id == tenant_id,
            Order.external_order_id == payload.id,
        )
    ).scalar_one_or_none()

    now = utcnow()
    table = Order.__table__
    stmt = dialect_insert(db, Order).values(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        external_order_id=payload.id,
        order_number=payload.order_number,
        external_customer_id=customer_id,
        total=payload.total_price,
        currency=payload.currency or DEFAULT_CURRENCY,
        checkout_token=payload.checkout_token,
        raw_json=raw,
        created_at=payload.created_at or now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["tenant_id", "external_order_id"],
        set_={
            "total": stmt.excluded.total,
            "currency": stmt.excluded.currency,
            "order_number": func.coalesce(stmt.excluded.order_number, table.c.order_number),
            "external_customer_id": func.coalesce(stmt.excluded.external_customer_id, table.c.external_customer_id),
            "checkout_token": func.coalesce(stmt.excluded.checkout_token, table.c.checkout_token),
            "raw_json": stmt.excluded.raw_json,
            "updated_at": now,
        },
    )
    db.execute(stmt)

    upsert_products_from_line_items(db, tenant_id, payload.line_items)

    for affected in {customer_id, previous_customer_id}:
        if affected:
            recompute_customer_totals(db, tenant_id, affected)

    logger.debug(f"[UPSERT] Order {payload.id} upserted for tenant {tenant_id}")
    return payload.id


# =============================================================================
# REFUNDS
# =============================================================================

def upsert_refund(
    db: Session,
    tenant_id: UUID,
    payload: RefundPayload,
    raw: Optional[Dict[str, Any]] = None,
) -> str:
    """Create or overwrite a refund; the last processed event wins."""
    now = utcnow()
    currency = next((t.currency for t in payload.transactions[:1] if t.currency), DEFAULT_CURRENCY)

    stmt = dialect_insert(db, Refund).values(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        shopify_refund_id=payload.id,
        shopify_order_id=payload.order_id,
        amount=refund_amount(payload),
        currency=currency,
        reason=payload.note,
        raw_json=raw,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["tenant_id", "shopify_refund_id"],
        set_={
            "shopify_order_id": stmt.excluded.shopify_order_id,
            "amount": stmt.excluded.amount,
            "currency": stmt.excluded.currency,
            "reason": stmt.excluded.reason,
            "raw_json": stmt.excluded.raw_json,
            "updated_at": now,
        },
    )
    db.execute(stmt)
    return payload.id
