"""Checkout state machine.

WHAT:
    Tracks each checkout through PENDING -> COMPLETED | ABANDONED, driven by
    three independent webhook streams plus the abandonment sweep:

    ┌───────────────┐ completed_at / matching order ┌─────────────┐
    │    PENDING    │──────────────────────────────▶│  COMPLETED  │
    └───────┬───────┘                               └─────────────┘
            │ sweep (age > threshold)                      ▲
            ▼                                              │
    ┌───────────────┐ completed_at / matching order        │
    │   ABANDONED   │──────────────────────────────────────┘
    └───────────────┘

    - checkouts/*  : upsert by (tenant, checkout id); completed_at => COMPLETED
    - carts/*      : refresh updated_at of checkouts sharing the cart token
    - orders/*     : complete the checkout whose id matches checkout_token
    - sweeper      : storepulse/services/abandonment_service.py

WHY:
    Events arrive unordered and may be processed concurrently, so every
    transition is a single conditional statement. COMPLETED is never left
    once reached. A checkouts/update without completion does not reopen an
    ABANDONED checkout: its age already exceeds the threshold, so reopening
    would only flap it back on the next sweep. Completion signals do recover
    an ABANDONED checkout.

Functions here do not commit; callers own the transaction.

REFERENCES:
    - https://shopify.dev/docs/api/admin-rest/latest/resources/abandoned-checkouts
    - storepulse/services/upsert_service.py (dialect_insert)
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional, Set
from uuid import UUID

from sqlalchemy import exists, func, update
from sqlalchemy.orm import Session

from storepulse.models import Checkout, CheckoutStatusEnum, Order, utcnow
from storepulse.services.upsert_service import (
    DEFAULT_CURRENCY,
    dialect_insert,
    upsert_products_from_line_items,
)
from storepulse.webhooks.payloads import CheckoutPayload, OrderPayload

logger = logging.getLogger(__name__)


def _checkout_keys(*candidates: Optional[str]) -> Set[str]:
    return {c for c in candidates if c}


def apply_checkout_event(
    db: Session,
    tenant_id: UUID,
    payload: CheckoutPayload,
    raw: Optional[Dict[str, Any]] = None,
) -> str:
    """Create or update a checkout from a checkouts/create|update event.

    Financial fields always follow the latest payload. Status handling:
    - completed_at present: COMPLETED with that completed_at
    - completed_at absent: new rows start PENDING, existing rows keep their
      status (COMPLETED and ABANDONED are not reopened)

    After the upsert, a checkout whose order already arrived is completed.

    Returns:
        The Shopify checkout id
    """
    now = utcnow()
    table = Checkout.__table__
    is_completed = payload.completed_at is not None
    line_items_count = sum((item.quantity or 1) for item in payload.line_items)

    stmt = dialect_insert(db, Checkout).values(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        shopify_checkout_id=payload.id,
        shopify_cart_token=payload.cart_token,
        email=payload.email,
        total_price=payload.total_price,
        currency=payload.currency or DEFAULT_CURRENCY,
        line_items_count=line_items_count,
        status=CheckoutStatusEnum.completed if is_completed else CheckoutStatusEnum.pending,
        completed_at=payload.completed_at,
        abandoned_at=None,
        raw_json=raw,
        created_at=payload.created_at or now,
        updated_at=now,
    )

    set_ = {
        "shopify_cart_token": func.coalesce(stmt.excluded.shopify_cart_token, table.c.shopify_cart_token),
        "email": func.coalesce(stmt.excluded.email, table.c.email),
        "total_price": stmt.excluded.total_price,
        "currency": stmt.excluded.currency,
        "line_items_count": stmt.excluded.line_items_count,
        "raw_json": stmt.excluded.raw_json,
        "updated_at": now,
    }
    if is_completed:
        # Last completion processed wins, including over an order-driven one
        set_.update(
            status=CheckoutStatusEnum.completed,
            completed_at=stmt.excluded.completed_at,
            abandoned_at=None,
        )

    db.execute(stmt.on_conflict_do_update(index_elements=["tenant_id", "shopify_checkout_id"], set_=set_))

    upsert_products_from_line_items(db, tenant_id, payload.line_items)

    if not is_completed:
        complete_if_order_exists(db, tenant_id, payload.id, _checkout_keys(payload.id, payload.token))

    logger.debug(
        "[CHECKOUT] Checkout %s upserted for tenant %s (completed=%s)",
        payload.id, tenant_id, is_completed,
    )
    return payload.id


def complete_if_order_exists(db: Session, tenant_id: UUID, checkout_id: str, order_tokens: Set[str]) -> int:
    """Complete a checkout when an order carrying its token is already stored.

    Covers the order-before-checkout arrival order.
    """
    if not order_tokens:
        return 0

    now = utcnow()
    order_exists = exists().where(
        Order.tenant_id == tenant_id,
        Order.checkout_token.in_(order_tokens),
    )
    result = db.execute(
        update(Checkout)
        .where(
            Checkout.tenant_id == tenant_id,
            Checkout.shopify_checkout_id == checkout_id,
            Checkout.status != CheckoutStatusEnum.completed,
            order_exists,
        )
        .values(
            status=CheckoutStatusEnum.completed,
            completed_at=now,
            abandoned_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("[CHECKOUT] Checkout %s completed by existing order (tenant %s)", checkout_id, tenant_id)
    return result.rowcount or 0


def complete_checkout_for_order(db: Session, tenant_id: UUID, payload: OrderPayload) -> int:
    """Complete the checkout an order was placed from.

    Matches Checkout.shopify_checkout_id against the order's checkout_token
    (and checkout_id). Already COMPLETED checkouts are left untouched.

    Returns:
        Number of checkouts transitioned (0 or 1)
    """
    keys = _checkout_keys(payload.checkout_token, payload.checkout_id)
    if not keys:
        return 0

    now = utcnow()
    result = db.execute(
        update(Checkout)
        .where(
            Checkout.tenant_id == tenant_id,
            Checkout.shopify_checkout_id.in_(keys),
            Checkout.status != CheckoutStatusEnum.completed,
        )
        .values(
            status=CheckoutStatusEnum.completed,
            completed_at=now,
            abandoned_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    transitioned = result.rowcount or 0
    if transitioned:
        logger.info("[CHECKOUT] Order %s completed checkout %s (tenant %s)", payload.id, sorted(keys), tenant_id)
    return transitioned


def touch_checkouts_for_cart(db: Session, tenant_id: UUID, cart_token: Optional[str]) -> int:
    """Refresh updated_at on checkouts sharing a cart token; status unchanged.

    Cart events carry no checkout financial state and never create rows.
    """
    if not cart_token:
        logger.debug("[CHECKOUT] Cart event without token ignored (tenant %s)", tenant_id)
        return 0

    result = db.execute(
        update(Checkout)
        .where(
            Checkout.tenant_id == tenant_id,
            Checkout.shopify_cart_token == cart_token,
        )
        .values(updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
