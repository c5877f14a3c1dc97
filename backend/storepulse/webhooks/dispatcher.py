"""Webhook event dispatcher.

WHAT:
    Routes a parsed webhook event to exactly one handler, commits the
    handler's writes as one transaction, then invalidates the tenant's
    metrics cache.

WHY:
    The cache is invalidated after every event, including unhandled topics
    and failed handlers: any event may mean local state drifted, and an
    extra cache miss is cheap.

HANDLERS:
    OrderEvent     -> upsert order (+customer, products) and complete checkout
    CustomerEvent  -> upsert customer
    ProductEvent   -> upsert product
    CheckoutEvent  -> checkout state machine upsert
    CartEvent      -> refresh liveness of checkouts sharing the cart token
    RefundEvent    -> upsert refund
    UnhandledEvent -> logged and dropped

REFERENCES:
    - storepulse/webhooks/payloads.py
    - storepulse/routers/shopify_webhooks.py
"""

import logging
from typing import Callable, Dict, Optional, Type
from uuid import UUID

from sqlalchemy.orm import Session

from storepulse.cache import MetricsCache
from storepulse.services import checkout_service, upsert_service
from storepulse.webhooks.payloads import (
    CartEvent,
    CheckoutEvent,
    CustomerEvent,
    OrderEvent,
    ProductEvent,
    RefundEvent,
    UnhandledEvent,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


# =============================================================================
# HANDLERS
# =============================================================================

def _handle_order(db: Session, tenant_id: UUID, event: OrderEvent) -> None:
    upsert_service.upsert_order(db, tenant_id, event.payload, event.raw)
    checkout_service.complete_checkout_for_order(db, tenant_id, event.payload)


def _handle_customer(db: Session, tenant_id: UUID, event: CustomerEvent) -> None:
    upsert_service.upsert_customer(db, tenant_id, event.payload, event.raw)


def _handle_product(db: Session, tenant_id: UUID, event: ProductEvent) -> None:
    upsert_service.upsert_product(db, tenant_id, event.payload, event.raw)


def _handle_checkout(db: Session, tenant_id: UUID, event: CheckoutEvent) -> None:
    checkout_service.apply_checkout_event(db, tenant_id, event.payload, event.raw)


def _handle_cart(db: Session, tenant_id: UUID, event: CartEvent) -> None:
    touched = checkout_service.touch_checkouts_for_cart(db, tenant_id, event.payload.cart_token)
    logger.debug(f"[EVENT_ROUTER] Cart {event.payload.cart_token} touched {touched} checkouts")


def _handle_refund(db: Session, tenant_id: UUID, event: RefundEvent) -> None:
    upsert_service.upsert_refund(db, tenant_id, event.payload, event.raw)


def _handle_unhandled(db: Session, tenant_id: UUID, event: UnhandledEvent) -> None:
    logger.info(f"[EVENT_ROUTER] Unhandled topic {event.topic} for tenant {tenant_id} - dropped")


EVENT_HANDLERS: Dict[Type, Callable[[Session, UUID, WebhookEvent], None]] = {
    OrderEvent: _handle_order,
    CustomerEvent: _handle_customer,
    ProductEvent: _handle_product,
    CheckoutEvent: _handle_checkout,
    CartEvent: _handle_cart,
    RefundEvent: _handle_refund,
    UnhandledEvent: _handle_unhandled,
}


# =============================================================================
# DISPATCH
# =============================================================================

def dispatch_event(
    db: Session,
    tenant_id: UUID,
    event: WebhookEvent,
    cache: Optional[MetricsCache] = None,
) -> None:
    """Apply one event in its own transaction and invalidate the tenant cache.

    Raises:
        Any handler exception, after rolling back. The webhook router masks it.
    """
    handler = EVENT_HANDLERS[type(event)]
    try:
        handler(db, tenant_id, event)
        db.commit()
        logger.info(f"[EVENT_ROUTER] Processed {event.topic} for tenant {tenant_id}")
    except Exception:
        db.rollback()
        raise
    finally:
        if cache is not None:
            cache.invalidate_tenant(tenant_id)
