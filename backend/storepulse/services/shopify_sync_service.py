"""Shopify backfill sync service.

WHAT:
    Pulls products, customers and orders from the Shopify REST API for one
    tenant (or every tenant with an access token) and upserts them through
    the same entity upsert layer the webhooks use.

WHY:
    - Webhook delivery is best-effort and processing failures are masked,
      so a periodic full pull is the recovery path for missed events
    - Enables both the HTTP endpoint and the arq worker to share one
      implementation

FAILURE POLICY:
    - Connection test fails           -> result.success False, nothing synced
    - Fetching one entity type fails  -> one error counted for that type,
                                         the remaining types still sync
    - One item fails to upsert        -> error counted, item skipped
    - One tenant fails (sync_all)     -> logged, next tenant continues

REFERENCES:
    - storepulse/services/shopify_client.py (API client)
    - storepulse/services/upsert_service.py (shared upserts)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from storepulse.cache import MetricsCache
from storepulse.errors import UpstreamFailure
from storepulse.models import Tenant
from storepulse.services import upsert_service
from storepulse.services.shopify_client import ShopifyClient
from storepulse.webhooks.payloads import CustomerPayload, OrderPayload, ProductPayload

logger = logging.getLogger(__name__)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================
# WHAT: Dataclasses for sync results
# WHY: Shared by the HTTP endpoint and the worker; the router converts them
#      to pydantic response models

@dataclass
class EntitySyncStats:
    synced: int = 0
    errors: int = 0


@dataclass
class TenantSyncResult:
    """Result of a backfill for one tenant."""
    success: bool = False
    products: EntitySyncStats = field(default_factory=EntitySyncStats)
    customers: EntitySyncStats = field(default_factory=EntitySyncStats)
    orders: EntitySyncStats = field(default_factory=EntitySyncStats)
    duration_ms: int = 0
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)


ClientFactory = Callable[[Tenant], ShopifyClient]


# =============================================================================
# PER-ENTITY SYNC
# =============================================================================

def _apply_items(
    db: Session,
    tenant: Tenant,
    entity: str,
    items: List[Dict[str, Any]],
    upsert: Callable[[Session, Any, Dict[str, Any]], Any],
    stats: EntitySyncStats,
    errors: List[str],
) -> None:
    """Upsert items one by one, committing each so failures stay isolated."""
    for item in items:
        try:
            upsert(db, tenant.id, item)
            db.commit()
            stats.synced += 1
        except (ValidationError, SQLAlchemyError, ValueError) as e:
            db.rollback()
            stats.errors += 1
            logger.warning(f"[SHOPIFY_SYNC] {entity} {item.get('id')} failed for {tenant.shop_domain}: {e}")
            if len(errors) < 20:
                errors.append(f"{entity} {item.get('id')}: {e}")


def _upsert_product(db: Session, tenant_id, item: Dict[str, Any]) -> None:
    upsert_service.upsert_product(db, tenant_id, ProductPayload.model_validate(item), item)


def _upsert_customer(db: Session, tenant_id, item: Dict[str, Any]) -> None:
    upsert_service.upsert_customer(db, tenant_id, CustomerPayload.model_validate(item), item)


def _upsert_order(db: Session, tenant_id, item: Dict[str, Any]) -> None:
    upsert_service.upsert_order(db, tenant_id, OrderPayload.model_validate(item), item)


async def _sync_entity(
    db: Session,
    tenant: Tenant,
    entity: str,
    fetch: Callable[[], Awaitable[List[Dict[str, Any]]]],
    upsert: Callable[[Session, Any, Dict[str, Any]], Any],
    stats: EntitySyncStats,
    errors: List[str],
) -> None:
    try:
        items = await fetch()
    except UpstreamFailure as e:
        stats.errors += 1
        errors.append(f"{entity}: {e}")
        logger.error(f"[SHOPIFY_SYNC] Fetching {entity} failed for {tenant.shop_domain}: {e}")
        return

    _apply_items(db, tenant, entity, items, upsert, stats, errors)
    logger.info(
        f"[SHOPIFY_SYNC] {entity}: {stats.synced} synced, {stats.errors} errors ({tenant.shop_domain})"
    )


# =============================================================================
# TENANT SYNC
# =============================================================================

def default_client_factory(
    api_version: str = "2024-07",
    request_delay: float = 0.5,
) -> ClientFactory:
    def factory(tenant: Tenant) -> ShopifyClient:
        return ShopifyClient(
            shop_domain=tenant.shop_domain,
            access_token=tenant.access_token,
            api_version=api_version,
            request_delay=request_delay,
        )
    return factory


async def sync_tenant_data(
    db: Session,
    tenant: Tenant,
    client: ShopifyClient,
    cache: Optional[MetricsCache] = None,
    order_lookback_days: int = 90,
) -> TenantSyncResult:
    """Backfill products, customers and orders for one tenant.

    WHAT:
        1. Test the connection
        2. Sync products, customers, orders (in that order)
        3. Recompute every customer's totals from the synced orders
        4. Invalidate the tenant's metrics cache

    Returns:
        TenantSyncResult with per-entity synced/error counts
    """
    started = time.monotonic()
    result = TenantSyncResult()
    logger.info(f"[SHOPIFY_SYNC] Starting backfill for {tenant.shop_domain}")

    if not await client.test_connection():
        result.error = "Failed to connect to Shopify. Check access token."
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    await _sync_entity(db, tenant, "products", client.get_all_products,
                       _upsert_product, result.products, result.errors)
    await _sync_entity(db, tenant, "customers", client.get_all_customers,
                       _upsert_customer, result.customers, result.errors)
    await _sync_entity(db, tenant, "orders",
                       lambda: client.get_all_orders(lookback_days=order_lookback_days),
                       _upsert_order, result.orders, result.errors)

    updated = upsert_service.recompute_all_customer_totals(db, tenant.id)
    db.commit()
    logger.info(f"[SHOPIFY_SYNC] Recomputed totals for {updated} customers ({tenant.shop_domain})")

    if cache is not None:
        cache.invalidate_tenant(tenant.id)

    result.success = True
    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"[SHOPIFY_SYNC] Backfill complete for {tenant.shop_domain} in {result.duration_ms}ms: "
        f"products={result.products.synced}, customers={result.customers.synced}, orders={result.orders.synced}"
    )
    return result


async def sync_all_tenants(
    db: Session,
    client_factory: ClientFactory,
    cache: Optional[MetricsCache] = None,
    order_lookback_days: int = 90,
) -> Dict[str, Dict[str, Any]]:
    """Backfill every tenant that has an access token.

    Returns:
        Mapping of shop_domain -> {"success", "duration_ms", "error"}
    """
    tenants = db.query(Tenant).filter(Tenant.access_token.isnot(None)).all()
    logger.info(f"[SHOPIFY_SYNC] Syncing {len(tenants)} tenants")

    summary: Dict[str, Dict[str, Any]] = {}
    for tenant in tenants:
        try:
            result = await sync_tenant_data(
                db, tenant, client_factory(tenant), cache=cache, order_lookback_days=order_lookback_days,
            )
            summary[tenant.shop_domain] = {
                "success": result.success,
                "duration_ms": result.duration_ms,
                "error": result.error,
            }
        except Exception as e:
            db.rollback()
            logger.exception(f"[SHOPIFY_SYNC] Backfill failed for {tenant.shop_domain}: {e}")
            summary[tenant.shop_domain] = {"success": False, "duration_ms": 0, "error": str(e)}

    return summary
