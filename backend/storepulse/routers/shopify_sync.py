"""Shopify backfill endpoints.

WHAT:
    Thin HTTP wrappers for the backfill sync service:
    - POST /api/v1/sync                    run a full backfill for one tenant
    - GET  /api/v1/sync/status/{tenant_id} stored entity counts

WHY:
    - Routers handle request parsing and precondition checks only
    - The same sync service runs from the arq worker every 6 hours

REFERENCES:
    - storepulse/services/shopify_sync_service.py
    - storepulse/workers/arq_worker.py
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.orm import Session

from storepulse.context import AppContext
from storepulse.database import get_db
from storepulse.deps import get_context
from storepulse.errors import ValidationFailure
from storepulse.models import Customer, Order, Product
from storepulse.routers.tenants import get_tenant_or_404
from storepulse.schemas import (
    EntitySyncStatsResponse,
    SyncRequest,
    SyncResultResponse,
    SyncStatusResponse,
)
from storepulse.services.shopify_sync_service import (
    TenantSyncResult,
    default_client_factory,
    sync_tenant_data,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sync", tags=["Shopify Sync"])


def _to_api_response(result: TenantSyncResult) -> SyncResultResponse:
    """Convert the internal dataclass to the API response model."""
    return SyncResultResponse(
        success=result.success,
        products=EntitySyncStatsResponse(synced=result.products.synced, errors=result.products.errors),
        customers=EntitySyncStatsResponse(synced=result.customers.synced, errors=result.customers.errors),
        orders=EntitySyncStatsResponse(synced=result.orders.synced, errors=result.orders.errors),
        duration_ms=result.duration_ms,
        error=result.error,
        errors=result.errors,
    )


@router.post("", response_model=SyncResultResponse)
async def trigger_sync(
    payload: SyncRequest,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Backfill products, customers and orders for a tenant.

    Raises:
        HTTPException: 404 if the tenant does not exist
        ValidationFailure: 400 if the tenant has no access token
    """
    tenant = get_tenant_or_404(db, payload.tenant_id)
    if not tenant.access_token:
        raise ValidationFailure("Tenant has no access token configured. Set it with PATCH /api/v1/tenants/{id}.")

    settings = context.settings
    client = default_client_factory(
        api_version=settings.SHOPIFY_API_VERSION,
        request_delay=settings.SHOPIFY_REQUEST_DELAY_SECONDS,
    )(tenant)

    result = await sync_tenant_data(
        db,
        tenant,
        client,
        cache=context.cache,
        order_lookback_days=settings.SHOPIFY_ORDER_LOOKBACK_DAYS,
    )

    body = _to_api_response(result)
    if not result.success:
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))
    return body


@router.get("/status/{tenant_id}", response_model=SyncStatusResponse)
def sync_status(tenant_id: UUID, db: Session = Depends(get_db)) -> SyncStatusResponse:
    tenant = get_tenant_or_404(db, tenant_id)

    def _count(model) -> int:
        return db.query(func.count(model.id)).filter(model.tenant_id == tenant_id).scalar() or 0

    return SyncStatusResponse(
        tenant_id=tenant.id,
        shop_domain=tenant.shop_domain,
        has_access_token=bool(tenant.access_token),
        products=_count(Product),
        customers=_count(Customer),
        orders=_count(Order),
    )
