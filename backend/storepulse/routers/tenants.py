"""Tenant registration and per-tenant read endpoints.

WHAT:
    - Register / list / fetch / update tenants
    - Dashboard metrics (cache-fronted, X-Cache header)
    - Paginated orders, customers and products

WHY:
    Registration provisions the webhook secret that authenticates inbound
    webhooks; the list endpoints are thin queries over the ingested state.

REFERENCES:
    - storepulse/services/metrics_service.py
"""

from __future__ import annotations

import logging
import math
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from storepulse.context import AppContext
from storepulse.database import get_db
from storepulse.deps import get_context
from storepulse.models import Checkout, Customer, Order, Product, Refund, Tenant
from storepulse.schemas import (
    CustomerOut,
    CustomerPage,
    DashboardMetrics,
    OrderOut,
    OrderPage,
    ProductOut,
    ProductPage,
    TenantCreate,
    TenantDetail,
    TenantOut,
    TenantUpdate,
)
from storepulse.services.metrics_service import get_dashboard_metrics

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/tenants", tags=["Tenants"])


# =============================================================================
# Helpers
# =============================================================================

def get_tenant_or_404(db: Session, tenant_id: UUID) -> Tenant:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        raise HTTPException(status_code=404, detail=f"Tenant {tenant_id} not found")
    return tenant


def _tenant_out(tenant: Tenant) -> TenantOut:
    return TenantOut(
        id=tenant.id,
        name=tenant.name,
        shop_domain=tenant.shop_domain,
        has_access_token=bool(tenant.access_token),
        created_at=tenant.created_at,
        updated_at=tenant.updated_at,
    )


def _paginate(query, order_column, page: int, limit: int):
    total = query.count()
    items = query.order_by(order_column.desc()).offset((page - 1) * limit).limit(limit).all()
    pages = math.ceil(total / limit) if total else 0
    return items, total, pages


# =============================================================================
# Tenant CRUD
# =============================================================================

@router.post("", response_model=TenantOut, status_code=status.HTTP_201_CREATED)
def create_tenant(payload: TenantCreate, db: Session = Depends(get_db)) -> TenantOut:
    """Register a Shopify store.

    Raises:
        HTTPException: 409 if the shop domain is already registered
    """
    existing = db.query(Tenant).filter(Tenant.shop_domain == payload.shop_domain).first()
    if existing:
        raise HTTPException(status_code=409, detail="Tenant with this shop domain already exists")

    tenant = Tenant(
        name=payload.name,
        shop_domain=payload.shop_domain,
        webhook_secret=payload.webhook_secret,
        access_token=payload.access_token,
    )
    db.add(tenant)
    db.commit()
    db.refresh(tenant)

    logger.info(f"[TENANTS] Registered tenant {tenant.id} ({tenant.shop_domain})")
    return _tenant_out(tenant)


@router.get("", response_model=list[TenantOut])
def list_tenants(db: Session = Depends(get_db)) -> list[TenantOut]:
    tenants = db.query(Tenant).order_by(Tenant.created_at.desc()).all()
    return [_tenant_out(t) for t in tenants]


@router.get("/{tenant_id}", response_model=TenantDetail)
def get_tenant(tenant_id: UUID, db: Session = Depends(get_db)) -> TenantDetail:
    tenant = get_tenant_or_404(db, tenant_id)

    counts = {}
    for label, model in (
        ("customers", Customer),
        ("orders", Order),
        ("products", Product),
        ("checkouts", Checkout),
        ("refunds", Refund),
    ):
        counts[label] = db.query(func.count(model.id)).filter(model.tenant_id == tenant_id).scalar() or 0

    return TenantDetail(**_tenant_out(tenant).model_dump(), counts=counts)


@router.patch("/{tenant_id}", response_model=TenantOut)
def update_tenant(tenant_id: UUID, payload: TenantUpdate, db: Session = Depends(get_db)) -> TenantOut:
    """Update the tenant name and/or Admin API access token."""
    tenant = get_tenant_or_404(db, tenant_id)

    if payload.name is not None:
        tenant.name = payload.name
    if payload.access_token is not None:
        # Empty string clears the token and disables sync
        tenant.access_token = payload.access_token or None

    db.commit()
    db.refresh(tenant)
    logger.info(f"[TENANTS] Updated tenant {tenant.id}")
    return _tenant_out(tenant)


# =============================================================================
# Metrics & lists
# =============================================================================

@router.get("/{tenant_id}/metrics", response_model=DashboardMetrics)
def tenant_metrics(
    tenant_id: UUID,
    response: Response,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
) -> DashboardMetrics:
    """Dashboard metrics; X-Cache reports HIT or MISS."""
    get_tenant_or_404(db, tenant_id)
    metrics, hit = get_dashboard_metrics(db, context.cache, tenant_id, start_date, end_date)
    response.headers["X-Cache"] = "HIT" if hit else "MISS"
    return metrics


@router.get("/{tenant_id}/orders", response_model=OrderPage)
def list_orders(
    tenant_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
) -> OrderPage:
    get_tenant_or_404(db, tenant_id)
    items, total, pages = _paginate(
        db.query(Order).filter(Order.tenant_id == tenant_id), Order.created_at, page, limit,
    )
    return OrderPage(
        items=[OrderOut.model_validate(o) for o in items],
        total=total, page=page, limit=limit, pages=pages,
    )


@router.get("/{tenant_id}/customers", response_model=CustomerPage)
def list_customers(
    tenant_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
) -> CustomerPage:
    get_tenant_or_404(db, tenant_id)
    items, total, pages = _paginate(
        db.query(Customer).filter(Customer.tenant_id == tenant_id), Customer.created_at, page, limit,
    )
    return CustomerPage(
        items=[CustomerOut.model_validate(c) for c in items],
        total=total, page=page, limit=limit, pages=pages,
    )


@router.get("/{tenant_id}/products", response_model=ProductPage)
def list_products(
    tenant_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
) -> ProductPage:
    get_tenant_or_404(db, tenant_id)
    items, total, pages = _paginate(
        db.query(Product).filter(Product.tenant_id == tenant_id), Product.created_at, page, limit,
    )
    return ProductPage(
        items=[ProductOut.model_validate(p) for p in items],
        total=total, page=page, limit=limit, pages=pages,
    )
