"""Checkout and refund analytics endpoints.

WHAT:
    - Checkout funnel and refund aggregates (cache-fronted)
    - Manual abandonment sweep for one tenant
    - Newest-first checkout and refund listings

REFERENCES:
    - storepulse/services/metrics_service.py
    - storepulse/services/abandonment_service.py
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from storepulse.context import AppContext
from storepulse.database import get_db
from storepulse.deps import get_context
from storepulse.models import Checkout, CheckoutStatusEnum, Refund
from storepulse.routers.tenants import get_tenant_or_404
from storepulse.schemas import (
    AbandonmentRunResponse,
    CheckoutAnalytics,
    CheckoutList,
    CheckoutOut,
    RefundAnalytics,
    RefundList,
    RefundOut,
)
from storepulse.services.abandonment_service import detect_abandoned_checkouts
from storepulse.services.metrics_service import get_checkout_analytics, get_refund_analytics

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/analytics", tags=["Analytics"])


@router.get("/checkouts/{tenant_id}", response_model=CheckoutAnalytics)
def checkout_analytics(
    tenant_id: UUID,
    response: Response,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
) -> CheckoutAnalytics:
    get_tenant_or_404(db, tenant_id)
    analytics, hit = get_checkout_analytics(db, context.cache, tenant_id, start_date, end_date)
    response.headers["X-Cache"] = "HIT" if hit else "MISS"
    return analytics


@router.get("/refunds/{tenant_id}", response_model=RefundAnalytics)
def refund_analytics(
    tenant_id: UUID,
    response: Response,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
) -> RefundAnalytics:
    get_tenant_or_404(db, tenant_id)
    analytics, hit = get_refund_analytics(db, context.cache, tenant_id, start_date, end_date)
    response.headers["X-Cache"] = "HIT" if hit else "MISS"
    return analytics


@router.post("/detect-abandoned/{tenant_id}", response_model=AbandonmentRunResponse)
def detect_abandoned(
    tenant_id: UUID,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
) -> AbandonmentRunResponse:
    """Run the abandonment sweep for one tenant now."""
    get_tenant_or_404(db, tenant_id)
    count = detect_abandoned_checkouts(
        db,
        tenant_id,
        threshold_minutes=context.settings.ABANDONMENT_THRESHOLD_MINUTES,
        cache=context.cache,
    )
    return AbandonmentRunResponse(tenant_id=tenant_id, abandoned_count=count)


@router.get("/checkouts/{tenant_id}/list", response_model=CheckoutList)
def list_checkouts(
    tenant_id: UUID,
    checkout_status: Optional[CheckoutStatusEnum] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> CheckoutList:
    get_tenant_or_404(db, tenant_id)
    query = db.query(Checkout).filter(Checkout.tenant_id == tenant_id)
    if checkout_status is not None:
        query = query.filter(Checkout.status == checkout_status)

    total = query.count()
    items = query.order_by(Checkout.created_at.desc()).offset(offset).limit(limit).all()
    return CheckoutList(
        items=[CheckoutOut.model_validate(c) for c in items],
        total=total, limit=limit, offset=offset,
    )


@router.get("/refunds/{tenant_id}/list", response_model=RefundList)
def list_refunds(
    tenant_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> RefundList:
    get_tenant_or_404(db, tenant_id)
    query = db.query(Refund).filter(Refund.tenant_id == tenant_id)

    total = query.count()
    items = query.order_by(Refund.created_at.desc()).offset(offset).limit(limit).all()
    return RefundList(
        items=[RefundOut.model_validate(r) for r in items],
        total=total, limit=limit, offset=offset,
    )
