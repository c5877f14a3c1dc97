"""Metrics aggregation service.

WHAT:
    Read-only aggregates over a tenant's current state:
    - Checkout funnel (counts/values by status, conversion and abandonment rates)
    - Refund totals (count, sum, average)
    - Dashboard KPIs (customers, orders, revenue, top customers, 30-day series)

WHY:
    These are the numbers the dashboard shows. They are derived on demand
    and fronted by the MetricsCache (2 minute TTL); every write path
    invalidates the tenant's entries so a cached read is never older than
    the last processed event.

DATE FILTERS:
    start/end filter on created_at, both inclusive. A date-only end value
    covers that whole day.

REFERENCES:
    - storepulse/cache.py (key layout)
    - storepulse/routers/analytics.py, storepulse/routers/tenants.py
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy import func, outerjoin
from sqlalchemy.orm import Session

from storepulse.cache import MetricsCache, tenant_key
from storepulse.errors import ValidationFailure
from storepulse.models import Checkout, CheckoutStatusEnum, Customer, Order, Refund, utcnow
from storepulse.schemas import (
    CheckoutAnalytics,
    DailyOrders,
    DashboardMetrics,
    RefundAnalytics,
    TopCustomer,
)
from storepulse.webhooks.payloads import to_naive_utc

logger = logging.getLogger(__name__)

TOP_CUSTOMERS_LIMIT = 5
TIMESERIES_DAYS = 30


# =============================================================================
# HELPERS
# =============================================================================

def _rate(part: int, total: int) -> float:
    """Percentage rounded to 2 decimals; 0 when total is 0."""
    if not total:
        return 0.0
    return round(part / total * 100, 2)


def _money(value) -> float:
    return round(float(value or 0), 2)


def parse_date_param(value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
    """Parse an ISO date or datetime query parameter.

    Raises:
        ValidationFailure: if the value is not ISO-8601
    """
    if not value:
        return None
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            return datetime.combine(day, time.max if end_of_day else time.min)
        return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        raise ValidationFailure(f"Invalid date: {value}")


def _date_range(start_date: Optional[str], end_date: Optional[str]) -> Tuple[Optional[datetime], Optional[datetime]]:
    return parse_date_param(start_date), parse_date_param(end_date, end_of_day=True)


def _filter_created(query, column, start: Optional[datetime], end: Optional[datetime]):
    if start is not None:
        query = query.filter(column >= start)
    if end is not None:
        query = query.filter(column <= end)
    return query


# =============================================================================
# COMPUTATION
# =============================================================================

def compute_checkout_analytics(
    db: Session,
    tenant_id: UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> CheckoutAnalytics:
    """Checkout counts and values grouped by status."""
    query = db.query(
        Checkout.status,
        func.count(Checkout.id),
        func.coalesce(func.sum(Checkout.total_price), 0),
    ).filter(Checkout.tenant_id == tenant_id)
    query = _filter_created(query, Checkout.created_at, start, end)

    counts = {status: 0 for status in CheckoutStatusEnum}
    values = {status: Decimal("0") for status in CheckoutStatusEnum}
    for status, count, value in query.group_by(Checkout.status).all():
        status = CheckoutStatusEnum(status)
        counts[status] = count
        values[status] = Decimal(str(value or 0))

    total = sum(counts.values())
    completed = counts[CheckoutStatusEnum.completed]
    abandoned = counts[CheckoutStatusEnum.abandoned]

    return CheckoutAnalytics(
        total_checkouts=total,
        completed_checkouts=completed,
        abandoned_checkouts=abandoned,
        pending_checkouts=counts[CheckoutStatusEnum.pending],
        conversion_rate=_rate(completed, total),
        abandonment_rate=_rate(abandoned, total),
        abandoned_value=_money(values[CheckoutStatusEnum.abandoned]),
        completed_value=_money(values[CheckoutStatusEnum.completed]),
    )


def compute_refund_analytics(
    db: Session,
    tenant_id: UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> RefundAnalytics:
    query = db.query(
        func.count(Refund.id),
        func.coalesce(func.sum(Refund.amount), 0),
    ).filter(Refund.tenant_id == tenant_id)
    count, total = _filter_created(query, Refund.created_at, start, end).one()

    total = Decimal(str(total or 0))
    return RefundAnalytics(
        total_refunds=count,
        total_refund_amount=_money(total),
        average_refund_amount=_money(total / count) if count else 0.0,
    )


def _top_customers(db: Session, tenant_id: UUID) -> list[TopCustomer]:
    """Top customers by spend summed from their orders (not the stored column)."""
    spend = func.coalesce(func.sum(Order.total), 0)
    join = outerjoin(
        Customer,
        Order,
        (Order.tenant_id == Customer.tenant_id)
        & (Order.external_customer_id == Customer.external_customer_id),
    )
    rows = (
        db.query(
            Customer.external_customer_id,
            Customer.first_name,
            Customer.last_name,
            Customer.email,
            spend.label("spend"),
            func.count(Order.id).label("orders"),
        )
        .select_from(join)
        .filter(Customer.tenant_id == tenant_id)
        .group_by(
            Customer.id,
            Customer.external_customer_id,
            Customer.first_name,
            Customer.last_name,
            Customer.email,
        )
        .order_by(spend.desc(), Customer.external_customer_id)
        .limit(TOP_CUSTOMERS_LIMIT)
        .all()
    )

    return [
        TopCustomer(
            id=row.external_customer_id,
            name=f"{row.first_name or ''} {row.last_name or ''}".strip() or "Guest",
            email=row.email,
            total_spent=_money(row.spend),
            orders_count=row.orders,
        )
        for row in rows
    ]


def _orders_by_date(db: Session, tenant_id: UUID, last_day: date) -> list[DailyOrders]:
    """Daily order count/revenue for the TIMESERIES_DAYS ending at last_day."""
    first_day = last_day - timedelta(days=TIMESERIES_DAYS - 1)
    day = func.date(Order.created_at)
    rows = (
        db.query(day.label("day"), func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
        .filter(
            Order.tenant_id == tenant_id,
            Order.created_at >= datetime.combine(first_day, time.min),
            Order.created_at <= datetime.combine(last_day, time.max),
        )
        .group_by(day)
        .all()
    )
    # sqlite returns 'YYYY-MM-DD' strings, postgres returns dates
    by_day = {str(row[0])[:10]: (row[1], row[2]) for row in rows}

    series = []
    for offset in range(TIMESERIES_DAYS):
        key = (first_day + timedelta(days=offset)).isoformat()
        orders, revenue = by_day.get(key, (0, 0))
        series.append(DailyOrders(date=key, orders=orders, revenue=_money(revenue)))
    return series


def compute_dashboard_metrics(
    db: Session,
    tenant_id: UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> DashboardMetrics:
    """Dashboard KPIs; order totals honour the date range, customers do not."""
    customers_count = db.query(func.count(Customer.id)).filter(Customer.tenant_id == tenant_id).scalar() or 0

    orders_query = db.query(
        func.count(Order.id),
        func.coalesce(func.sum(Order.total), 0),
    ).filter(Order.tenant_id == tenant_id)
    orders_count, revenue = _filter_created(orders_query, Order.created_at, start, end).one()

    checkouts = compute_checkout_analytics(db, tenant_id, start, end)
    last_day = (end or now or utcnow()).date()

    return DashboardMetrics(
        customers_count=customers_count,
        orders_count=orders_count,
        total_revenue=_money(revenue),
        top_customers=_top_customers(db, tenant_id),
        orders_by_date=_orders_by_date(db, tenant_id, last_day),
        conversion_rate=checkouts.conversion_rate,
        abandonment_rate=checkouts.abandonment_rate,
        checkouts=checkouts,
    )


# =============================================================================
# CACHED READS
# =============================================================================

def dashboard_cache_key(tenant_id: UUID, start_date: Optional[str], end_date: Optional[str]) -> str:
    """metrics:<tenant> without a range, metrics:<tenant>:<start>:<end> with one."""
    if not start_date and not end_date:
        return tenant_key(tenant_id)
    return tenant_key(tenant_id, start_date, end_date)


def get_dashboard_metrics(
    db: Session,
    cache: MetricsCache,
    tenant_id: UUID,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> Tuple[DashboardMetrics, bool]:
    """Cache-fronted dashboard metrics.

    Returns:
        (metrics, cache_hit)
    """
    start, end = _date_range(start_date, end_date)
    key = dashboard_cache_key(tenant_id, start_date, end_date)

    cached = cache.get_json(key)
    if cached is not None:
        return DashboardMetrics.model_validate(cached), True

    metrics = compute_dashboard_metrics(db, tenant_id, start, end)
    cache.set_json(key, metrics.model_dump(mode="json"))
    logger.debug(f"[METRICS] Dashboard computed for tenant {tenant_id} (key={key})")
    return metrics, False


def get_checkout_analytics(
    db: Session,
    cache: MetricsCache,
    tenant_id: UUID,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> Tuple[CheckoutAnalytics, bool]:
    start, end = _date_range(start_date, end_date)
    key = tenant_key(tenant_id, "checkouts", start_date, end_date)

    cached = cache.get_json(key)
    if cached is not None:
        return CheckoutAnalytics.model_validate(cached), True

    analytics = compute_checkout_analytics(db, tenant_id, start, end)
    cache.set_json(key, analytics.model_dump(mode="json"))
    return analytics, False


def get_refund_analytics(
    db: Session,
    cache: MetricsCache,
    tenant_id: UUID,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> Tuple[RefundAnalytics, bool]:
    start, end = _date_range(start_date, end_date)
    key = tenant_key(tenant_id, "refunds", start_date, end_date)

    cached = cache.get_json(key)
    if cached is not None:
        return RefundAnalytics.model_validate(cached), True

    analytics = compute_refund_analytics(db, tenant_id, start, end)
    cache.set_json(key, analytics.model_dump(mode="json"))
    return analytics, False
