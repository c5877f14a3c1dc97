"""Tests for metrics aggregation and the cache-fronted readers.

WHAT: Checkout funnel, refund aggregates, dashboard KPIs
WHY: Rates must be 0 (not errors) for empty tenants, date ranges must be
     inclusive, and cached reads must be served without recomputation

REFERENCES:
  - storepulse/services/metrics_service.py
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from storepulse.cache import tenant_key
from storepulse.errors import ValidationFailure
from storepulse.models import Checkout, CheckoutStatusEnum, Customer, Order, Refund
from storepulse.services import metrics_service
from storepulse.services.metrics_service import (
    compute_checkout_analytics,
    compute_dashboard_metrics,
    compute_refund_analytics,
    get_checkout_analytics,
    get_dashboard_metrics,
    parse_date_param,
)

NOW = datetime(2024, 6, 30, 12, 0, 0)


def _checkout(db, tenant, checkout_id, status, total, created_at=NOW):
    db.add(Checkout(
        tenant_id=tenant.id, shopify_checkout_id=checkout_id, status=status,
        total_price=Decimal(total), created_at=created_at,
    ))


def _order(db, tenant, order_id, total, customer_id=None, created_at=NOW):
    db.add(Order(
        tenant_id=tenant.id, external_order_id=order_id, external_customer_id=customer_id,
        total=Decimal(total), created_at=created_at,
    ))


class TestParseDateParam:

    def test_date_only_start_is_midnight(self):
        assert parse_date_param("2024-06-01") == datetime(2024, 6, 1, 0, 0, 0)

    def test_date_only_end_covers_the_day(self):
        end = parse_date_param("2024-06-01", end_of_day=True)
        assert end.date() == datetime(2024, 6, 1).date()
        assert end.hour == 23 and end.minute == 59

    def test_offset_datetime_is_converted_to_utc(self):
        assert parse_date_param("2024-06-01T10:00:00+02:00") == datetime(2024, 6, 1, 8, 0, 0)

    def test_z_suffix(self):
        assert parse_date_param("2024-06-01T10:00:00Z") == datetime(2024, 6, 1, 10, 0, 0)

    def test_empty_is_none(self):
        assert parse_date_param(None) is None
        assert parse_date_param("") is None

    def test_invalid_raises_validation_failure(self):
        with pytest.raises(ValidationFailure):
            parse_date_param("last-tuesday")


class TestCheckoutAnalytics:

    def test_empty_tenant_has_zero_rates(self, test_db_session, test_tenant):
        analytics = compute_checkout_analytics(test_db_session, test_tenant.id)
        assert analytics.total_checkouts == 0
        assert analytics.conversion_rate == 0.0
        assert analytics.abandonment_rate == 0.0

    def test_counts_values_and_rates(self, test_db_session, test_tenant):
        _checkout(test_db_session, test_tenant, "c1", CheckoutStatusEnum.completed, "100.00")
        _checkout(test_db_session, test_tenant, "c2", CheckoutStatusEnum.abandoned, "30.00")
        _checkout(test_db_session, test_tenant, "c3", CheckoutStatusEnum.pending, "5.00")
        test_db_session.commit()

        analytics = compute_checkout_analytics(test_db_session, test_tenant.id)
        assert analytics.total_checkouts == 3
        assert analytics.completed_checkouts == 1
        assert analytics.abandoned_checkouts == 1
        assert analytics.pending_checkouts == 1
        assert analytics.conversion_rate == 33.33
        assert analytics.abandonment_rate == 33.33
        assert analytics.completed_value == 100.0
        assert analytics.abandoned_value == 30.0

    def test_date_range_is_inclusive(self, test_db_session, test_tenant):
        _checkout(test_db_session, test_tenant, "in", CheckoutStatusEnum.completed, "1", datetime(2024, 6, 10, 23, 30))
        _checkout(test_db_session, test_tenant, "out", CheckoutStatusEnum.completed, "1", datetime(2024, 6, 11, 0, 30))
        test_db_session.commit()

        analytics = compute_checkout_analytics(
            test_db_session, test_tenant.id,
            parse_date_param("2024-06-10"), parse_date_param("2024-06-10", end_of_day=True),
        )
        assert analytics.total_checkouts == 1

    def test_other_tenants_are_excluded(self, test_db_session, test_tenant, test_tenant_b):
        _checkout(test_db_session, test_tenant_b, "c1", CheckoutStatusEnum.completed, "1")
        test_db_session.commit()
        assert compute_checkout_analytics(test_db_session, test_tenant.id).total_checkouts == 0


class TestRefundAnalytics:

    def test_empty(self, test_db_session, test_tenant):
        analytics = compute_refund_analytics(test_db_session, test_tenant.id)
        assert analytics.total_refunds == 0
        assert analytics.average_refund_amount == 0.0

    def test_sum_and_average(self, test_db_session, test_tenant):
        for refund_id, amount in (("r1", "10.00"), ("r2", "5.00")):
            test_db_session.add(Refund(tenant_id=test_tenant.id, shopify_refund_id=refund_id, amount=Decimal(amount)))
        test_db_session.commit()

        analytics = compute_refund_analytics(test_db_session, test_tenant.id)
        assert analytics.total_refunds == 2
        assert analytics.total_refund_amount == 15.0
        assert analytics.average_refund_amount == 7.5


class TestDashboardMetrics:

    def test_empty_tenant(self, test_db_session, test_tenant):
        metrics = compute_dashboard_metrics(test_db_session, test_tenant.id, now=NOW)
        assert metrics.customers_count == 0
        assert metrics.orders_count == 0
        assert metrics.total_revenue == 0.0
        assert metrics.top_customers == []
        assert len(metrics.orders_by_date) == 30
        assert metrics.conversion_rate == 0.0

    def test_kpis_and_top_customers(self, test_db_session, test_tenant):
        test_db_session.add_all([
            Customer(tenant_id=test_tenant.id, external_customer_id="1", first_name="Ada", last_name="Lovelace"),
            Customer(tenant_id=test_tenant.id, external_customer_id="2", email="g@example.com"),
        ])
        _order(test_db_session, test_tenant, "o1", "10.00", "1")
        _order(test_db_session, test_tenant, "o2", "20.00", "1")
        _order(test_db_session, test_tenant, "o3", "50.00", "2", created_at=NOW - timedelta(days=1))
        _order(test_db_session, test_tenant, "o4", "7.00", None)
        test_db_session.commit()

        metrics = compute_dashboard_metrics(test_db_session, test_tenant.id, now=NOW)

        assert metrics.customers_count == 2
        assert metrics.orders_count == 4
        assert metrics.total_revenue == 87.0
        assert [c.id for c in metrics.top_customers] == ["2", "1"]
        assert metrics.top_customers[0].name == "Guest"
        assert metrics.top_customers[1].name == "Ada Lovelace"
        assert metrics.top_customers[1].orders_count == 2

    def test_orders_by_date_is_dense_and_ordered(self, test_db_session, test_tenant):
        _order(test_db_session, test_tenant, "o1", "10.00", created_at=NOW)
        _order(test_db_session, test_tenant, "o2", "5.00", created_at=NOW - timedelta(days=2))
        _order(test_db_session, test_tenant, "o3", "99.00", created_at=NOW - timedelta(days=45))
        test_db_session.commit()

        series = compute_dashboard_metrics(test_db_session, test_tenant.id, now=NOW).orders_by_date

        assert series[0].date == "2024-06-01"
        assert series[-1].date == "2024-06-30"
        by_date = {d.date: d for d in series}
        assert by_date["2024-06-30"].orders == 1
        assert by_date["2024-06-30"].revenue == 10.0
        assert by_date["2024-06-28"].revenue == 5.0
        assert sum(d.orders for d in series) == 2


class TestCachedReads:

    def test_miss_then_hit(self, test_db_session, test_tenant, metrics_cache, fake_redis):
        metrics, hit = get_dashboard_metrics(test_db_session, metrics_cache, test_tenant.id)
        assert hit is False
        assert tenant_key(test_tenant.id) in fake_redis.store

        cached, hit = get_dashboard_metrics(test_db_session, metrics_cache, test_tenant.id)
        assert hit is True
        assert cached == metrics

    def test_date_range_uses_qualified_key(self, test_db_session, test_tenant, metrics_cache, fake_redis):
        get_dashboard_metrics(test_db_session, metrics_cache, test_tenant.id, "2024-06-01", "2024-06-30")
        assert f"metrics:{test_tenant.id}:2024-06-01:2024-06-30" in fake_redis.store

    def test_hit_does_not_recompute(self, test_db_session, test_tenant, metrics_cache, monkeypatch):
        get_checkout_analytics(test_db_session, metrics_cache, test_tenant.id)

        def _fail(*args, **kwargs):
            raise AssertionError("recomputed on a cache hit")

        monkeypatch.setattr(metrics_service, "compute_checkout_analytics", _fail)
        _, hit = get_checkout_analytics(test_db_session, metrics_cache, test_tenant.id)
        assert hit is True

    def test_broken_cache_falls_through(self, test_db_session, test_tenant, broken_redis):
        from storepulse.cache import MetricsCache

        metrics, hit = get_dashboard_metrics(test_db_session, MetricsCache(broken_redis), test_tenant.id)
        assert hit is False
        assert metrics.orders_count == 0
