"""Integration tests for tenant registration and per-tenant reads.

REFERENCES:
  - storepulse/routers/tenants.py
  - storepulse/routers/analytics.py
  - storepulse/routers/shopify_sync.py
"""

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

from storepulse.models import Checkout, CheckoutStatusEnum, Order, Refund, Tenant


class TestTenantCrud:

    def test_create_tenant(self, client, test_db_session):
        response = client.post("/api/v1/tenants", json={
            "name": "Demo",
            "shop_domain": " Demo-Store.myshopify.com ",
            "webhook_secret": "whsec_123",
        })
        assert response.status_code == 201
        data = response.json()
        assert data["shop_domain"] == "demo-store.myshopify.com"
        assert data["has_access_token"] is False
        assert "webhook_secret" not in data
        assert test_db_session.query(Tenant).count() == 1

    def test_duplicate_domain_is_409(self, client, test_tenant):
        response = client.post("/api/v1/tenants", json={
            "name": "Again", "shop_domain": test_tenant.shop_domain, "webhook_secret": "x",
        })
        assert response.status_code == 409

    def test_missing_secret_is_422(self, client):
        response = client.post("/api/v1/tenants", json={"name": "Demo", "shop_domain": "d.myshopify.com"})
        assert response.status_code == 422

    def test_list_and_get(self, client, test_tenant, test_tenant_b):
        assert len(client.get("/api/v1/tenants").json()) == 2

        detail = client.get(f"/api/v1/tenants/{test_tenant.id}").json()
        assert detail["name"] == "Test Store"
        assert detail["counts"] == {"customers": 0, "orders": 0, "products": 0, "checkouts": 0, "refunds": 0}

    def test_get_unknown_is_404(self, client):
        assert client.get(f"/api/v1/tenants/{uuid4()}").status_code == 404

    def test_patch_clears_access_token(self, client, test_tenant):
        response = client.patch(f"/api/v1/tenants/{test_tenant.id}", json={"access_token": ""})
        assert response.status_code == 200
        assert response.json()["has_access_token"] is False

    def test_patch_renames(self, client, test_tenant):
        response = client.patch(f"/api/v1/tenants/{test_tenant.id}", json={"name": "Renamed"})
        assert response.json()["name"] == "Renamed"
        assert response.json()["has_access_token"] is True


class TestTenantReads:

    def test_metrics_cache_header(self, client, test_tenant):
        url = f"/api/v1/tenants/{test_tenant.id}/metrics"
        first = client.get(url)
        second = client.get(url)

        assert first.status_code == 200
        assert first.headers["X-Cache"] == "MISS"
        assert second.headers["X-Cache"] == "HIT"
        assert first.json() == second.json()

    def test_metrics_invalid_date_is_400(self, client, test_tenant):
        response = client.get(f"/api/v1/tenants/{test_tenant.id}/metrics", params={"startDate": "yesterday"})
        assert response.status_code == 400

    def test_orders_are_paginated_newest_first(self, client, test_tenant, test_db_session):
        base = datetime(2024, 1, 1)
        for i in range(25):
            test_db_session.add(Order(
                tenant_id=test_tenant.id, external_order_id=str(i), total=Decimal("1.00"),
                created_at=base + timedelta(hours=i),
            ))
        test_db_session.commit()

        page1 = client.get(f"/api/v1/tenants/{test_tenant.id}/orders").json()
        page2 = client.get(f"/api/v1/tenants/{test_tenant.id}/orders", params={"page": 2}).json()

        assert page1["total"] == 25
        assert page1["pages"] == 2
        assert len(page1["items"]) == 20
        assert page1["items"][0]["id"] == "24"
        assert len(page2["items"]) == 5

    def test_limit_out_of_range_is_422(self, client, test_tenant):
        assert client.get(f"/api/v1/tenants/{test_tenant.id}/orders", params={"limit": 101}).status_code == 422


class TestAnalyticsRouter:

    def test_checkout_analytics(self, client, test_tenant, test_db_session):
        test_db_session.add(Checkout(
            tenant_id=test_tenant.id, shopify_checkout_id="c1",
            status=CheckoutStatusEnum.completed, total_price=Decimal("10.00"),
        ))
        test_db_session.commit()

        response = client.get(f"/api/v1/analytics/checkouts/{test_tenant.id}")
        assert response.status_code == 200
        assert response.json()["conversion_rate"] == 100.0
        assert response.headers["X-Cache"] == "MISS"

    def test_detect_abandoned(self, client, test_tenant, test_db_session):
        test_db_session.add(Checkout(
            tenant_id=test_tenant.id, shopify_checkout_id="c1",
            status=CheckoutStatusEnum.pending, created_at=datetime.utcnow() - timedelta(hours=3),
        ))
        test_db_session.commit()

        response = client.post(f"/api/v1/analytics/detect-abandoned/{test_tenant.id}")
        assert response.status_code == 200
        assert response.json()["abandoned_count"] == 1

        listed = client.get(f"/api/v1/analytics/checkouts/{test_tenant.id}/list", params={"status": "ABANDONED"})
        assert listed.json()["total"] == 1

    def test_refund_list(self, client, test_tenant, test_db_session):
        test_db_session.add(Refund(tenant_id=test_tenant.id, shopify_refund_id="r1", amount=Decimal("4.00")))
        test_db_session.commit()

        data = client.get(f"/api/v1/analytics/refunds/{test_tenant.id}/list").json()
        assert data["total"] == 1
        assert data["items"][0]["shopify_refund_id"] == "r1"

    def test_unknown_tenant_is_404(self, client):
        assert client.get(f"/api/v1/analytics/refunds/{uuid4()}").status_code == 404


class TestSyncRouter:

    def test_sync_without_token_is_400(self, client, test_tenant_b):
        response = client.post("/api/v1/sync", json={"tenant_id": str(test_tenant_b.id)})
        assert response.status_code == 400

    def test_sync_unknown_tenant_is_404(self, client):
        assert client.post("/api/v1/sync", json={"tenant_id": str(uuid4())}).status_code == 404

    def test_sync_status(self, client, test_tenant):
        data = client.get(f"/api/v1/sync/status/{test_tenant.id}").json()
        assert data["has_access_token"] is True
        assert data["orders"] == 0


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
