"""Tests for the entity upsert layer.

WHAT: Idempotent order/customer/product/refund upserts
WHY: Webhooks are at-least-once and unordered; replays must converge on the
     same state and customer aggregates must always match their orders

REFERENCES:
  - storepulse/services/upsert_service.py
"""

from datetime import datetime
from decimal import Decimal

from storepulse.models import Customer, Order, Product, Refund
from storepulse.services import upsert_service
from storepulse.webhooks.payloads import (
    CustomerPayload,
    OrderPayload,
    ProductPayload,
    RefundPayload,
)


def _order(order_id, total, customer=None, **extra):
    body = {"id": order_id, "total_price": total, "currency": "EUR", **extra}
    if customer is not None:
        body["customer"] = customer
    return OrderPayload.model_validate(body), body


def _apply_order(db, tenant, order_id, total, customer=None, **extra):
    payload, raw = _order(order_id, total, customer, **extra)
    upsert_service.upsert_order(db, tenant.id, payload, raw)
    db.commit()


def _customer(db, tenant, external_id):
    return db.query(Customer).filter(
        Customer.tenant_id == tenant.id,
        Customer.external_customer_id == external_id,
    ).one()


class TestOrderUpsert:

    def test_replay_is_idempotent(self, test_db_session, test_tenant):
        for _ in range(3):
            _apply_order(test_db_session, test_tenant, 1001, "50.00", {"id": 7, "email": "a@example.com"})

        assert test_db_session.query(Order).count() == 1
        assert test_db_session.query(Customer).count() == 1
        customer = _customer(test_db_session, test_tenant, "7")
        assert float(customer.total_spent) == 50.0
        assert customer.orders_count == 1

    def test_update_overwrites_total_and_raw(self, test_db_session, test_tenant):
        _apply_order(test_db_session, test_tenant, 1001, "50.00", {"id": 7})
        _apply_order(test_db_session, test_tenant, 1001, "80.00", {"id": 7}, note="edited")

        order = test_db_session.query(Order).one()
        assert float(order.total) == 80.0
        assert order.raw_json["note"] == "edited"
        assert float(_customer(test_db_session, test_tenant, "7").total_spent) == 80.0

    def test_customer_totals_equal_sum_of_orders(self, test_db_session, test_tenant):
        _apply_order(test_db_session, test_tenant, 1, "10.00", {"id": 7})
        _apply_order(test_db_session, test_tenant, 2, "15.50", {"id": 7})
        _apply_order(test_db_session, test_tenant, 3, "4.50", {"id": 7})

        customer = _customer(test_db_session, test_tenant, "7")
        assert float(customer.total_spent) == 30.0
        assert customer.orders_count == 3

    def test_payload_totals_do_not_override_order_sum(self, test_db_session, test_tenant):
        _apply_order(test_db_session, test_tenant, 1, "10.00", {"id": 7, "total_spent": "999.00", "orders_count": 42})

        customer = _customer(test_db_session, test_tenant, "7")
        assert float(customer.total_spent) == 10.0
        assert customer.orders_count == 1

    def test_reassigned_order_recomputes_previous_customer(self, test_db_session, test_tenant):
        _apply_order(test_db_session, test_tenant, 1, "10.00", {"id": 7})
        _apply_order(test_db_session, test_tenant, 1, "10.00", {"id": 8})

        assert _customer(test_db_session, test_tenant, "7").orders_count == 0
        assert float(_customer(test_db_session, test_tenant, "7").total_spent) == 0.0
        assert _customer(test_db_session, test_tenant, "8").orders_count == 1

    def test_guest_order_has_no_customer(self, test_db_session, test_tenant):
        _apply_order(test_db_session, test_tenant, 1, "10.00")

        order = test_db_session.query(Order).one()
        assert order.external_customer_id is None
        assert test_db_session.query(Customer).count() == 0

    def test_later_payload_without_customer_keeps_link(self, test_db_session, test_tenant):
        _apply_order(test_db_session, test_tenant, 1, "10.00", {"id": 7})
        _apply_order(test_db_session, test_tenant, 1, "12.00")

        order = test_db_session.query(Order).one()
        assert order.external_customer_id == "7"
        assert float(_customer(test_db_session, test_tenant, "7").total_spent) == 12.0

    def test_created_at_comes_from_payload(self, test_db_session, test_tenant):
        _apply_order(test_db_session, test_tenant, 1, "10.00", created_at="2024-01-05T12:00:00Z")
        assert test_db_session.query(Order).one().created_at == datetime(2024, 1, 5, 12, 0, 0)

    def test_missing_currency_defaults_to_usd(self, test_db_session, test_tenant):
        payload = OrderPayload.model_validate({"id": 1, "total_price": "1.00"})
        upsert_service.upsert_order(test_db_session, test_tenant.id, payload, {"id": 1})
        test_db_session.commit()
        assert test_db_session.query(Order).one().currency == "USD"

    def test_line_items_create_products(self, test_db_session, test_tenant):
        _apply_order(
            test_db_session, test_tenant, 1, "30.00",
            line_items=[
                {"product_id": 11, "title": "Hat", "vendor": "Acme", "price": "10.00", "quantity": 1},
                {"product_id": 12, "title": "Scarf", "price": "20.00", "quantity": 1},
                {"product_id": None, "title": "Custom tip", "price": "1.00"},
            ],
        )
        products = {p.external_product_id: p for p in test_db_session.query(Product).all()}
        assert set(products) == {"11", "12"}
        assert products["11"].title == "Hat"
        assert products["11"].vendor == "Acme"

    def test_same_order_id_in_two_tenants(self, test_db_session, test_tenant, test_tenant_b):
        _apply_order(test_db_session, test_tenant, 1, "10.00", {"id": 7})
        _apply_order(test_db_session, test_tenant_b, 1, "99.00", {"id": 7})

        assert test_db_session.query(Order).count() == 2
        assert float(_customer(test_db_session, test_tenant, "7").total_spent) == 10.0
        assert float(_customer(test_db_session, test_tenant_b, "7").total_spent) == 99.0


    def test_embedded_customer_email_collision_keeps_order(self, test_db_session, test_tenant):
        existing = CustomerPayload.model_validate({"id": 1, "email": "x@example.com"})
        upsert_service.upsert_customer(test_db_session, test_tenant.id, existing, {})
        test_db_session.commit()

        _apply_order(test_db_session, test_tenant, 500, "30.00", {"id": 2, "email": "x@example.com"})

        order = test_db_session.query(Order).one()
        assert order.external_customer_id == "2"
        customer = _customer(test_db_session, test_tenant, "2")
        assert float(customer.total_spent) == 30.0
        assert customer.email is None
        assert _customer(test_db_session, test_tenant, "1").email == "x@example.com"


class TestCustomerUpsert:

    def test_partial_payload_keeps_stored_fields(self, test_db_session, test_tenant):
        full = CustomerPayload.model_validate({"id": 7, "email": "a@example.com", "first_name": "Ada", "last_name": "L"})
        partial = CustomerPayload.model_validate({"id": 7, "first_name": "Ada B."})
        upsert_service.upsert_customer(test_db_session, test_tenant.id, full, {})
        upsert_service.upsert_customer(test_db_session, test_tenant.id, partial, {})
        test_db_session.commit()

        customer = _customer(test_db_session, test_tenant, "7")
        assert customer.email == "a@example.com"
        assert customer.first_name == "Ada B."
        assert customer.last_name == "L"

    def test_payload_totals_seed_new_customer(self, test_db_session, test_tenant):
        payload = CustomerPayload.model_validate({"id": 7, "total_spent": "120.00", "orders_count": 3})
        upsert_service.upsert_customer(test_db_session, test_tenant.id, payload, {})
        test_db_session.commit()

        customer = _customer(test_db_session, test_tenant, "7")
        assert float(customer.total_spent) == 120.0
        assert customer.orders_count == 3

    def test_empty_email_is_stored_as_null(self, test_db_session, test_tenant):
        for cid in (7, 8):
            payload = CustomerPayload.model_validate({"id": cid, "email": ""})
            upsert_service.upsert_customer(test_db_session, test_tenant.id, payload, {})
        test_db_session.commit()

        assert test_db_session.query(Customer).filter(Customer.email.is_(None)).count() == 2

    def test_email_held_by_other_customer_is_dropped(self, test_db_session, test_tenant):
        first = CustomerPayload.model_validate({"id": 1, "email": "x@example.com"})
        second = CustomerPayload.model_validate({"id": 2, "email": "x@example.com", "first_name": "Re"})
        upsert_service.upsert_customer(test_db_session, test_tenant.id, first, {})
        upsert_service.upsert_customer(test_db_session, test_tenant.id, second, {})
        test_db_session.commit()

        assert _customer(test_db_session, test_tenant, "1").email == "x@example.com"
        recreated = _customer(test_db_session, test_tenant, "2")
        assert recreated.email is None
        assert recreated.first_name == "Re"


class TestProductUpsert:

    def test_product_event_overwrites(self, test_db_session, test_tenant):
        first = ProductPayload.model_validate({"id": 1, "title": "Hat", "vendor": "Acme", "variants": [{"price": "10.00"}]})
        second = ProductPayload.model_validate({"id": 1, "title": "Cap", "variants": [{"price": "12.00"}]})
        upsert_service.upsert_product(test_db_session, test_tenant.id, first, {})
        upsert_service.upsert_product(test_db_session, test_tenant.id, second, {})
        test_db_session.commit()

        product = test_db_session.query(Product).one()
        assert product.title == "Cap"
        assert product.vendor is None
        assert float(product.price) == 12.0

    def test_line_item_refresh_keeps_missing_fields(self, test_db_session, test_tenant):
        full = ProductPayload.model_validate({"id": 1, "title": "Hat", "vendor": "Acme", "product_type": "Headwear"})
        upsert_service.upsert_product(test_db_session, test_tenant.id, full, {})
        _apply_order(test_db_session, test_tenant, 1, "9.00", line_items=[{"product_id": 1, "title": "", "price": "9.00"}])

        product = test_db_session.query(Product).one()
        assert product.title == "Hat"
        assert product.vendor == "Acme"
        assert product.product_type == "Headwear"
        assert float(product.price) == 9.0

    def test_duplicate_line_items_last_wins(self, test_db_session, test_tenant):
        _apply_order(
            test_db_session, test_tenant, 1, "30.00",
            line_items=[
                {"product_id": 1, "title": "Hat", "price": "10.00"},
                {"product_id": 1, "title": "Hat (red)", "price": "11.00"},
            ],
        )
        product = test_db_session.query(Product).one()
        assert product.title == "Hat (red)"
        assert float(product.price) == 11.0


class TestRefundUpsert:

    def test_amount_from_transactions(self, test_db_session, test_tenant):
        payload = RefundPayload.model_validate({
            "id": 1, "order_id": 1001, "note": "damaged",
            "transactions": [{"amount": "5.00", "currency": "EUR"}, {"amount": "2.50"}],
            "refund_line_items": [{"subtotal": "100.00"}],
        })
        upsert_service.upsert_refund(test_db_session, test_tenant.id, payload, {})
        test_db_session.commit()

        refund = test_db_session.query(Refund).one()
        assert float(refund.amount) == 7.5
        assert refund.currency == "EUR"
        assert refund.shopify_order_id == "1001"
        assert refund.reason == "damaged"

    def test_amount_falls_back_to_line_items(self):
        payload = RefundPayload.model_validate({
            "id": 1, "refund_line_items": [{"subtotal": "3.00"}, {"subtotal": "4.00"}],
        })
        assert upsert_service.refund_amount(payload) == Decimal("7.00")

    def test_no_amounts_is_zero(self):
        assert upsert_service.refund_amount(RefundPayload.model_validate({"id": 1})) == Decimal("0")

    def test_last_processed_refund_wins(self, test_db_session, test_tenant):
        for amount, note in (("5.00", "first"), ("8.00", "second")):
            payload = RefundPayload.model_validate({"id": 1, "note": note, "transactions": [{"amount": amount}]})
            upsert_service.upsert_refund(test_db_session, test_tenant.id, payload, {})
            test_db_session.commit()

        refund = test_db_session.query(Refund).one()
        assert float(refund.amount) == 8.0
        assert refund.reason == "second"
        assert refund.currency == "USD"
