"""Tests for local <-> WooCommerce field transforms."""

import json

import pytest

from src.db.models import Customer, EntityType, Order, Product
from src.services.entity_transforms import (
    apply_resolved_values,
    column_value,
    has_changes,
    inventory_payload,
    local_snapshot,
    local_to_remote,
    natural_key,
    remote_to_local,
)
from tests.helpers import make_customer, make_order, make_product


class TestNaturalKey:

    def test_customer_email_stripped(self):
        assert natural_key("customer", {"email": " a@x.com "}) == ("email", "a@x.com")

    def test_product_without_sku_uses_remote_id(self):
        assert natural_key(EntityType.product, {"id": 7, "sku": ""}) == ("sku", "WC-7")

    def test_order_number_falls_back_to_id(self):
        assert natural_key(EntityType.order, {"id": 12}) == ("order_number", "12")
        assert natural_key(EntityType.order, {"id": 12, "number": "A-12"}) == (
            "order_number", "A-12",
        )


class TestRemoteToLocal:

    def test_customer(self):
        values = remote_to_local(EntityType.customer, make_customer(1, "a@x.com"))
        assert values["email"] == "a@x.com"
        assert values["customer_code"] == "WC-1"
        assert values["company_name"] == "Analytical Engines"
        assert values["phone"] == "555-0100"
        assert json.loads(values["shipping_address_json"]) == {"city": "London"}

    def test_customer_company_falls_back_to_name(self):
        remote = make_customer(1, "a@x.com", billing={})
        values = remote_to_local(EntityType.customer, remote)
        assert values["company_name"] == "Ada Lovelace"
        assert values["phone"] is None
        assert values["billing_address_json"] is None

    def test_customer_company_falls_back_to_email(self):
        remote = make_customer(1, "a@x.com", billing={}, first_name="", last_name="")
        assert remote_to_local("customer", remote)["company_name"] == "a@x.com"

    def test_customer_without_email_rejected(self):
        with pytest.raises(ValueError):
            remote_to_local(EntityType.customer, make_customer(1, ""))

    def test_product_cost_estimated_without_sale_price(self):
        values = remote_to_local(EntityType.product, make_product(7, "W-7"))
        assert values["unit_price"] == 10.0
        assert values["cost_price"] == 7.0
        assert values["stock_quantity"] == 5
        assert values["is_active"] is True

    def test_product_sale_price_is_cost(self):
        remote = make_product(7, "W-7", sale_price="8.50", status="draft")
        values = remote_to_local(EntityType.product, remote)
        assert values["cost_price"] == 8.5
        assert values["is_active"] is False

    def test_order(self):
        values = remote_to_local(EntityType.order, make_order(12))
        assert values["order_number"] == "12"
        assert values["total_amount"] == 25.0
        assert values["subtotal"] == 20.0
        assert values["tax_amount"] == 2.0
        assert values["shipping_cost"] == 3.0
        assert values["order_date"] == "2026-01-09T08:00:00"
        assert json.loads(values["items_json"])[0]["sku"] == "W-1"


class TestSnapshots:

    def test_customer_snapshot_decodes_addresses(self):
        record = Customer(
            id="c-1", email="a@x.com", company_name="ACME", phone="1",
            billing_address_json='{"city": "London"}', shipping_address_json=None,
            updated_at="2026-01-15T12:00:00+00:00",
        )
        snapshot = local_snapshot(EntityType.customer, record)
        assert snapshot["billing_address"] == {"city": "London"}
        assert snapshot["shipping_address"] is None
        assert snapshot["updated_at"] == "2026-01-15T12:00:00+00:00"

    def test_column_value_encodes_json_fields(self):
        assert column_value("billing_address", {"city": "Leeds"}) == (
            "billing_address_json", '{"city": "Leeds"}',
        )
        assert column_value("phone", "555") == ("phone", "555")

    def test_apply_resolved_values(self):
        values = {"phone": "1", "billing_address_json": None}
        apply_resolved_values(values, {"phone": "2", "billing_address": {"a": 1}})
        assert values == {"phone": "2", "billing_address_json": '{"a": 1}'}

    def test_has_changes_ignores_bookkeeping_columns(self):
        record = Product(id="p-1", sku="W-7", name="Widget", updated_at="old")
        assert not has_changes(record, {"id": "other", "sku": "W-7", "updated_at": "new"})
        assert has_changes(record, {"name": "Gadget"})


class TestPushPayloads:

    def test_customer_payload_merges_billing(self):
        record = Customer(
            email="a@x.com", first_name="Ada", last_name=None, company_name="ACME",
            phone="555", billing_address_json='{"city": "London"}',
            shipping_address_json='{"city": "Leeds"}',
        )
        payload = local_to_remote(EntityType.customer, record)
        assert payload["billing"] == {
            "city": "London", "company": "ACME", "phone": "555", "email": "a@x.com",
        }
        assert payload["last_name"] == ""
        assert payload["shipping"] == {"city": "Leeds"}

    def test_product_payload_formats_price(self):
        record = Product(sku="W-7", name="Widget", description=None, unit_price=12.5)
        assert local_to_remote(EntityType.product, record) == {
            "name": "Widget", "description": "", "regular_price": "12.50",
        }

    def test_order_payload_is_status_only(self):
        assert local_to_remote(EntityType.order, Order(status="completed")) == {
            "status": "completed",
        }

    def test_inventory_payload(self):
        assert inventory_payload(Product(stock_quantity=3)) == {
            "manage_stock": True, "stock_quantity": 3, "stock_status": "instock",
        }
        assert inventory_payload(Product(stock_quantity=0))["stock_status"] == "outofstock"
