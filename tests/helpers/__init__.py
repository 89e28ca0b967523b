"""Test helper utilities: fake WooCommerce store, clock and sleep."""

from tests.helpers.woo_test_store import (
    FakeClock,
    FakeWooStore,
    RecordingSleep,
    make_customer,
    make_order,
    make_product,
)

__all__ = [
    "FakeClock",
    "FakeWooStore",
    "RecordingSleep",
    "make_customer",
    "make_order",
    "make_product",
]
