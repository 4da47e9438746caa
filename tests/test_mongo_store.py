"""MongoStore against a real MongoDB.

Set MONGO_TEST_URL to point at a server; the module is skipped when none is
reachable. Each test runs in its own throwaway database.
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Iterator

import pytest
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from checkout import CheckoutService
from database import codec_options, ensure_indexes
from discounts import DiscountEvaluator
from schemas import Cart, CartItem, DiscountRedemption, LineItem, WebhookEvent
from store import DuplicateError, MongoStore, new_id

from conftest import NOW

pytestmark = pytest.mark.integration

MONGO_TEST_URL = os.getenv("MONGO_TEST_URL", "mongodb://localhost:27017")


@pytest.fixture(scope="module")
def mongo_client() -> Iterator[MongoClient]:
    client = MongoClient(MONGO_TEST_URL, serverSelectionTimeoutMS=500)
    try:
        client.admin.command("ping")
    except PyMongoError:
        client.close()
        pytest.skip("MongoDB service not available")
    yield client
    client.close()


@pytest.fixture
def store(mongo_client) -> Iterator[MongoStore]:
    name = f"checkout_test_{new_id()}"
    database = mongo_client.get_database(name, codec_options=codec_options)
    ensure_indexes(database)
    yield MongoStore(database)
    mongo_client.drop_database(name)


def run_concurrently(fn, times: int = 20) -> list:
    with ThreadPoolExecutor(max_workers=times) as pool:
        return list(pool.map(lambda _: fn(), range(times)))


class TestInventory:
    def test_stock_never_goes_negative(self, store, make_product) -> None:
        product = make_product(stock_quantity=5)

        assert store.try_decrement_stock(product.id, 3) is True
        assert store.try_decrement_stock(product.id, 3) is False
        assert store.get_product(product.id).stock_quantity == 2

    def test_concurrent_decrements(self, store, make_product) -> None:
        product = make_product(stock_quantity=7)

        results = run_concurrently(lambda: store.try_decrement_stock(product.id, 1))

        assert results.count(True) == 7
        assert store.get_product(product.id).stock_quantity == 0

    def test_concurrent_preorders_stop_at_cap(self, store, make_product) -> None:
        product = make_product(allow_preorder=True, preorder_cap=3, stock_quantity=0)

        results = run_concurrently(lambda: store.try_reserve_preorder(product.id, 1))

        assert results.count(True) == 3
        assert store.get_product(product.id).preorder_count == 3

    def test_uncapped_preorders(self, store, make_product) -> None:
        product = make_product(allow_preorder=True, stock_quantity=0)

        assert all(run_concurrently(lambda: store.try_reserve_preorder(product.id, 2), times=5))
        assert store.get_product(product.id).preorder_count == 10

        store.release_preorder(product.id, 4)
        assert store.get_product(product.id).preorder_count == 6

    def test_stock_products_are_not_preordered(self, store, make_product) -> None:
        product = make_product(stock_quantity=0)

        assert store.try_reserve_preorder(product.id, 1) is False


class TestDiscounts:
    def test_concurrent_usage_stops_at_limit(self, store, make_discount) -> None:
        make_discount("FIRST3", usage_limit=3)

        results = run_concurrently(lambda: store.try_increment_usage("FIRST3"))

        assert results.count(True) == 3
        assert store.get_discount_by_code("FIRST3").usage_count == 3

    def test_unlimited_usage(self, store, make_discount) -> None:
        make_discount("OPEN")

        assert all(run_concurrently(lambda: store.try_increment_usage("OPEN"), times=5))
        assert store.get_discount_by_code("OPEN").usage_count == 5

    def test_duplicate_code(self, store, make_discount) -> None:
        make_discount("SAVE10")

        with pytest.raises(DuplicateError):
            make_discount("SAVE10")

    def test_duplicate_redemption(self, store) -> None:
        first = DiscountRedemption(code="ONCE", user_id="u-1", order_id="o-1")
        second = DiscountRedemption(code="ONCE", user_id="u-1", order_id="o-2")

        assert store.record_redemption(first) is True
        assert store.record_redemption(second) is False
        assert store.has_redemption("ONCE", "u-1")

    def test_decimals_round_trip(self, store, make_discount) -> None:
        discount = make_discount("TENOFF", type="fixed", value=Decimal("10.25"), minimum_purchase=Decimal("99.99"))

        stored = store.get_discount(discount.id)

        assert stored.value == Decimal("10.25")
        assert stored.minimum_purchase == Decimal("99.99")


class TestOrdersAndLedger:
    def test_claim_has_a_single_winner(self, store, make_product) -> None:
        service = CheckoutService(store)
        order, _ = service.create_order("buyer@example.com", [LineItem(product_id=make_product().id, quantity=1,
                                                                        unit_price=Decimal("20.00"))])
        event_ids = iter(range(20))

        def claim():
            return store.update_order(order.id, {"claimed_by_event": f"evt-{next(event_ids)}"},
                                      expected={"payment_status": "pending", "claimed_by_event": None})

        results = run_concurrently(claim)

        assert sum(r is not None for r in results) == 1

    def test_expected_list_means_any_of(self, store, make_product) -> None:
        service = CheckoutService(store)
        order, _ = service.create_order("buyer@example.com", [LineItem(product_id=make_product().id, quantity=1,
                                                                        unit_price=Decimal("20.00"))])

        assert store.update_order(order.id, {"payment_status": "failed"},
                                  expected={"payment_status": ["completed", "refunded"]}) is None
        updated = store.update_order(order.id, {"payment_status": "failed"},
                                     expected={"payment_status": ["pending", "completed"]})
        assert updated.payment_status == "failed"
        assert updated.total_amount == order.total_amount

    def test_ledger_never_downgrades_processed(self, store) -> None:
        store.record_webhook_event(WebhookEvent(event_id="e1", event_type="charge.success",
                                                processing_status="processed", order_id="o1"))

        store.record_webhook_event(WebhookEvent(event_id="e1", event_type="charge.success",
                                                processing_status="failed", error_message="boom"))

        stored = store.get_webhook_event("e1")
        assert stored.processing_status == "processed"
        assert stored.error_message is None

    def test_failed_entry_is_overwritten(self, store) -> None:
        store.record_webhook_event(WebhookEvent(event_id="e2", event_type="charge.success",
                                                processing_status="failed", error_message="boom"))

        store.record_webhook_event(WebhookEvent(event_id="e2", event_type="charge.success",
                                                processing_status="processed", order_id="o2"))

        assert store.get_webhook_event("e2").processing_status == "processed"

    def test_cart_converts_once(self, store, make_product) -> None:
        product = make_product()
        store.save_cart(Cart(id="c1", session_token="s1",
                             items=[CartItem(product_id=product.id, quantity=1, price_at_add=product.price)]))

        assert store.find_open_cart(session_token="s1").id == "c1"
        assert store.mark_cart_converted("c1", "o1") is True
        assert store.mark_cart_converted("c1", "o2") is False
        assert store.find_open_cart(session_token="s1") is None


class TestCheckoutFlow:
    def test_paid_order_with_duplicate_delivery(self, store, make_product, make_discount) -> None:
        service = CheckoutService(store, evaluator=DiscountEvaluator(store, clock=lambda: NOW))
        product = make_product(stock_quantity=5, price=Decimal("100.00"))
        make_discount("SAVE10", usage_limit=1)
        line = LineItem(product_id=product.id, title=product.title, quantity=2, unit_price=product.price,
                        categories=product.categories)
        order, rejected = service.create_order("buyer@example.com", [line], codes=["SAVE10"])
        assert rejected == []
        payload = {"id": 9001, "event": "charge.success",
                   "data": {"reference": f"ref-{order.id}", "metadata": {"orderId": order.id}}}

        outcomes = run_concurrently(lambda: service.handle_webhook(payload), times=10)

        assert [o.status for o in outcomes].count("processed") == 1
        paid = store.get_order(order.id)
        assert paid.payment_status == "completed"
        assert paid.paystack_reference == f"ref-{order.id}"
        assert store.get_order_by_reference(f"ref-{order.id}").id == order.id
        assert store.get_product(product.id).stock_quantity == 3
        assert store.get_discount_by_code("SAVE10").usage_count == 1
        assert store.get_webhook_event("paystack_9001").processing_status == "processed"

        refunded = service.refund(order.id)

        assert refunded.payment_status == "refunded"
        assert store.get_product(product.id).stock_quantity == 5
