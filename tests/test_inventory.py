"""Unit tests for the inventory ledger."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from inventory import InventoryLedger
from schemas import OrderItem


def order_item(product_id: str, quantity: int) -> OrderItem:
    return OrderItem(product_id=product_id, product_name="item", quantity=quantity, price="10.00")


class TestReserveAndCommit:
    def test_decrements_stock(self, store, make_product) -> None:
        product = make_product(stock_quantity=5)

        result = InventoryLedger(store).reserve_and_commit("o1", [order_item(product.id, 2)])

        assert result.ok
        assert store.get_product(product.id).stock_quantity == 3

    def test_out_of_stock(self, store, make_product) -> None:
        product = make_product(stock_quantity=1)

        result = InventoryLedger(store).reserve_and_commit("o1", [order_item(product.id, 2)])

        assert not result.ok
        assert result.failures == [{"product_id": product.id, "reason": "OUT_OF_STOCK"}]
        assert store.get_product(product.id).stock_quantity == 1

    def test_unknown_product(self, store) -> None:
        result = InventoryLedger(store).reserve_and_commit("o1", [order_item("missing", 1)])

        assert result.failures[0]["reason"] == "PRODUCT_NOT_FOUND"

    def test_failure_rolls_back_earlier_lines(self, store, make_product) -> None:
        plenty = make_product(stock_quantity=10)
        preorder = make_product(allow_preorder=True, preorder_cap=5, preorder_count=1)
        scarce = make_product(stock_quantity=0)

        result = InventoryLedger(store).reserve_and_commit(
            "o1", [order_item(plenty.id, 4), order_item(preorder.id, 2), order_item(scarce.id, 1)],
        )

        assert not result.ok
        assert store.get_product(plenty.id).stock_quantity == 10
        assert store.get_product(preorder.id).preorder_count == 1
        assert store.get_product(scarce.id).stock_quantity == 0

    def test_duplicate_lines_are_merged(self, store, make_product) -> None:
        product = make_product(stock_quantity=3)

        result = InventoryLedger(store).reserve_and_commit(
            "o1", [order_item(product.id, 2), order_item(product.id, 2)],
        )

        assert not result.ok
        assert store.get_product(product.id).stock_quantity == 3


class TestPreorders:
    def test_cap_is_enforced(self, store, make_product) -> None:
        product = make_product(allow_preorder=True, preorder_cap=3, preorder_count=2, stock_quantity=0)
        ledger = InventoryLedger(store)

        assert ledger.reserve_and_commit("o1", [order_item(product.id, 1)]).ok
        result = ledger.reserve_and_commit("o2", [order_item(product.id, 1)])

        assert result.failures == [{"product_id": product.id, "reason": "PREORDER_CAP_REACHED"}]
        assert store.get_product(product.id).preorder_count == 3

    def test_preorder_does_not_touch_stock(self, store, make_product) -> None:
        product = make_product(allow_preorder=True, preorder_cap=None, stock_quantity=0)

        result = InventoryLedger(store).reserve_and_commit("o1", [order_item(product.id, 50)])

        assert result.ok
        stored = store.get_product(product.id)
        assert stored.preorder_count == 50
        assert stored.stock_quantity == 0

    def test_concurrent_commits_never_exceed_cap(self, store, make_product) -> None:
        product = make_product(allow_preorder=True, preorder_cap=3, stock_quantity=0)
        ledger = InventoryLedger(store)

        with ThreadPoolExecutor(max_workers=20) as pool:
            results = list(pool.map(
                lambda n: ledger.reserve_and_commit(f"o{n}", [order_item(product.id, 1)]), range(20),
            ))

        assert sum(r.ok for r in results) == 3
        assert store.get_product(product.id).preorder_count == 3


class TestRelease:
    def test_release_returns_stock_and_preorders(self, store, make_product) -> None:
        stocked = make_product(stock_quantity=5)
        preorder = make_product(allow_preorder=True, preorder_cap=10)
        items = [order_item(stocked.id, 2), order_item(preorder.id, 3)]
        ledger = InventoryLedger(store)
        ledger.reserve_and_commit("o1", items)

        ledger.release("o1", items)

        assert store.get_product(stocked.id).stock_quantity == 5
        assert store.get_product(preorder.id).preorder_count == 0

    def test_release_ignores_deleted_products(self, store, make_product) -> None:
        product = make_product(stock_quantity=5)
        store.delete_product(product.id)

        InventoryLedger(store).release("o1", [order_item(product.id, 1)])

        assert store.get_product(product.id) is None
