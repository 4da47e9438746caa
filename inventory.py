"""
Inventory ledger: stock and pre-order counters.

Commits happen only when a payment is confirmed, never when an order is
created, so pending and abandoned orders hold no stock. Each line is one
conditional write on the product (see store.Store). If any line fails, the
lines already applied are released again and the whole commit fails.
"""
from typing import Dict, List, Sequence, Tuple

import structlog
from pydantic import BaseModel, Field

from errors import ErrorKind
from store import Store

logger = structlog.get_logger(__name__)


class CommitResult(BaseModel):
    ok: bool
    failures: List[Dict[str, str]] = Field(default_factory=list)


class InventoryLedger:
    def __init__(self, store: Store):
        self.store = store

    def reserve_and_commit(self, order_id: str, line_items: Sequence) -> CommitResult:
        """Apply every line of an order, or none of them.

        `line_items` are anything with `product_id` and `quantity` (OrderItem,
        LineItem). Lines for the same product are merged first so one product
        is touched once.
        """
        applied: List[Tuple[str, int, bool]] = []
        failures: List[Dict[str, str]] = []
        for product_id, quantity in self._merge(line_items):
            product = self.store.get_product(product_id)
            if product is None:
                failures.append({"product_id": product_id, "reason": ErrorKind.PRODUCT_NOT_FOUND.value})
                break
            if product.allow_preorder:
                if not self.store.try_reserve_preorder(product_id, quantity):
                    failures.append({"product_id": product_id, "reason": ErrorKind.PREORDER_CAP_REACHED.value})
                    break
            elif not self.store.try_decrement_stock(product_id, quantity):
                failures.append({"product_id": product_id, "reason": ErrorKind.OUT_OF_STOCK.value})
                break
            applied.append((product_id, quantity, product.allow_preorder))

        if failures:
            self._rollback(applied)
            logger.warning("inventory_commit_failed", order_id=order_id, failures=failures)
            return CommitResult(ok=False, failures=failures)

        logger.info("inventory_committed", order_id=order_id, lines=len(applied))
        return CommitResult(ok=True)

    def release(self, order_id: str, line_items: Sequence) -> None:
        """Return committed units for an order, e.g. after a full refund."""
        for product_id, quantity in self._merge(line_items):
            product = self.store.get_product(product_id)
            if product is None:
                continue
            if product.allow_preorder:
                self.store.release_preorder(product_id, quantity)
            else:
                self.store.restore_stock(product_id, quantity)
        logger.info("inventory_released", order_id=order_id)

    def _rollback(self, applied: List[Tuple[str, int, bool]]) -> None:
        for product_id, quantity, preorder in reversed(applied):
            if preorder:
                self.store.release_preorder(product_id, quantity)
            else:
                self.store.restore_stock(product_id, quantity)

    @staticmethod
    def _merge(line_items: Sequence) -> List[Tuple[str, int]]:
        merged: Dict[str, int] = {}
        for line in line_items:
            merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
        return list(merged.items())
