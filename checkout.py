"""
Checkout and payment-webhook orchestration.

Order payment lifecycle:

    pending --charge.success--> completed --refund--> refunded
    pending --charge.failed---> failed

`completed` with a partial refund stays `completed`; `failed` and `refunded`
are terminal. A completed order is fulfilled through `order_status`
(processing -> shipped -> delivered, or processing -> cancelled). Every
transition is a compare-and-set on the order document, so concurrent or
duplicated deliveries cannot apply side effects twice.

Webhook idempotency: an event id already recorded as `processed` short-circuits
before any work. Otherwise the transition runs first and the ledger entry is
written afterwards, so a crash mid-way leads to a retry, never to a silently
dropped event.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel

from config import CURRENCY, TAX_RATE_PERCENT
from discounts import DiscountEvaluator, Verdict, combine_effects
from errors import ConflictError, ErrorKind, InventoryError, NotFoundError
from inventory import InventoryLedger
from paystack import event_id_for, metadata_of, sanitize
from schemas import Address, Cart, LineItem, Order, OrderItem, WebhookEvent
from store import Store, new_id
from totals import ZERO, ShippingRule, compute_totals, round2, to_decimal

logger = structlog.get_logger(__name__)

SUCCESS_EVENTS = {"charge.success"}
FAILURE_EVENTS = {"charge.failed", "charge.canceled", "charge.cancelled"}
REFUND_EVENTS = {"refund.processed"}

STATUS_TRANSITIONS = {
    "processing": ("shipped", "cancelled"),
    "shipped": ("delivered",),
}


class WebhookOutcome(BaseModel):
    event_id: str
    status: str  # processed | skipped | already_processed
    order_id: Optional[str] = None
    detail: Optional[str] = None


class CheckoutService:
    def __init__(self, store: Store, evaluator: Optional[DiscountEvaluator] = None,
                 ledger: Optional[InventoryLedger] = None,
                 tax_rate_percent: Decimal = TAX_RATE_PERCENT,
                 shipping_rule: Optional[ShippingRule] = None):
        self.store = store
        self.evaluator = evaluator or DiscountEvaluator(store)
        self.ledger = ledger or InventoryLedger(store)
        self.tax_rate_percent = tax_rate_percent
        self.shipping_rule = shipping_rule or ShippingRule()

    # -------------------- Pricing --------------------

    def lines_from_cart(self, cart: Cart) -> List[LineItem]:
        """Cart lines priced at the price captured when each item was added."""
        lines = []
        for item in cart.items:
            product = self.store.get_product(item.product_id)
            if product is None:
                raise NotFoundError(ErrorKind.PRODUCT_NOT_FOUND, f"Product {item.product_id} no longer exists")
            lines.append(LineItem(
                product_id=item.product_id,
                title=item.title or product.title,
                quantity=item.quantity,
                unit_price=item.price_at_add,
                categories=product.categories,
                tags=product.tags,
            ))
        return lines

    def lines_from_items(self, items: Sequence[Dict[str, Any]]) -> List[LineItem]:
        """Lines for items submitted directly, priced from the catalog now."""
        lines = []
        for item in items:
            product = self.store.get_product(item["product_id"])
            if product is None or not product.is_active:
                raise NotFoundError(ErrorKind.PRODUCT_NOT_FOUND, f"Invalid product {item['product_id']}")
            lines.append(LineItem(
                product_id=product.id,
                title=product.title,
                quantity=item["quantity"],
                unit_price=product.price,
                categories=product.categories,
                tags=product.tags,
            ))
        return lines

    def apply_codes(self, codes: Sequence[str], lines: Sequence[LineItem],
                    user_id: Optional[str] = None) -> Tuple[List[Verdict], List[Verdict]]:
        """Evaluate codes in order; each accepted code counts toward stacking for the next."""
        subtotal = sum((line.unit_price * line.quantity for line in lines), ZERO)
        accepted: List[Verdict] = []
        rejected: List[Verdict] = []
        for code in codes:
            verdict = self.evaluator.evaluate(
                code, subtotal, lines, user_id=user_id, applied_codes=[v.code for v in accepted]
            )
            (accepted if verdict.valid else rejected).append(verdict)
        return accepted, rejected

    def quote(self, lines: Sequence[LineItem], codes: Sequence[str] = (), user_id: Optional[str] = None):
        accepted, rejected = self.apply_codes(codes, lines, user_id)
        effect = combine_effects([v.effect for v in accepted])
        totals = compute_totals(lines, effect, self.tax_rate_percent, self.shipping_rule)
        return totals, accepted, rejected

    # -------------------- Order creation --------------------

    def create_order(self, customer_email: str, lines: Sequence[LineItem],
                     shipping_address: Optional[Address] = None, codes: Sequence[str] = (),
                     user_id: Optional[str] = None, cart: Optional[Cart] = None):
        """Persist a pending order with frozen prices.

        Stock is checked but not taken; that happens on payment. Codes that
        fail evaluation are dropped and reported back, they do not abort the
        checkout.
        """
        if not lines:
            raise ValueError("Order has no items")
        self._check_available(lines)
        totals, accepted, rejected = self.quote(lines, codes, user_id)
        order = Order(
            id=new_id(),
            user_id=user_id,
            customer_email=customer_email,
            items=[
                OrderItem(product_id=line.product_id, product_name=line.title, quantity=line.quantity,
                          price=round2(line.unit_price))
                for line in lines
            ],
            shipping_address=shipping_address,
            subtotal=totals.subtotal,
            discount_code=",".join(v.code for v in accepted) or None,
            discount_amount=totals.discount_amount if accepted else None,
            tax_amount=totals.tax_amount,
            shipping_cost=totals.shipping_cost,
            total_amount=totals.total,
            currency=CURRENCY,
            cart_id=cart.id if cart else None,
        )
        self.store.insert_order(order)
        if cart is not None:
            self.store.mark_cart_converted(cart.id, order.id)
        logger.info("order_created", order_id=order.id, total=str(order.total_amount),
                    discount_code=order.discount_code)
        return order, rejected

    def _check_available(self, lines: Sequence[LineItem]) -> None:
        failures = []
        for line in lines:
            product = self.store.get_product(line.product_id)
            if product is None:
                continue
            if product.allow_preorder:
                cap = product.preorder_cap
                if cap is not None and product.preorder_count + line.quantity > cap:
                    failures.append({"product_id": product.id, "reason": ErrorKind.PREORDER_CAP_REACHED.value})
            elif product.stock_quantity < line.quantity:
                failures.append({"product_id": product.id, "reason": ErrorKind.OUT_OF_STOCK.value})
        if failures:
            raise InventoryError(failures)

    # -------------------- Webhooks --------------------

    def handle_webhook(self, payload: Dict[str, Any]) -> WebhookOutcome:
        event_id = event_id_for(payload)
        event_type = payload["event"]
        log = logger.bind(event_id=event_id, event_type=event_type)

        existing = self.store.get_webhook_event(event_id)
        if existing is not None and existing.processing_status == "processed":
            log.info("webhook_already_processed")
            return WebhookOutcome(event_id=event_id, status="already_processed", order_id=existing.order_id,
                                  detail=ErrorKind.ALREADY_PROCESSED.value)

        log.info("webhook_received", payload=sanitize(payload))
        try:
            outcome = self._dispatch(event_id, event_type, payload.get("data") or {})
        except Exception as exc:
            self.store.record_webhook_event(WebhookEvent(
                event_id=event_id, event_type=event_type, processing_status="failed", error_message=str(exc),
            ))
            log.exception("webhook_processing_failed")
            raise

        self.store.record_webhook_event(WebhookEvent(
            event_id=event_id, event_type=event_type, processing_status=outcome.status,
            order_id=outcome.order_id, error_message=outcome.detail if outcome.status == "skipped" else None,
        ))
        log.info("webhook_handled", status=outcome.status, order_id=outcome.order_id)
        return outcome

    def _dispatch(self, event_id: str, event_type: str, data: Dict[str, Any]) -> WebhookOutcome:
        if event_type not in SUCCESS_EVENTS | FAILURE_EVENTS | REFUND_EVENTS:
            return WebhookOutcome(event_id=event_id, status="skipped", detail=f"Unhandled event {event_type}")

        order = self._find_order(data)
        if order is None:
            return WebhookOutcome(event_id=event_id, status="skipped", detail=ErrorKind.ORDER_NOT_FOUND.value)

        if event_type in SUCCESS_EVENTS:
            status, detail = self.confirm_payment(order, data.get("reference"), event_id)
        elif event_type in FAILURE_EVENTS:
            status, detail = self.fail_payment(order, event_id)
        else:
            status, detail = self._refund_from_provider(order, data)
        return WebhookOutcome(event_id=event_id, status=status, order_id=order.id, detail=detail)

    def _find_order(self, data: Dict[str, Any]) -> Optional[Order]:
        metadata = metadata_of(data)
        order_id = metadata.get("orderId") or metadata.get("order_id")
        if order_id:
            order = self.store.get_order(str(order_id))
            if order is not None:
                return order
        reference = data.get("reference") or data.get("transaction_reference")
        return self.store.get_order_by_reference(reference) if reference else None

    def confirm_payment(self, order: Order, reference: Optional[str], event_id: str) -> Tuple[str, Optional[str]]:
        """Commit inventory and discount usage for a paid order, exactly once."""
        if order.payment_status != "pending":
            return "skipped", f"Order already {order.payment_status}"

        claimed = self.store.update_order(
            order.id, {"claimed_by_event": event_id},
            expected={"payment_status": "pending", "claimed_by_event": None},
        )
        if claimed is None:
            return "skipped", "Order is being confirmed by another event"

        guard = {"payment_status": "pending", "claimed_by_event": event_id}
        changes: Dict[str, Any] = {}
        if reference:
            changes["paystack_reference"] = reference

        committed = False
        try:
            result = self.ledger.reserve_and_commit(order.id, order.items)
            if not result.ok:
                self.store.update_order(order.id, {**changes, "payment_status": "failed",
                                                   "failure_reasons": result.failures}, expected=guard)
                logger.warning("order_payment_failed_inventory", order_id=order.id, failures=result.failures)
                return "processed", None
            committed = True

            for code in self._codes(order):
                self.evaluator.record_usage(code, order.id, order.user_id)
            self.store.update_order(order.id, {**changes, "payment_status": "completed",
                                               "order_status": "processing"}, expected=guard)
        except Exception:
            # undo so a redelivery of the event can start over
            if committed:
                self.ledger.release(order.id, order.items)
            self.store.update_order(order.id, {"claimed_by_event": None}, expected=guard)
            raise
        logger.info("order_paid", order_id=order.id, total=str(order.total_amount))
        return "processed", None

    def fail_payment(self, order: Order, event_id: str) -> Tuple[str, Optional[str]]:
        updated = self.store.update_order(
            order.id, {"payment_status": "failed"},
            expected={"payment_status": "pending", "claimed_by_event": None},
        )
        if updated is None:
            return "skipped", f"Order already {order.payment_status}"
        logger.info("order_payment_failed", order_id=order.id)
        return "processed", None

    @staticmethod
    def _codes(order: Order) -> List[str]:
        return [c for c in (order.discount_code or "").split(",") if c]

    # -------------------- Fulfilment --------------------

    def set_order_status(self, order_id: str, status: str) -> Order:
        """Move a paid order along processing -> shipped -> delivered.

        Cancelling is allowed until the order ships and returns its units to
        stock. Setting the current status again is a no-op.
        """
        order = self.store.get_order(order_id)
        if order is None:
            raise NotFoundError(ErrorKind.ORDER_NOT_FOUND)
        if order.order_status == status:
            return order
        if order.payment_status != "completed" or status not in STATUS_TRANSITIONS.get(order.order_status, ()):
            raise ConflictError(
                ErrorKind.INVALID_TRANSITION,
                f"Cannot move a {order.payment_status} order from {order.order_status} to {status}",
            )
        updated = self.store.update_order(order.id, {"order_status": status}, expected={
            "payment_status": "completed",
            "order_status": order.order_status,
        })
        if updated is None:
            raise ConflictError(ErrorKind.INVALID_TRANSITION, "Order changed concurrently")
        if status == "cancelled":
            self.ledger.release(order.id, order.items)
        logger.info("order_status_changed", order_id=order.id, previous=order.order_status, status=status)
        return updated

    def claim_orders(self, user_id: str, email: str, order_ids: Sequence[str]) -> List[str]:
        """Attach guest orders placed with `email` to the account `user_id`."""
        claimed = []
        for order_id in dict.fromkeys(order_ids):
            updated = self.store.update_order(order_id, {"user_id": user_id},
                                              expected={"user_id": None, "customer_email": email})
            if updated is not None:
                claimed.append(order_id)
        logger.info("guest_orders_claimed", user_id=user_id, claimed=len(claimed), requested=len(order_ids))
        return claimed

    # -------------------- Refunds --------------------

    def refund(self, order_id: str, amount: Optional[Decimal] = None, reason: Optional[str] = None) -> Order:
        """Record a refund against a paid order.

        Partial refunds accumulate; reaching the order total makes the refund
        full, which cancels the order and returns unshipped units to stock.
        A refund against a fully refunded order is a conflict.
        """
        order = self.store.get_order(order_id)
        if order is None:
            raise NotFoundError(ErrorKind.ORDER_NOT_FOUND)
        if order.refund_status == "full" or order.payment_status == "refunded":
            raise ConflictError(ErrorKind.ALREADY_REFUNDED)
        if order.payment_status != "completed":
            raise ConflictError(ErrorKind.INVALID_TRANSITION, f"Cannot refund an order that is {order.payment_status}")

        remaining = order.total_amount - order.refunded_amount
        if amount is None:
            amount = remaining
        else:
            amount = round2(to_decimal(amount))
            if amount <= ZERO or amount > remaining:
                raise ValueError(f"Refund amount must be greater than 0 and at most {remaining}")

        refunded = order.refunded_amount + amount
        full = refunded >= order.total_amount
        changes: Dict[str, Any] = {"refunded_amount": refunded, "refund_status": "full" if full else "partial"}
        if full:
            changes.update({"payment_status": "refunded", "order_status": "cancelled"})

        updated = self.store.update_order(order.id, changes, expected={
            "payment_status": "completed",
            "refund_status": order.refund_status,
            "refunded_amount": order.refunded_amount,
            "order_status": order.order_status,
        })
        if updated is None:
            current = self.store.get_order(order.id)
            if current is not None and current.refund_status == "full":
                raise ConflictError(ErrorKind.ALREADY_REFUNDED)
            raise ConflictError(ErrorKind.INVALID_TRANSITION, "Order changed concurrently")
        if full and order.order_status == "processing":
            self.ledger.release(order.id, order.items)
        logger.info("order_refunded", order_id=order.id, amount=str(amount), full=full, reason=reason)
        return updated

    def _refund_from_provider(self, order: Order, data: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        amount = None
        if data.get("amount") is not None:
            # provider amounts are in the minor unit
            amount = round2(to_decimal(data["amount"]) / 100)
            amount = min(amount, order.total_amount - order.refunded_amount)
        try:
            self.refund(order.id, amount, reason="refund.processed")
        except ConflictError as exc:
            return "skipped", exc.kind.value
        except ValueError as exc:
            return "skipped", str(exc)
        return "processed", None
