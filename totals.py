"""
Order total computation.

All arithmetic is Decimal. Rounding (half-up, two places) is applied once per
derived amount: the discount, the tax and the shipping fee. Line subtotals are
never rounded individually.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from pydantic import BaseModel

from config import FREE_SHIPPING_THRESHOLD, SHIPPING_FLAT_RATE, TAX_RATE_PERCENT

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round2(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class ShippingRule(BaseModel):
    """Flat fee below a free-shipping threshold, measured on the discounted subtotal."""
    flat_rate: Decimal = SHIPPING_FLAT_RATE
    free_threshold: Optional[Decimal] = FREE_SHIPPING_THRESHOLD

    def __call__(self, discounted_subtotal: Decimal) -> Decimal:
        if self.free_threshold is not None and discounted_subtotal >= self.free_threshold:
            return ZERO
        return round2(self.flat_rate)


class Totals(BaseModel):
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    total: Decimal


def line_subtotal(lines: Iterable) -> Decimal:
    """Sum of unit price * quantity over LineItems or OrderItems."""
    total = ZERO
    for line in lines:
        price = getattr(line, "unit_price", None)
        if price is None:
            price = line.price
        total += to_decimal(price) * line.quantity
    return total


def compute_totals(lines, effect=None, tax_rate_percent: Decimal = TAX_RATE_PERCENT,
                   shipping_rule: Optional[ShippingRule] = None) -> Totals:
    """Combine snapshotted line prices, a discount effect, tax and shipping.

    Tax is charged on the post-discount subtotal. A free-shipping effect zeroes
    shipping regardless of the rule.
    """
    shipping_rule = shipping_rule or ShippingRule()
    subtotal = line_subtotal(lines)
    discount = min(effect.discount_amount, subtotal) if effect is not None else ZERO
    discounted = max(ZERO, subtotal - discount)
    tax = round2(discounted * to_decimal(tax_rate_percent) / 100)
    if effect is not None and effect.free_shipping:
        shipping = ZERO
    else:
        shipping = shipping_rule(discounted)
    total = max(ZERO, discounted + tax + shipping)
    return Totals(
        subtotal=round2(subtotal),
        discount_amount=round2(discount),
        tax_amount=tax,
        shipping_cost=shipping,
        total=round2(total),
    )


def recompute_order_total(order) -> Decimal:
    """Rebuild an order's total from its item snapshots and stored charges."""
    subtotal = line_subtotal(order.items)
    discounted = max(ZERO, subtotal - (order.discount_amount or ZERO))
    return round2(max(ZERO, discounted + order.tax_amount + order.shipping_cost))
