"""
Discount code evaluation.

`DiscountEvaluator.evaluate` checks a code against a cart and returns a
`Verdict`. Checks run in a fixed order and the first failure is reported, so
the customer always sees one unambiguous reason:

    1. code exists               CODE_NOT_FOUND
    2. code is active            CODE_INACTIVE
    3. code has not expired      CODE_EXPIRED
    4. usage limit not reached   USAGE_LIMIT_REACHED
    5. not used by this user     ALREADY_USED_BY_USER
    6. minimum purchase met      MINIMUM_NOT_MET
    7. some item is eligible     CATEGORY_EXCLUDED
    8. stacking limit respected  STACK_LIMIT_EXCEEDED

Evaluation never mutates anything. Usage is consumed separately through
`record_usage`, once the payment for an order has actually gone through.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Sequence

import structlog
from pydantic import BaseModel

from config import DISCOUNT_CASE_INSENSITIVE, DISCOUNT_MAX_STACK, DISCOUNT_ONE_PER_USER
from errors import ErrorKind, message_for
from schemas import DiscountCode, DiscountRedemption, LineItem
from store import Store
from totals import ZERO, line_subtotal, round2, to_decimal

logger = structlog.get_logger(__name__)

SHIPPING_TYPES = {"free_shipping"}


class DiscountEffect(BaseModel):
    code: str
    type: str
    value: Decimal
    eligible_subtotal: Decimal
    discount_amount: Decimal = ZERO
    free_shipping: bool = False


class Verdict(BaseModel):
    valid: bool
    code: Optional[str] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    effect: Optional[DiscountEffect] = None

    @classmethod
    def reject(cls, kind: ErrorKind, code: Optional[str] = None) -> "Verdict":
        return cls(valid=False, code=code, error=kind, message=message_for(kind))

    def as_response(self) -> dict:
        """Shape used by the checkout UI: {valid, code?, discount?, error?}."""
        if not self.valid:
            return {"valid": False, "error": self.error.value, "message": self.message}
        return {
            "valid": True,
            "code": self.code,
            "type": self.effect.type,
            "value": self.effect.value,
            "discount": self.effect.discount_amount,
            "free_shipping": self.effect.free_shipping,
        }


def target_of(discount_type: str) -> str:
    return "shipping" if discount_type in SHIPPING_TYPES else "subtotal"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _lower(values: Iterable[str]) -> set:
    return {v.strip().lower() for v in values}


class DiscountEvaluator:
    def __init__(self, store: Store, *, case_insensitive: bool = DISCOUNT_CASE_INSENSITIVE,
                 max_stack: int = DISCOUNT_MAX_STACK, one_per_user: bool = DISCOUNT_ONE_PER_USER,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.case_insensitive = case_insensitive
        self.max_stack = max_stack
        self.one_per_user = one_per_user
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def normalize(self, code: str) -> str:
        code = (code or "").strip()
        return code.upper() if self.case_insensitive else code

    def evaluate(self, code: str, cart_subtotal, items: Sequence[LineItem] = (),
                 user_id: Optional[str] = None, applied_codes: Sequence[str] = ()) -> Verdict:
        normalized = self.normalize(code)
        discount = self.store.get_discount_by_code(normalized) if normalized else None
        if discount is None:
            return Verdict.reject(ErrorKind.CODE_NOT_FOUND, normalized or None)
        if not discount.is_active:
            return Verdict.reject(ErrorKind.CODE_INACTIVE, discount.code)
        if discount.expires_at is not None and _aware(discount.expires_at) <= self.clock():
            return Verdict.reject(ErrorKind.CODE_EXPIRED, discount.code)
        if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
            return Verdict.reject(ErrorKind.USAGE_LIMIT_REACHED, discount.code)
        if user_id and self._once_per_user(discount) and self.store.has_redemption(discount.code, user_id):
            return Verdict.reject(ErrorKind.ALREADY_USED_BY_USER, discount.code)

        subtotal = to_decimal(cart_subtotal)
        if discount.minimum_purchase is not None and subtotal < discount.minimum_purchase:
            return Verdict.reject(ErrorKind.MINIMUM_NOT_MET, discount.code)

        eligible = self.eligible_lines(discount, items)
        if items and not eligible:
            return Verdict.reject(ErrorKind.CATEGORY_EXCLUDED, discount.code)

        if self._stack_exceeded(discount, applied_codes):
            return Verdict.reject(ErrorKind.STACK_LIMIT_EXCEEDED, discount.code)

        eligible_subtotal = line_subtotal(eligible) if items else subtotal
        effect = self.compute_effect(discount, eligible, eligible_subtotal)
        if effect is None:
            # bogo needs two eligible units
            return Verdict.reject(ErrorKind.MINIMUM_NOT_MET, discount.code)
        return Verdict(valid=True, code=discount.code, effect=effect)

    def eligible_lines(self, discount: DiscountCode, items: Sequence[LineItem]) -> List[LineItem]:
        included = _lower(discount.included_categories)
        excluded = _lower(discount.excluded_categories)
        excluded_tags = _lower(discount.excluded_tags)
        eligible = []
        for line in items:
            categories = _lower(line.categories)
            if included and not categories & included:
                continue
            if categories & excluded or _lower(line.tags) & excluded_tags:
                continue
            eligible.append(line)
        return eligible

    def compute_effect(self, discount: DiscountCode, eligible: Sequence[LineItem],
                       eligible_subtotal: Decimal) -> Optional[DiscountEffect]:
        effect = DiscountEffect(
            code=discount.code,
            type=discount.type,
            value=discount.value,
            eligible_subtotal=round2(eligible_subtotal),
        )
        if discount.type == "percent":
            percent = min(discount.value, Decimal("100"))
            effect.discount_amount = round2(eligible_subtotal * percent / 100)
        elif discount.type == "fixed":
            effect.discount_amount = round2(min(discount.value, eligible_subtotal))
        elif discount.type == "free_shipping":
            effect.free_shipping = True
        elif discount.type == "bogo":
            if sum(line.quantity for line in eligible) < 2:
                return None
            cheapest = min(line.unit_price for line in eligible)
            percent = min(discount.value or Decimal("100"), Decimal("100"))
            effect.discount_amount = round2(cheapest * percent / 100)
        effect.discount_amount = max(ZERO, min(effect.discount_amount, round2(eligible_subtotal)))
        return effect

    def record_usage(self, code: str, order_id: str, user_id: Optional[str] = None) -> bool:
        """Consume one use of `code` for a paid order.

        The increment is bounded by the code's usage limit. Returns False if
        the limit was already reached by concurrent orders.
        """
        code = self.normalize(code)
        counted = self.store.try_increment_usage(code)
        if not counted:
            logger.warning("discount_usage_limit_reached_at_payment", code=code, order_id=order_id)
        if user_id:
            self.store.record_redemption(DiscountRedemption(code=code, user_id=user_id, order_id=order_id))
        return counted

    def _once_per_user(self, discount: DiscountCode) -> bool:
        return discount.once_per_user or self.one_per_user

    def _stack_exceeded(self, discount: DiscountCode, applied_codes: Sequence[str]) -> bool:
        target = target_of(discount.type)
        same_target = 0
        for applied in {self.normalize(c) for c in applied_codes}:
            if applied == discount.code:
                continue
            other = self.store.get_discount_by_code(applied)
            if other is not None and target_of(other.type) == target:
                same_target += 1
        return same_target >= self.max_stack


def combine_effects(effects: Sequence[DiscountEffect]) -> Optional[DiscountEffect]:
    """Merge the effects of stacked codes into the one the totals use.

    Subtotal discounts add up (and are clamped again by compute_totals);
    free shipping applies if any code grants it.
    """
    if not effects:
        return None
    if len(effects) == 1:
        return effects[0]
    return DiscountEffect(
        code=",".join(e.code for e in effects),
        type="combined",
        value=ZERO,
        eligible_subtotal=max(e.eligible_subtotal for e in effects),
        discount_amount=sum((e.discount_amount for e in effects), ZERO),
        free_shipping=any(e.free_shipping for e in effects),
    )
