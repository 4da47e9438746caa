"""
Error kinds and exceptions for the checkout core.

Discount verdicts carry an ErrorKind and are returned, never raised. The
exceptions below are raised where an operation cannot proceed and are
translated to HTTP responses by the route handlers.
"""
from enum import Enum
from typing import Dict, List, Optional


class ErrorKind(str, Enum):
    # discounts
    CODE_NOT_FOUND = "CODE_NOT_FOUND"
    CODE_INACTIVE = "CODE_INACTIVE"
    CODE_EXPIRED = "CODE_EXPIRED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    ALREADY_USED_BY_USER = "ALREADY_USED_BY_USER"
    MINIMUM_NOT_MET = "MINIMUM_NOT_MET"
    CATEGORY_EXCLUDED = "CATEGORY_EXCLUDED"
    STACK_LIMIT_EXCEEDED = "STACK_LIMIT_EXCEEDED"
    # inventory
    OUT_OF_STOCK = "OUT_OF_STOCK"
    PREORDER_CAP_REACHED = "PREORDER_CAP_REACHED"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    # orders / webhooks
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    ALREADY_REFUNDED = "ALREADY_REFUNDED"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"


MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.CODE_NOT_FOUND: "Discount code not found",
    ErrorKind.CODE_INACTIVE: "Discount code is inactive",
    ErrorKind.CODE_EXPIRED: "Discount code has expired",
    ErrorKind.USAGE_LIMIT_REACHED: "Discount code usage limit reached",
    ErrorKind.ALREADY_USED_BY_USER: "You have already used this discount code",
    ErrorKind.MINIMUM_NOT_MET: "Your order does not meet the minimum for this discount code",
    ErrorKind.CATEGORY_EXCLUDED: "This discount code does not apply to the items in your cart",
    ErrorKind.STACK_LIMIT_EXCEEDED: "Another discount code is already applied",
    ErrorKind.OUT_OF_STOCK: "Product is out of stock",
    ErrorKind.PREORDER_CAP_REACHED: "Pre-order limit reached for this product",
    ErrorKind.PRODUCT_NOT_FOUND: "Product not found",
    ErrorKind.ALREADY_PROCESSED: "Event already processed",
    ErrorKind.ALREADY_REFUNDED: "Order has already been refunded",
    ErrorKind.ORDER_NOT_FOUND: "Order not found",
    ErrorKind.INVALID_TRANSITION: "Order cannot move to the requested state",
}


def message_for(kind: ErrorKind) -> str:
    return MESSAGES.get(kind, kind.value)


class CommerceError(Exception):
    """Base exception for checkout-core failures."""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None) -> None:
        super().__init__(message or message_for(kind))
        self.kind = kind
        self.message = message or message_for(kind)


class NotFoundError(CommerceError):
    pass


class ConflictError(CommerceError):
    pass


class InventoryError(CommerceError):
    """Raised when a stock or pre-order commit cannot be satisfied.

    `failures` lists every offending line as {"product_id", "reason"}.
    """

    def __init__(self, failures: List[Dict[str, str]]) -> None:
        kind = ErrorKind(failures[0]["reason"]) if failures else ErrorKind.OUT_OF_STOCK
        super().__init__(kind)
        self.failures = failures


class WebhookRejected(Exception):
    """Unsigned, badly signed or malformed webhook; nothing is recorded."""
