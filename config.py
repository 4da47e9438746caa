"""
Runtime configuration read from the environment.

Values are read once at import. Money settings are Decimals so they can be
combined with prices without float drift.
"""
import os
from decimal import Decimal


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# webhook signature checks are skipped only when this is explicitly "development"
APP_ENV = os.getenv("APP_ENV", "production")

# Security/JWT
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))

# Payments
PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")
CURRENCY = os.getenv("CURRENCY", "ZAR")

# Totals
TAX_RATE_PERCENT = Decimal(os.getenv("TAX_RATE_PERCENT", "10"))
SHIPPING_FLAT_RATE = Decimal(os.getenv("SHIPPING_FLAT_RATE", "5.00"))
FREE_SHIPPING_THRESHOLD = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "50.00"))

# Discounts
DISCOUNT_MAX_STACK = int(os.getenv("DISCOUNT_MAX_STACK", "1"))
DISCOUNT_CASE_INSENSITIVE = _flag("DISCOUNT_CASE_INSENSITIVE", "true")
DISCOUNT_ONE_PER_USER = _flag("DISCOUNT_ONE_PER_USER", "false")

# Carts
CART_ABANDON_HOURS = int(os.getenv("CART_ABANDON_HOURS", "24"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = _flag("LOG_JSON", "false")
