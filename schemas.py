"""
Database Schemas for the Storefront Checkout Core

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name,
with underscores between words.

Example: class DiscountCode -> collection "discount_code"

Money fields are Decimals. OrderItem is frozen: it is the price snapshot written at order time.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
OrderStatus = Literal["processing", "shipped", "delivered", "cancelled"]
RefundStatus = Literal["none", "partial", "full"]
DiscountType = Literal["percent", "fixed", "free_shipping", "bogo"]
ProcessingStatus = Literal["processed", "failed", "skipped"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Core domain models

class Address(BaseModel):
    full_name: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str
    phone: Optional[str] = None

class User(BaseModel):
    id: str
    name: str
    email: EmailStr
    hashed_password: str
    is_active: bool = True
    is_admin: bool = False

class Product(BaseModel):
    id: str
    title: str
    slug: str
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list, description="e.g. 'children' for bundle/discount exclusion")
    stock_quantity: int = Field(0, ge=0)
    allow_preorder: bool = False
    preorder_cap: Optional[int] = Field(None, ge=0)
    preorder_count: int = Field(0, ge=0)
    is_active: bool = True

class CartItem(BaseModel):
    product_id: str
    title: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price_at_add: Decimal = Field(..., ge=0)

class Cart(BaseModel):
    id: str
    user_id: Optional[str] = None
    session_token: Optional[str] = None
    items: List[CartItem] = Field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")
    discount_codes: List[str] = Field(default_factory=list)
    converted_to_order: bool = False
    order_id: Optional[str] = None
    last_updated: datetime = Field(default_factory=utcnow)

class DiscountCode(BaseModel):
    id: str
    code: str
    type: DiscountType = "percent"
    value: Decimal = Field(Decimal("0"), ge=0)
    minimum_purchase: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0, description="None means unlimited")
    usage_count: int = Field(0, ge=0)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    included_categories: List[str] = Field(default_factory=list)
    excluded_categories: List[str] = Field(default_factory=list)
    excluded_tags: List[str] = Field(default_factory=list)
    once_per_user: bool = False

class DiscountRedemption(BaseModel):
    code: str
    user_id: str
    order_id: str
    redeemed_at: datetime = Field(default_factory=utcnow)

class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    product_name: str
    quantity: int = Field(..., ge=1)
    price: Decimal = Field(..., ge=0)

class Order(BaseModel):
    id: str
    user_id: Optional[str] = None
    customer_email: EmailStr
    items: List[OrderItem]
    shipping_address: Optional[Address] = None
    subtotal: Decimal
    discount_code: Optional[str] = None
    discount_amount: Optional[Decimal] = None
    tax_amount: Decimal
    shipping_cost: Decimal
    total_amount: Decimal = Field(..., ge=0)
    currency: str = "ZAR"
    payment_status: PaymentStatus = "pending"
    order_status: OrderStatus = "processing"
    paystack_reference: Optional[str] = None
    refund_status: RefundStatus = "none"
    refunded_amount: Decimal = Decimal("0.00")
    failure_reasons: List[dict] = Field(default_factory=list)
    cart_id: Optional[str] = None
    claimed_by_event: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

class WebhookEvent(BaseModel):
    event_id: str
    event_type: str
    processing_status: ProcessingStatus
    order_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

# Checkout value objects (not persisted)

class LineItem(BaseModel):
    """A priced cart line with the catalog attributes discount rules look at."""
    product_id: str
    title: str = ""
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0)
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
