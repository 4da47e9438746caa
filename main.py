import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, List

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field
from starlette.concurrency import run_in_threadpool
import jwt
import structlog
from passlib.context import CryptContext

from config import APP_ENV, CART_ABANDON_HOURS, JWT_EXPIRES_MIN, JWT_SECRET, PAYSTACK_SECRET_KEY
from database import db, ensure_indexes
from discounts import Verdict
from checkout import CheckoutService
from errors import CommerceError, ConflictError, InventoryError, NotFoundError, WebhookRejected
from logs import configure_logging
from paystack import SIGNATURE_HEADER, parse_event, verify_signature
from schemas import Address, Cart, CartItem, DiscountCode, DiscountType, OrderStatus, Product, User, utcnow
from store import DuplicateError, MemoryStore, MongoStore, Store, new_id
from totals import ZERO, round2

configure_logging()
logger = structlog.get_logger("storefront")

# App setup
app = FastAPI(title="Storefront Checkout API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Store setup
if db is not None:
    ensure_indexes(db)
    _store: Store = MongoStore(db)
else:
    _store = MemoryStore()


def get_store() -> Store:
    return _store


def get_checkout(store: Store = Depends(get_store)) -> CheckoutService:
    return CheckoutService(store)


# Security/JWT setup
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


# Utilities
def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: User) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user.id,
        "email": user.email,
        "is_admin": user.is_admin,
        "exp": now + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security),
                     store: Store = Depends(get_store)) -> User:
    payload = decode_token(credentials.credentials)
    user = store.get_user(payload.get("sub", ""))
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_optional_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
                      store: Store = Depends(get_store)) -> Optional[User]:
    if credentials is None:
        return None
    return get_current_user(credentials, store)


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def http_error(exc: CommerceError) -> HTTPException:
    if isinstance(exc, InventoryError):
        return HTTPException(status_code=409, detail={"error": exc.kind.value, "failures": exc.failures})
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail={"error": exc.kind.value, "message": exc.message})
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail={"error": exc.kind.value, "message": exc.message})
    return HTTPException(status_code=400, detail={"error": exc.kind.value, "message": exc.message})


def order_out(order) -> dict:
    return order.model_dump(exclude={"claimed_by_event"})


def changes_from(payload: BaseModel, nullable: set) -> dict:
    """Fields the client sent; only `nullable` ones may be cleared with null."""
    changes = payload.model_dump(exclude_unset=True)
    invalid = sorted(k for k, v in changes.items() if v is None and k not in nullable)
    if invalid:
        raise HTTPException(status_code=400, detail=f"Fields cannot be null: {', '.join(invalid)}")
    return changes


# Schemas (request/response)
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProductIn(BaseModel):
    title: str
    slug: str
    price: Decimal = Field(..., ge=0)
    description: Optional[str] = None
    images: List[str] = []
    categories: List[str] = []
    tags: List[str] = []
    stock_quantity: int = Field(0, ge=0)
    allow_preorder: bool = False
    preorder_cap: Optional[int] = Field(None, ge=0)
    is_active: bool = True


class ProductUpdate(BaseModel):
    title: Optional[str] = None
    slug: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    description: Optional[str] = None
    images: Optional[List[str]] = None
    categories: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    allow_preorder: Optional[bool] = None
    preorder_cap: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = 1
    session_token: Optional[str] = None


class ApplyDiscountRequest(BaseModel):
    code: str
    session_token: Optional[str] = None


class ValidateDiscountRequest(BaseModel):
    code: str
    subtotal: Decimal = Field(..., ge=0)
    session_token: Optional[str] = None


class DiscountCodeIn(BaseModel):
    code: str = Field(..., min_length=1)
    type: DiscountType = "percent"
    value: Decimal = Decimal("0")
    minimum_purchase: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    included_categories: List[str] = []
    excluded_categories: List[str] = []
    excluded_tags: List[str] = []
    once_per_user: bool = False


class DiscountCodeUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1)
    type: Optional[DiscountType] = None
    value: Optional[Decimal] = None
    minimum_purchase: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None
    included_categories: Optional[List[str]] = None
    excluded_categories: Optional[List[str]] = None
    excluded_tags: Optional[List[str]] = None
    once_per_user: Optional[bool] = None


class AdminValidateRequest(BaseModel):
    code: str
    subtotal: Decimal = Field(Decimal("0"), ge=0)


class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CheckoutRequest(BaseModel):
    customer_email: EmailStr
    shipping_address: Address
    items: List[CheckoutItem] = []
    discount_code: Optional[str] = None
    session_token: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class ClaimOrdersRequest(BaseModel):
    order_ids: List[str] = Field(..., min_length=1)


# Health and helpers
@app.get("/")
def root():
    return {"message": "Storefront checkout API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "store": type(_store).__name__,
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
        else:
            response["database"] = "⚠️ Using in-memory store"
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
def user_out(user: User) -> dict:
    return {"id": user.id, "name": user.name, "email": user.email, "is_admin": user.is_admin}


@app.post("/auth/register")
def register(payload: RegisterRequest, store: Store = Depends(get_store)):
    user = User(id=new_id(), name=payload.name, email=payload.email,
                hashed_password=hash_password(payload.password))
    try:
        store.insert_user(user)
    except DuplicateError:
        raise HTTPException(status_code=400, detail="Email already registered")
    return {"token": create_token(user), "user": user_out(user)}


@app.post("/auth/login")
def login(payload: LoginRequest, store: Store = Depends(get_store)):
    user = store.get_user_by_email(payload.email)
    if not user or not verify_password(payload.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user), "user": user_out(user)}


@app.get("/me")
def me(current_user: User = Depends(get_current_user)):
    return user_out(current_user)


# Products
@app.get("/products")
def list_products(category: Optional[str] = None, store: Store = Depends(get_store)):
    items = store.list_products()
    if category:
        items = [p for p in items if category in p.categories]
    return {"items": [p.model_dump() for p in items], "total": len(items)}


@app.get("/products/{product_id}")
def get_product(product_id: str, store: Store = Depends(get_store)):
    p = store.get_product(product_id)
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    return p.model_dump()


@app.post("/products")
def create_product(payload: ProductIn, user: User = Depends(require_admin), store: Store = Depends(get_store)):
    product = Product(id=new_id(), **payload.model_dump())
    store.insert_product(product)
    logger.info("product_created", product_id=product.id, admin_id=user.id)
    return {"id": product.id}


@app.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, user: User = Depends(require_admin),
                   store: Store = Depends(get_store)):
    current = store.get_product(product_id)
    if not current:
        raise HTTPException(status_code=404, detail="Product not found")
    changes = changes_from(payload, nullable={"description", "preorder_cap"})
    cap = changes.get("preorder_cap", current.preorder_cap)
    if cap is not None and cap < current.preorder_count:
        raise HTTPException(status_code=400, detail="Pre-order cap cannot be below units already pre-ordered")
    updated = store.update_product(product_id, changes)
    logger.info("product_updated", product_id=product_id, admin_id=user.id, fields=sorted(changes))
    return updated.model_dump()


@app.delete("/products/{product_id}")
def delete_product(product_id: str, user: User = Depends(require_admin), store: Store = Depends(get_store)):
    if not store.delete_product(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"id": product_id, "deleted": True}


# Cart
def find_cart(store: Store, user: Optional[User], session_token: Optional[str], create: bool = False) -> Optional[Cart]:
    uid = user.id if user else None
    if not uid and not session_token:
        raise HTTPException(status_code=400, detail="Sign in or provide a session_token")
    cart = store.find_open_cart(user_id=uid, session_token=session_token)
    if cart is None and create:
        cart = store.save_cart(Cart(id=new_id(), user_id=uid, session_token=session_token))
    return cart


def save_cart(store: Store, cart: Cart) -> Cart:
    cart.total_amount = round2(sum((it.price_at_add * it.quantity for it in cart.items), ZERO))
    cart.last_updated = utcnow()
    return store.save_cart(cart)


def cart_out(cart: Cart, checkout: CheckoutService, user: Optional[User]) -> dict:
    out = cart.model_dump()
    try:
        totals, accepted, _ = checkout.quote(checkout.lines_from_cart(cart), cart.discount_codes,
                                             user.id if user else None)
        out["totals"] = totals.model_dump()
        out["applied_codes"] = [v.code for v in accepted]
    except NotFoundError:
        out["totals"] = None
    return out


@app.get("/cart")
def get_cart(session_token: Optional[str] = Query(None), user: Optional[User] = Depends(get_optional_user),
             store: Store = Depends(get_store), checkout: CheckoutService = Depends(get_checkout)):
    cart = find_cart(store, user, session_token, create=True)
    return cart_out(cart, checkout, user)


@app.post("/cart/add")
def cart_add(item: CartItemIn, user: Optional[User] = Depends(get_optional_user),
             store: Store = Depends(get_store), checkout: CheckoutService = Depends(get_checkout)):
    if item.quantity < 1:
        raise HTTPException(status_code=400, detail="Quantity must be at least 1")
    product = store.get_product(item.product_id)
    if not product or not product.is_active:
        raise HTTPException(status_code=404, detail="Product not found")
    cart = find_cart(store, user, item.session_token, create=True)
    for it in cart.items:
        if it.product_id == item.product_id:
            it.quantity += item.quantity
            break
    else:
        cart.items.append(CartItem(product_id=product.id, title=product.title,
                                   quantity=item.quantity, price_at_add=product.price))
    return cart_out(save_cart(store, cart), checkout, user)


@app.post("/cart/update")
def cart_update(item: CartItemIn, user: Optional[User] = Depends(get_optional_user),
                store: Store = Depends(get_store), checkout: CheckoutService = Depends(get_checkout)):
    cart = find_cart(store, user, item.session_token)
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    for it in cart.items:
        if it.product_id == item.product_id:
            it.quantity = max(1, item.quantity)
            break
    return cart_out(save_cart(store, cart), checkout, user)


@app.post("/cart/remove")
def cart_remove(item: CartItemIn, user: Optional[User] = Depends(get_optional_user),
                store: Store = Depends(get_store), checkout: CheckoutService = Depends(get_checkout)):
    cart = find_cart(store, user, item.session_token)
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    cart.items = [it for it in cart.items if it.product_id != item.product_id]
    return cart_out(save_cart(store, cart), checkout, user)


@app.post("/cart/discount")
def cart_apply_discount(payload: ApplyDiscountRequest, user: Optional[User] = Depends(get_optional_user),
                        store: Store = Depends(get_store), checkout: CheckoutService = Depends(get_checkout)):
    cart = find_cart(store, user, payload.session_token)
    if not cart or not cart.items:
        raise HTTPException(status_code=404, detail="Cart is empty")
    lines = checkout.lines_from_cart(cart)
    subtotal = sum((line.unit_price * line.quantity for line in lines), ZERO)
    verdict = checkout.evaluator.evaluate(payload.code, subtotal, lines, user_id=user.id if user else None,
                                          applied_codes=cart.discount_codes)
    if verdict.valid and verdict.code not in cart.discount_codes:
        cart.discount_codes.append(verdict.code)
        cart = save_cart(store, cart)
    return {**verdict.as_response(), "cart": cart_out(cart, checkout, user)}


@app.delete("/cart/discount/{code}")
def cart_remove_discount(code: str, session_token: Optional[str] = Query(None),
                         user: Optional[User] = Depends(get_optional_user),
                         store: Store = Depends(get_store), checkout: CheckoutService = Depends(get_checkout)):
    cart = find_cart(store, user, session_token)
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    normalized = checkout.evaluator.normalize(code)
    cart.discount_codes = [c for c in cart.discount_codes if c != normalized]
    return cart_out(save_cart(store, cart), checkout, user)


# Discounts
@app.post("/validate-discount")
def validate_discount(payload: ValidateDiscountRequest, user: Optional[User] = Depends(get_optional_user),
                      store: Store = Depends(get_store), checkout: CheckoutService = Depends(get_checkout)):
    uid = user.id if user else None
    cart = store.find_open_cart(user_id=uid, session_token=payload.session_token) if (uid or payload.session_token) else None
    lines, applied = [], []
    if cart is not None and cart.items:
        try:
            lines = checkout.lines_from_cart(cart)
        except NotFoundError as exc:
            raise http_error(exc)
        applied = cart.discount_codes
    verdict = checkout.evaluator.evaluate(payload.code, payload.subtotal, lines, user_id=uid, applied_codes=applied)
    return verdict.as_response()


def check_discount_value(discount_type: str, value: Decimal) -> None:
    if discount_type != "free_shipping" and value <= 0:
        raise HTTPException(status_code=400, detail="Discount value must be a positive number")
    if discount_type in ("percent", "bogo") and value > 100:
        raise HTTPException(status_code=400, detail="Percentage discount cannot exceed 100%")


@app.get("/admin/discounts")
def list_discounts(user: User = Depends(require_admin), store: Store = Depends(get_store)):
    return [d.model_dump() for d in store.list_discounts()]


@app.post("/admin/discounts", status_code=201)
def create_discount(payload: DiscountCodeIn, user: User = Depends(require_admin), store: Store = Depends(get_store),
                    checkout: CheckoutService = Depends(get_checkout)):
    check_discount_value(payload.type, payload.value)
    data = payload.model_dump()
    data["code"] = checkout.evaluator.normalize(payload.code)
    try:
        discount = store.insert_discount(DiscountCode(id=new_id(), **data))
    except DuplicateError:
        raise HTTPException(status_code=400, detail="Discount code already exists")
    logger.info("discount_code_created", admin_id=user.id, code=discount.code, type=discount.type,
                value=str(discount.value), usage_limit=discount.usage_limit)
    return discount.model_dump()


@app.put("/admin/discounts/{discount_id}")
def update_discount(discount_id: str, payload: DiscountCodeUpdate, user: User = Depends(require_admin),
                    store: Store = Depends(get_store), checkout: CheckoutService = Depends(get_checkout)):
    current = store.get_discount(discount_id)
    if not current:
        raise HTTPException(status_code=404, detail="Discount code not found")
    changes = changes_from(payload, nullable={"minimum_purchase", "usage_limit", "expires_at"})
    if "type" in changes or "value" in changes:
        check_discount_value(changes.get("type", current.type), changes.get("value", current.value))
    if changes.get("code"):
        changes["code"] = checkout.evaluator.normalize(changes["code"])
    try:
        updated = store.update_discount(discount_id, changes)
    except DuplicateError:
        raise HTTPException(status_code=400, detail="Discount code already exists")
    logger.info("discount_code_updated", admin_id=user.id, discount_id=discount_id, fields=sorted(changes))
    return updated.model_dump()


@app.delete("/admin/discounts/{discount_id}")
def delete_discount(discount_id: str, user: User = Depends(require_admin), store: Store = Depends(get_store)):
    if not store.delete_discount(discount_id):
        raise HTTPException(status_code=404, detail="Discount code not found")
    logger.info("discount_code_deleted", admin_id=user.id, discount_id=discount_id)
    return {"message": "Discount code deleted successfully"}


@app.post("/admin/discounts/validate")
def admin_validate_discount(payload: AdminValidateRequest, user: User = Depends(require_admin),
                            checkout: CheckoutService = Depends(get_checkout)):
    verdict: Verdict = checkout.evaluator.evaluate(payload.code, payload.subtotal)
    return verdict.as_response()


# Checkout & Orders
@app.post("/orders")
def create_order(payload: CheckoutRequest, user: Optional[User] = Depends(get_optional_user),
                 store: Store = Depends(get_store), checkout: CheckoutService = Depends(get_checkout)):
    uid = user.id if user else None
    cart = None
    codes: List[str] = []
    try:
        if payload.items:
            lines = checkout.lines_from_items([i.model_dump() for i in payload.items])
        else:
            cart = find_cart(store, user, payload.session_token)
            if not cart or not cart.items:
                raise HTTPException(status_code=400, detail="Cart is empty")
            lines = checkout.lines_from_cart(cart)
            codes.extend(cart.discount_codes)
        if payload.discount_code:
            normalized = checkout.evaluator.normalize(payload.discount_code)
            if normalized not in codes:
                codes.append(normalized)
        order, rejected = checkout.create_order(
            payload.customer_email, lines, shipping_address=payload.shipping_address,
            codes=codes, user_id=uid, cart=cart,
        )
    except CommerceError as exc:
        raise http_error(exc)
    return {
        "order": order_out(order),
        "discount_errors": [v.as_response() | {"code": v.code} for v in rejected],
    }


@app.get("/orders")
def list_orders(user: User = Depends(get_current_user), store: Store = Depends(get_store)):
    return {"items": [order_out(o) for o in store.list_orders(user_id=user.id)]}


@app.post("/orders/claim")
def claim_orders(payload: ClaimOrdersRequest, user: User = Depends(get_current_user),
                 checkout: CheckoutService = Depends(get_checkout)):
    claimed = checkout.claim_orders(user.id, user.email, payload.order_ids)
    return {"claimed": len(claimed), "order_ids": claimed}


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: User = Depends(get_current_user), store: Store = Depends(get_store)):
    order = store.get_order(order_id)
    if not order or (order.user_id != user.id and not user.is_admin):
        raise HTTPException(status_code=404, detail="Order not found")
    return order_out(order)


@app.get("/admin/orders")
def admin_list_orders(status: Optional[str] = None, user: User = Depends(require_admin),
                      store: Store = Depends(get_store)):
    orders = store.list_orders()
    if status:
        orders = [o for o in orders if o.payment_status == status]
    return {"items": [order_out(o) for o in orders]}


@app.post("/admin/orders/{order_id}/refund")
def refund_order(order_id: str, payload: RefundRequest, user: User = Depends(require_admin),
                 checkout: CheckoutService = Depends(get_checkout)):
    try:
        order = checkout.refund(order_id, payload.amount, payload.reason)
    except CommerceError as exc:
        raise http_error(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    logger.info("admin_refund", admin_id=user.id, order_id=order_id)
    return order_out(order)


@app.put("/admin/orders/{order_id}/status")
def set_order_status(order_id: str, payload: OrderStatusUpdate, user: User = Depends(require_admin),
                     checkout: CheckoutService = Depends(get_checkout)):
    try:
        order = checkout.set_order_status(order_id, payload.status)
    except CommerceError as exc:
        raise http_error(exc)
    logger.info("admin_order_status", admin_id=user.id, order_id=order_id, order_status=order.order_status)
    return order_out(order)


@app.get("/admin/carts/abandoned")
def abandoned_carts(hours: int = Query(CART_ABANDON_HOURS, ge=1), user: User = Depends(require_admin),
                    store: Store = Depends(get_store)):
    cutoff = utcnow() - timedelta(hours=hours)
    carts = store.list_abandoned_carts(cutoff)
    return {"items": [c.model_dump() for c in carts], "total": len(carts)}


# Payment webhook
@app.post("/webhook")
async def paystack_webhook(request: Request, checkout: CheckoutService = Depends(get_checkout)):
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if PAYSTACK_SECRET_KEY:
        if not verify_signature(body, signature, PAYSTACK_SECRET_KEY):
            logger.warning("webhook_signature_rejected", has_signature=bool(signature))
            raise HTTPException(status_code=400, detail="Invalid signature")
    elif APP_ENV != "development":
        logger.warning("webhook_secret_missing", app_env=APP_ENV)
        raise HTTPException(status_code=400, detail="Webhook secret not configured")
    else:
        logger.warning("webhook_signature_skipped", reason="development mode without PAYSTACK_SECRET_KEY")

    try:
        payload = parse_event(body)
        outcome = await run_in_threadpool(checkout.handle_webhook, payload)
    except WebhookRejected as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception:
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    return {"received": True, "status": outcome.status, "order_id": outcome.order_id}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
