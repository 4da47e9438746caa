"""
Persistence for the checkout core.

`Store` is the interface the core talks to. Every counter that concurrent
requests fight over (stock, pre-order count, discount usage, order payment
state) is changed with one conditional write, never a read followed by a
write:

    UPDATE product SET stock_quantity = stock_quantity - :qty
    WHERE id = :id AND stock_quantity >= :qty

`MongoStore` expresses these as filtered `update_one` / `find_one_and_update`
calls. `MemoryStore` holds a lock for the duration of each operation, which
gives the same all-or-nothing behaviour inside one process.
"""
import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from schemas import (
    Cart,
    DiscountCode,
    DiscountRedemption,
    Order,
    Product,
    User,
    WebhookEvent,
    utcnow,
)


def new_id() -> str:
    return str(ObjectId())


class DuplicateError(Exception):
    """A unique field (discount code, email, payment reference) already exists."""


class Store(ABC):
    # Users
    @abstractmethod
    def insert_user(self, user: User) -> User: ...

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    # Products
    @abstractmethod
    def insert_product(self, product: Product) -> Product: ...

    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Product]: ...

    @abstractmethod
    def list_products(self, active_only: bool = True) -> List[Product]: ...

    @abstractmethod
    def update_product(self, product_id: str, changes: Dict[str, Any]) -> Optional[Product]: ...

    @abstractmethod
    def delete_product(self, product_id: str) -> bool: ...

    @abstractmethod
    def try_decrement_stock(self, product_id: str, quantity: int) -> bool:
        """Decrement stock only if at least `quantity` units remain."""

    @abstractmethod
    def restore_stock(self, product_id: str, quantity: int) -> None: ...

    @abstractmethod
    def try_reserve_preorder(self, product_id: str, quantity: int) -> bool:
        """Increment preorder_count only if it stays within preorder_cap."""

    @abstractmethod
    def release_preorder(self, product_id: str, quantity: int) -> None: ...

    # Discount codes
    @abstractmethod
    def insert_discount(self, discount: DiscountCode) -> DiscountCode: ...

    @abstractmethod
    def get_discount(self, discount_id: str) -> Optional[DiscountCode]: ...

    @abstractmethod
    def get_discount_by_code(self, code: str) -> Optional[DiscountCode]: ...

    @abstractmethod
    def list_discounts(self) -> List[DiscountCode]: ...

    @abstractmethod
    def update_discount(self, discount_id: str, changes: Dict[str, Any]) -> Optional[DiscountCode]: ...

    @abstractmethod
    def delete_discount(self, discount_id: str) -> bool: ...

    @abstractmethod
    def try_increment_usage(self, code: str) -> bool:
        """Increment usage_count only while it is below usage_limit."""

    @abstractmethod
    def has_redemption(self, code: str, user_id: str) -> bool: ...

    @abstractmethod
    def record_redemption(self, redemption: DiscountRedemption) -> bool:
        """Returns False if this user already redeemed the code."""

    # Carts
    @abstractmethod
    def save_cart(self, cart: Cart) -> Cart: ...

    @abstractmethod
    def get_cart(self, cart_id: str) -> Optional[Cart]: ...

    @abstractmethod
    def find_open_cart(self, user_id: Optional[str] = None, session_token: Optional[str] = None) -> Optional[Cart]: ...

    @abstractmethod
    def mark_cart_converted(self, cart_id: str, order_id: str) -> bool: ...

    @abstractmethod
    def list_abandoned_carts(self, updated_before: datetime) -> List[Cart]: ...

    # Orders
    @abstractmethod
    def insert_order(self, order: Order) -> Order: ...

    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]: ...

    @abstractmethod
    def get_order_by_reference(self, reference: str) -> Optional[Order]: ...

    @abstractmethod
    def list_orders(self, user_id: Optional[str] = None) -> List[Order]: ...

    @abstractmethod
    def update_order(self, order_id: str, changes: Dict[str, Any],
                     expected: Optional[Dict[str, Any]] = None) -> Optional[Order]:
        """Apply `changes` only if every field in `expected` currently matches.

        A list value in `expected` matches any of its members. Returns the
        updated order, or None when the order is missing or did not match.
        """

    # Webhook idempotency ledger
    @abstractmethod
    def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]: ...

    @abstractmethod
    def record_webhook_event(self, event: WebhookEvent) -> None:
        """Insert or overwrite the ledger entry for event.event_id.

        An entry already marked `processed` is never overwritten.
        """


# -------------------- In-memory backend --------------------

def _matches(doc: Dict[str, Any], expected: Optional[Dict[str, Any]]) -> bool:
    for key, want in (expected or {}).items():
        have = doc.get(key)
        if isinstance(want, list):
            if have not in want:
                return False
        elif have != want:
            return False
    return True


class MemoryStore(Store):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            "user": {}, "product": {}, "discount_code": {}, "discount_redemption": {},
            "cart": {}, "order": {}, "webhook_event": {},
        }

    def _put(self, table: str, key: str, model) -> None:
        self._tables[table][key] = model.model_dump()

    def _get(self, table: str, key: str, model_cls):
        doc = self._tables[table].get(key)
        return model_cls.model_validate(copy.deepcopy(doc)) if doc is not None else None

    def _update(self, table: str, key: str, changes: Dict[str, Any], model_cls,
                expected: Optional[Dict[str, Any]] = None):
        with self._lock:
            doc = self._tables[table].get(key)
            if doc is None or not _matches(doc, expected):
                return None
            updated = {**doc, **copy.deepcopy(changes)}
            model = model_cls.model_validate(updated)
            self._tables[table][key] = model.model_dump()
            return model

    # Users
    def insert_user(self, user: User) -> User:
        with self._lock:
            if self.get_user_by_email(user.email):
                raise DuplicateError("email")
            self._put("user", user.id, user)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._get("user", user_id, User)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            for doc in self._tables["user"].values():
                if doc["email"] == email:
                    return User.model_validate(copy.deepcopy(doc))
        return None

    # Products
    def insert_product(self, product: Product) -> Product:
        with self._lock:
            self._put("product", product.id, product)
        return product

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._lock:
            return self._get("product", product_id, Product)

    def list_products(self, active_only: bool = True) -> List[Product]:
        with self._lock:
            docs = [d for d in self._tables["product"].values() if d["is_active"] or not active_only]
            return [Product.model_validate(copy.deepcopy(d)) for d in docs]

    def update_product(self, product_id: str, changes: Dict[str, Any]) -> Optional[Product]:
        return self._update("product", product_id, changes, Product)

    def delete_product(self, product_id: str) -> bool:
        with self._lock:
            return self._tables["product"].pop(product_id, None) is not None

    def try_decrement_stock(self, product_id: str, quantity: int) -> bool:
        with self._lock:
            doc = self._tables["product"].get(product_id)
            if doc is None or doc["allow_preorder"] or doc["stock_quantity"] < quantity:
                return False
            doc["stock_quantity"] -= quantity
            return True

    def restore_stock(self, product_id: str, quantity: int) -> None:
        with self._lock:
            doc = self._tables["product"].get(product_id)
            if doc is not None:
                doc["stock_quantity"] += quantity

    def try_reserve_preorder(self, product_id: str, quantity: int) -> bool:
        with self._lock:
            doc = self._tables["product"].get(product_id)
            if doc is None or not doc["allow_preorder"]:
                return False
            cap = doc["preorder_cap"]
            if cap is not None and doc["preorder_count"] + quantity > cap:
                return False
            doc["preorder_count"] += quantity
            return True

    def release_preorder(self, product_id: str, quantity: int) -> None:
        with self._lock:
            doc = self._tables["product"].get(product_id)
            if doc is not None:
                doc["preorder_count"] = max(0, doc["preorder_count"] - quantity)

    # Discount codes
    def insert_discount(self, discount: DiscountCode) -> DiscountCode:
        with self._lock:
            if self.get_discount_by_code(discount.code):
                raise DuplicateError("code")
            self._put("discount_code", discount.id, discount)
        return discount

    def get_discount(self, discount_id: str) -> Optional[DiscountCode]:
        with self._lock:
            return self._get("discount_code", discount_id, DiscountCode)

    def get_discount_by_code(self, code: str) -> Optional[DiscountCode]:
        with self._lock:
            for doc in self._tables["discount_code"].values():
                if doc["code"] == code:
                    return DiscountCode.model_validate(copy.deepcopy(doc))
        return None

    def list_discounts(self) -> List[DiscountCode]:
        with self._lock:
            return [DiscountCode.model_validate(copy.deepcopy(d)) for d in self._tables["discount_code"].values()]

    def update_discount(self, discount_id: str, changes: Dict[str, Any]) -> Optional[DiscountCode]:
        with self._lock:
            code = changes.get("code")
            if code is not None:
                other = self.get_discount_by_code(code)
                if other and other.id != discount_id:
                    raise DuplicateError("code")
            return self._update("discount_code", discount_id, changes, DiscountCode)

    def delete_discount(self, discount_id: str) -> bool:
        with self._lock:
            return self._tables["discount_code"].pop(discount_id, None) is not None

    def try_increment_usage(self, code: str) -> bool:
        with self._lock:
            for doc in self._tables["discount_code"].values():
                if doc["code"] != code:
                    continue
                limit = doc["usage_limit"]
                if limit is not None and doc["usage_count"] >= limit:
                    return False
                doc["usage_count"] += 1
                return True
        return False

    def has_redemption(self, code: str, user_id: str) -> bool:
        with self._lock:
            return (code, user_id) in self._tables["discount_redemption"]

    def record_redemption(self, redemption: DiscountRedemption) -> bool:
        key = (redemption.code, redemption.user_id)
        with self._lock:
            if key in self._tables["discount_redemption"]:
                return False
            self._tables["discount_redemption"][key] = redemption.model_dump()
            return True

    # Carts
    def save_cart(self, cart: Cart) -> Cart:
        with self._lock:
            self._put("cart", cart.id, cart)
        return cart

    def get_cart(self, cart_id: str) -> Optional[Cart]:
        with self._lock:
            return self._get("cart", cart_id, Cart)

    def find_open_cart(self, user_id: Optional[str] = None, session_token: Optional[str] = None) -> Optional[Cart]:
        if not user_id and not session_token:
            return None
        with self._lock:
            for doc in self._tables["cart"].values():
                if doc["converted_to_order"]:
                    continue
                if (user_id and doc["user_id"] == user_id) or (session_token and doc["session_token"] == session_token):
                    return Cart.model_validate(copy.deepcopy(doc))
        return None

    def mark_cart_converted(self, cart_id: str, order_id: str) -> bool:
        changes = {"converted_to_order": True, "order_id": order_id, "last_updated": utcnow()}
        return self._update("cart", cart_id, changes, Cart, expected={"converted_to_order": False}) is not None

    def list_abandoned_carts(self, updated_before: datetime) -> List[Cart]:
        with self._lock:
            return [
                Cart.model_validate(copy.deepcopy(d)) for d in self._tables["cart"].values()
                if not d["converted_to_order"] and d["items"] and d["last_updated"] < updated_before
            ]

    # Orders
    def insert_order(self, order: Order) -> Order:
        with self._lock:
            if order.paystack_reference and self.get_order_by_reference(order.paystack_reference):
                raise DuplicateError("paystack_reference")
            self._put("order", order.id, order)
        return order

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            return self._get("order", order_id, Order)

    def get_order_by_reference(self, reference: str) -> Optional[Order]:
        with self._lock:
            for doc in self._tables["order"].values():
                if doc["paystack_reference"] == reference:
                    return Order.model_validate(copy.deepcopy(doc))
        return None

    def list_orders(self, user_id: Optional[str] = None) -> List[Order]:
        with self._lock:
            docs = [d for d in self._tables["order"].values() if user_id is None or d["user_id"] == user_id]
            docs.sort(key=lambda d: d["created_at"], reverse=True)
            return [Order.model_validate(copy.deepcopy(d)) for d in docs]

    def update_order(self, order_id: str, changes: Dict[str, Any],
                     expected: Optional[Dict[str, Any]] = None) -> Optional[Order]:
        with self._lock:
            reference = changes.get("paystack_reference")
            if reference:
                other = self.get_order_by_reference(reference)
                if other and other.id != order_id:
                    raise DuplicateError("paystack_reference")
            return self._update("order", order_id, {**changes, "updated_at": utcnow()}, Order, expected)

    # Webhook idempotency ledger
    def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        with self._lock:
            return self._get("webhook_event", event_id, WebhookEvent)

    def record_webhook_event(self, event: WebhookEvent) -> None:
        with self._lock:
            current = self._tables["webhook_event"].get(event.event_id)
            if current is not None and current["processing_status"] == "processed":
                return
            self._put("webhook_event", event.event_id, event)


# -------------------- MongoDB backend --------------------

def _from_doc(doc: Optional[Dict[str, Any]], model_cls):
    if not doc:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return model_cls.model_validate(doc)


def _to_doc(model) -> Dict[str, Any]:
    doc = model.model_dump()
    doc["_id"] = doc.pop("id")
    return doc


def _filter(expected: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: ({"$in": v} if isinstance(v, list) else v) for k, v in (expected or {}).items()}


class MongoStore(Store):
    def __init__(self, database) -> None:
        self.db = database

    # Users
    def insert_user(self, user: User) -> User:
        try:
            self.db["user"].insert_one(_to_doc(user))
        except DuplicateKeyError:
            raise DuplicateError("email")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return _from_doc(self.db["user"].find_one({"_id": user_id}), User)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return _from_doc(self.db["user"].find_one({"email": email}), User)

    # Products
    def insert_product(self, product: Product) -> Product:
        self.db["product"].insert_one(_to_doc(product))
        return product

    def get_product(self, product_id: str) -> Optional[Product]:
        return _from_doc(self.db["product"].find_one({"_id": product_id}), Product)

    def list_products(self, active_only: bool = True) -> List[Product]:
        filt = {"is_active": True} if active_only else {}
        return [_from_doc(p, Product) for p in self.db["product"].find(filt)]

    def update_product(self, product_id: str, changes: Dict[str, Any]) -> Optional[Product]:
        doc = self.db["product"].find_one_and_update(
            {"_id": product_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
        return _from_doc(doc, Product)

    def delete_product(self, product_id: str) -> bool:
        return self.db["product"].delete_one({"_id": product_id}).deleted_count > 0

    def try_decrement_stock(self, product_id: str, quantity: int) -> bool:
        result = self.db["product"].update_one(
            {"_id": product_id, "allow_preorder": False, "stock_quantity": {"$gte": quantity}},
            {"$inc": {"stock_quantity": -quantity}},
        )
        return result.modified_count == 1

    def restore_stock(self, product_id: str, quantity: int) -> None:
        self.db["product"].update_one({"_id": product_id}, {"$inc": {"stock_quantity": quantity}})

    def try_reserve_preorder(self, product_id: str, quantity: int) -> bool:
        result = self.db["product"].update_one(
            {
                "_id": product_id,
                "allow_preorder": True,
                "$or": [
                    {"preorder_cap": None},
                    {"$expr": {"$lte": [{"$add": ["$preorder_count", quantity]}, "$preorder_cap"]}},
                ],
            },
            {"$inc": {"preorder_count": quantity}},
        )
        return result.modified_count == 1

    def release_preorder(self, product_id: str, quantity: int) -> None:
        self.db["product"].update_one(
            {"_id": product_id, "preorder_count": {"$gte": quantity}},
            {"$inc": {"preorder_count": -quantity}},
        )

    # Discount codes
    def insert_discount(self, discount: DiscountCode) -> DiscountCode:
        try:
            self.db["discount_code"].insert_one(_to_doc(discount))
        except DuplicateKeyError:
            raise DuplicateError("code")
        return discount

    def get_discount(self, discount_id: str) -> Optional[DiscountCode]:
        return _from_doc(self.db["discount_code"].find_one({"_id": discount_id}), DiscountCode)

    def get_discount_by_code(self, code: str) -> Optional[DiscountCode]:
        return _from_doc(self.db["discount_code"].find_one({"code": code}), DiscountCode)

    def list_discounts(self) -> List[DiscountCode]:
        return [_from_doc(d, DiscountCode) for d in self.db["discount_code"].find({}).sort("code", 1)]

    def update_discount(self, discount_id: str, changes: Dict[str, Any]) -> Optional[DiscountCode]:
        try:
            doc = self.db["discount_code"].find_one_and_update(
                {"_id": discount_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            raise DuplicateError("code")
        return _from_doc(doc, DiscountCode)

    def delete_discount(self, discount_id: str) -> bool:
        return self.db["discount_code"].delete_one({"_id": discount_id}).deleted_count > 0

    def try_increment_usage(self, code: str) -> bool:
        result = self.db["discount_code"].update_one(
            {
                "code": code,
                "$or": [
                    {"usage_limit": None},
                    {"$expr": {"$lt": ["$usage_count", "$usage_limit"]}},
                ],
            },
            {"$inc": {"usage_count": 1}},
        )
        return result.modified_count == 1

    def has_redemption(self, code: str, user_id: str) -> bool:
        return self.db["discount_redemption"].find_one({"code": code, "user_id": user_id}) is not None

    def record_redemption(self, redemption: DiscountRedemption) -> bool:
        try:
            self.db["discount_redemption"].insert_one(redemption.model_dump())
        except DuplicateKeyError:
            return False
        return True

    # Carts
    def save_cart(self, cart: Cart) -> Cart:
        doc = _to_doc(cart)
        self.db["cart"].replace_one({"_id": doc["_id"]}, doc, upsert=True)
        return cart

    def get_cart(self, cart_id: str) -> Optional[Cart]:
        return _from_doc(self.db["cart"].find_one({"_id": cart_id}), Cart)

    def find_open_cart(self, user_id: Optional[str] = None, session_token: Optional[str] = None) -> Optional[Cart]:
        owners = []
        if user_id:
            owners.append({"user_id": user_id})
        if session_token:
            owners.append({"session_token": session_token})
        if not owners:
            return None
        doc = self.db["cart"].find_one({"converted_to_order": False, "$or": owners})
        return _from_doc(doc, Cart)

    def mark_cart_converted(self, cart_id: str, order_id: str) -> bool:
        result = self.db["cart"].update_one(
            {"_id": cart_id, "converted_to_order": False},
            {"$set": {"converted_to_order": True, "order_id": order_id, "last_updated": utcnow()}},
        )
        return result.modified_count == 1

    def list_abandoned_carts(self, updated_before: datetime) -> List[Cart]:
        cursor = self.db["cart"].find({
            "converted_to_order": False,
            "items.0": {"$exists": True},
            "last_updated": {"$lt": updated_before},
        }).sort("last_updated", 1)
        return [_from_doc(c, Cart) for c in cursor]

    # Orders
    def insert_order(self, order: Order) -> Order:
        doc = _to_doc(order)
        if doc.get("paystack_reference") is None:
            doc.pop("paystack_reference", None)
        try:
            self.db["order"].insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateError("paystack_reference")
        return order

    def get_order(self, order_id: str) -> Optional[Order]:
        return _from_doc(self.db["order"].find_one({"_id": order_id}), Order)

    def get_order_by_reference(self, reference: str) -> Optional[Order]:
        return _from_doc(self.db["order"].find_one({"paystack_reference": reference}), Order)

    def list_orders(self, user_id: Optional[str] = None) -> List[Order]:
        filt = {"user_id": user_id} if user_id is not None else {}
        return [_from_doc(o, Order) for o in self.db["order"].find(filt).sort("created_at", -1)]

    def update_order(self, order_id: str, changes: Dict[str, Any],
                     expected: Optional[Dict[str, Any]] = None) -> Optional[Order]:
        try:
            doc = self.db["order"].find_one_and_update(
                {"_id": order_id, **_filter(expected)},
                {"$set": {**changes, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise DuplicateError("paystack_reference")
        return _from_doc(doc, Order)

    # Webhook idempotency ledger
    def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        doc = self.db["webhook_event"].find_one({"event_id": event_id})
        if doc:
            doc.pop("_id", None)
        return WebhookEvent.model_validate(doc) if doc else None

    def record_webhook_event(self, event: WebhookEvent) -> None:
        filt = {"event_id": event.event_id, "processing_status": {"$ne": "processed"}}
        try:
            self.db["webhook_event"].update_one(filt, {"$set": event.model_dump()}, upsert=True)
        except DuplicateKeyError:
            # another writer inserted the entry first; update it unless it is processed
            self.db["webhook_event"].update_one(filt, {"$set": event.model_dump()})
