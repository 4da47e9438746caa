"""Shared pytest fixtures for the checkout core tests.

Every test gets a fresh MemoryStore. API tests run the FastAPI app against
that store through a dependency override.
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator

import pytest
import structlog
from fastapi.testclient import TestClient

from schemas import DiscountCode, Product, User
from store import MemoryStore, new_id

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def configure_structlog_for_tests() -> None:
    """Send structlog output to stdout so capsys can capture it."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def make_product(store: MemoryStore) -> Callable[..., Product]:
    """Factory inserting a product with sensible defaults."""

    def _make(**overrides: Any) -> Product:
        pid = overrides.pop("id", new_id())
        fields: dict[str, Any] = {
            "id": pid,
            "title": f"Product {pid[-4:]}",
            "slug": f"product-{pid}",
            "price": Decimal("20.00"),
            "categories": ["vitamins"],
            "stock_quantity": 10,
        }
        fields.update(overrides)
        return store.insert_product(Product(**fields))

    return _make


@pytest.fixture
def make_discount(store: MemoryStore) -> Callable[..., DiscountCode]:
    """Factory inserting a discount code; `code` is stored as given."""

    def _make(code: str, **overrides: Any) -> DiscountCode:
        fields: dict[str, Any] = {"id": new_id(), "code": code, "type": "percent", "value": Decimal("10")}
        fields.update(overrides)
        return store.insert_discount(DiscountCode(**fields))

    return _make


@pytest.fixture
def client(store: MemoryStore) -> Iterator[TestClient]:
    from main import app, get_store

    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _headers_for(store: MemoryStore, is_admin: bool) -> dict[str, str]:
    from main import create_token

    user = User(
        id=new_id(),
        name="Admin" if is_admin else "Customer",
        email=f"{'admin' if is_admin else 'customer'}-{new_id()}@example.com",
        hashed_password="not-used",
        is_admin=is_admin,
    )
    store.insert_user(user)
    return {"Authorization": f"Bearer {create_token(user)}"}


@pytest.fixture
def admin_headers(store: MemoryStore) -> dict[str, str]:
    return _headers_for(store, is_admin=True)


@pytest.fixture
def user_headers(store: MemoryStore) -> dict[str, str]:
    return _headers_for(store, is_admin=False)
