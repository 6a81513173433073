"""Pytest fixtures for storefront tests.

The service reads its configuration at import time, so the environment is
pointed at a throwaway SQLite file before anything from storefront loads.
"""

import os
import tempfile
import uuid
from datetime import timedelta
from pathlib import Path

_DB_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["POSTGRES_DSN"] = f"sqlite:///{Path(_DB_DIR) / 'storefront.db'}"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_storefront"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["CURRENCY"] = "KES"
os.environ["LOG_LEVEL"] = "WARNING"

import fakeredis
import jwt
import pytest

from fakes import FakeGateway
from storefront.core.config import settings
from storefront.db.models import (
    Coupon, CustomerType, DiscountType, Order, OrderItem, OrderStatus,
    PaymentStatus, Product, ShipmentMethod, now_utc,
)
from storefront.db.session import Base, SessionLocal, engine
from storefront.kafka import producer
from storefront.store import cart_store


@pytest.fixture(autouse=True)
def database():
    """Fresh schema for every test."""
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(database):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def redis_client(monkeypatch):
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    monkeypatch.setattr(cart_store, "get_client", lambda: client)
    return client


@pytest.fixture(autouse=True)
def events(monkeypatch):
    """Every event the service publishes, in order, as (topic, key, value)."""
    published = []
    monkeypatch.setattr(producer, "send", lambda topic, key, value: published.append((topic, key, value)))
    return published


@pytest.fixture(autouse=True)
def fast_polling(monkeypatch):
    monkeypatch.setattr(settings, "CONFIRM_WAIT_SECONDS", 10.0)
    monkeypatch.setattr(settings, "CONFIRM_POLL_INTERVAL", 0.02)


@pytest.fixture
def gateway():
    return FakeGateway(secret_key=settings.PAYSTACK_SECRET_KEY)


@pytest.fixture
def make_product(db):
    def _make(title="Linen Shirt", category="apparel", price_cents=1500, stock=10, product_id=None):
        product = Product(id=product_id, title=title, category=category, price_cents=price_cents, stock=stock)
        db.add(product)
        db.commit()
        return product.id
    return _make


@pytest.fixture
def make_coupon(db):
    def _make(code="SAVE10", discount_type=DiscountType.PERCENTAGE, value=10, **overrides):
        now = now_utc()
        fields = dict(
            code=code,
            name=overrides.pop("name", code.title()),
            discount_type=discount_type,
            value=value,
            customer_type=CustomerType.GENERAL,
            per_user_limit=1,
            minimum_order_cents=0,
            valid_from=now - timedelta(days=1),
            valid_until=now + timedelta(days=30),
            applicable_categories=[],
            excluded_categories=[],
        )
        fields.update(overrides)
        coupon = Coupon(**fields)
        db.add(coupon)
        db.commit()
        return coupon.id
    return _make


@pytest.fixture
def make_order(db):
    """Insert an order directly, bypassing checkout."""
    def _make(shopper_id="shopper-1", items=((1, 2, 1000),), payment_status=PaymentStatus.PENDING,
              order_status=OrderStatus.PENDING, reference=None, cart_id=None, created_at=None):
        total = sum(qty * price for _, qty, price in items)
        order = Order(
            shopper_id=shopper_id,
            cart_id=cart_id,
            customer_email=f"{shopper_id or 'guest'}@example.com",
            address="1 Moi Avenue",
            city="Nairobi",
            shipment_method=ShipmentMethod.STANDARD,
            order_status=order_status,
            payment_method="paystack",
            payment_status=payment_status,
            original_cents=total,
            total_cents=total,
            currency=settings.CURRENCY,
            gateway_reference=reference or f"SF-{uuid.uuid4().hex[:12]}",
            created_at=created_at or now_utc(),
        )
        for product_id, qty, price in items:
            order.items.append(OrderItem(product_id=product_id, title_snapshot=f"Product {product_id}",
                                         unit_price_cents=price, qty=qty))
        db.add(order)
        db.commit()
        return order.id
    return _make


def make_token(sub="shopper-1", role="customer", token_type="access", email=None):
    claims = {"sub": sub, "role": role, "type": token_type}
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def auth_headers():
    def _headers(sub="shopper-1", role="customer", email=None):
        return {"Authorization": f"Bearer {make_token(sub, role, email=email)}"}
    return _headers
