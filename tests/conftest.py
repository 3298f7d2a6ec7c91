"""Pytest fixtures for storefront tests."""

from datetime import timedelta

import httpx
import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from storefront.auth import CurrentUser, create_access_token, create_admin_account
from storefront.config import Settings, get_settings
from storefront.coupons import CouponStore
from storefront.database import get_db, utcnow
from storefront.inventory import ProductStore
from storefront.main import app


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        JWT_SECRET="test-secret",
        BCRYPT_ROUNDS=4,
        PAYMENT_KEY_SECRET="test-payment-secret",
        INVENTORY_POLICY="reserve",
        TRUST_CLIENT_TOTALS=False,
    )


@pytest.fixture
def db():
    """A fresh in-memory database per test."""
    return AsyncMongoMockClient()["storefront_test"]


@pytest.fixture
def customer():
    return CurrentUser(user_id=str(ObjectId()), email="buyer@example.com", role="customer")


@pytest.fixture
def other_customer():
    return CurrentUser(user_id=str(ObjectId()), email="someone@example.com", role="customer")


@pytest.fixture
def customer_token(customer, settings):
    return create_access_token(customer.user_id, customer.email, customer.role, settings)


@pytest.fixture
async def admin(db, settings):
    doc = await create_admin_account(db, "Admin", "admin@example.com", "s3cret-pass", settings=settings)
    return CurrentUser(user_id=str(doc["_id"]), email=doc["email"], role=doc["role"])


@pytest.fixture
def admin_token(admin, settings):
    return create_access_token(admin.user_id, admin.email, admin.role, settings)


@pytest.fixture
def auth_headers():
    def _headers(token):
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
async def client(db, settings):
    """HTTP client bound to the app with the test database and settings."""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    """Factory inserting a product; defaults to a shirt with one size bucket."""
    async def _make(**overrides):
        data = {
            "name": "Oxford Shirt",
            "description": "Cotton oxford",
            "price": 1000.0,
            "images": ["shirt.jpg"],
            "sizes": ["M"],
            "sizeStocks": [{"size": "M", "stock": 5}],
            "variants": [],
            "isActive": True,
        }
        data.update(overrides)
        return await ProductStore(db).create(data)
    return _make


@pytest.fixture
def make_coupon(db):
    """Factory inserting a coupon that is already valid."""
    async def _make(**overrides):
        data = {
            "code": "SAVE10",
            "description": "10% off",
            "type": "percentage",
            "value": 10,
            "minAmount": 0,
            "maxDiscount": None,
            "maxAmount": None,
            "usageLimit": None,
            "usedCount": 0,
            "validFrom": utcnow() - timedelta(days=1),
            "validUntil": None,
            "isActive": True,
        }
        data.update(overrides)
        return await CouponStore(db).insert(data)
    return _make


@pytest.fixture
def address():
    return {
        "name": "Asha Rao",
        "phone": "9876543210",
        "address": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560001",
    }


@pytest.fixture
def order_payload(address):
    """Build an order request body for one line of a product."""
    def _payload(product, quantity=1, size="M", **extra):
        body = {
            "items": [{"productId": str(product["_id"]), "quantity": quantity, "size": size}],
            "shippingAddress": address,
            "paymentMethod": "cod",
        }
        body.update(extra)
        return body
    return _payload
