"""
Shared fixtures: an isolated app per test with JSON storage under tmp_path,
an in-memory account database and a fake payment gateway.
"""

import asyncio
import hashlib
import hmac

import pytest

from morandi.config import Settings
from morandi.server import MorandiServer
from morandi.services.payments import RazorpayClient

SHIPPING_ADDRESS = {
    "first_name": "Asha",
    "last_name": "Rao",
    "address_line_1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postal_code": "560001",
    "country": "India",
    "phone": "9876543210",
}


class FakeGateway(RazorpayClient):
    """Records gateway calls instead of talking to Razorpay."""

    def __init__(self, settings):
        super().__init__(settings)
        self.created_orders = []
        self.refunds = []
        self.payment_status = "captured"
        self.delay = 0.0
        self.refund_error = None

    async def create_order(self, amount, currency, receipt, notes=None):
        order = {
            "id": f"order_test_{len(self.created_orders) + 1}",
            "amount": int(round(amount * 100)),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        self.created_orders.append(order)
        return order

    async def fetch_payment(self, payment_id):
        await asyncio.sleep(self.delay)
        return {"id": payment_id, "status": self.payment_status}

    async def refund_payment(self, payment_id, amount, notes=None):
        await asyncio.sleep(self.delay)
        if self.refund_error is not None:
            raise self.refund_error
        refund = {
            "id": f"rfnd_test_{len(self.refunds) + 1}",
            "payment_id": payment_id,
            "amount": int(round(amount * 100)),
            "notes": notes or {},
        }
        self.refunds.append(refund)
        return refund

    def sign(self, order_id, payment_id):
        return hmac.new(
            self.key_secret.encode("utf-8"),
            f"{order_id}|{payment_id}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()


@pytest.fixture
def settings(tmp_path, monkeypatch):
    for key in ("SUPABASE_DATABASE_URL", "BLOCKED_IPS", "FRONTEND_ORIGINS", "LOG_FILE"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("NODE_ENV", "test")
    monkeypatch.setenv("API_URL", "http://testserver")
    monkeypatch.setenv("FRONTEND_URL", "http://localhost:3000")
    monkeypatch.setenv("SHOP_STORAGE_BACKEND", "json")
    monkeypatch.setenv("SHOP_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("DATABASE_URL", "sqlite://:memory:")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("RAZORPAY_KEY_ID", "rzp_test_key")
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", "rzp_test_secret")
    for group in ("AUTH", "GENERAL", "CHECKOUT", "PAYMENT"):
        monkeypatch.setenv(f"RATE_LIMIT_{group}_MAX", "1000")
    return Settings()


@pytest.fixture
def gateway(settings):
    return FakeGateway(settings)


@pytest.fixture
def server(settings, gateway):
    return MorandiServer(settings, gateway=gateway)


@pytest.fixture
async def client(aiohttp_client, server):
    return await aiohttp_client(server.app)


async def register_user(client, email, password="password123", first_name="Asha", last_name="Rao"):
    resp = await client.post(
        "/api/auth/register",
        json={"email": email, "password": password, "firstName": first_name, "lastName": last_name},
    )
    assert resp.status == 201, await resp.text()
    body = await resp.json()
    body["headers"] = {"Authorization": f"Bearer {body['token']}"}
    return body


async def csrf_headers(client, extra=None):
    resp = await client.get("/health")
    headers = {
        "X-CSRF-Token": resp.headers["X-CSRF-Token"],
        "X-Session-ID": resp.headers["X-Session-ID"],
    }
    headers.update(extra or {})
    return headers


@pytest.fixture
async def customer(client):
    return await register_user(client, "asha@example.com")


@pytest.fixture
async def admin(client, server):
    session = await register_user(client, "admin@example.com", first_name="Store", last_name="Admin")
    await server.accounts.set_role(session["user"]["id"], "admin")
    resp = await client.post("/api/auth/login", json={"email": "admin@example.com", "password": "password123"})
    body = await resp.json()
    body["headers"] = {"Authorization": f"Bearer {body['token']}"}
    return body


@pytest.fixture
def make_product(server):
    async def factory(**overrides):
        payload = {
            "name": "Organic Cotton Sheet",
            "price": 100.0,
            "stock_quantity": 10,
            "category_id": "cat-bedding",
            "sku": "SHEET-001",
            "short_description": "Soft percale sheet",
            "tags": ["cotton", "organic"],
        }
        payload.update(overrides)
        return await server.catalog.upsert_product(payload)

    return factory


async def checkout(client, product, headers, quantity=2, payment_method="razorpay", shipping_method_id="standard"):
    resp = await client.post(
        "/api/orders/checkout/init",
        json={
            "items": [
                {
                    "product_id": product["id"],
                    "quantity": quantity,
                    "unit_price": product["price"],
                    "total_price": product["price"] * quantity,
                }
            ],
            "shipping_address": SHIPPING_ADDRESS,
            "shipping_method_id": shipping_method_id,
            "payment_method": payment_method,
        },
        headers=await csrf_headers(client, headers),
    )
    return resp


async def paid_order(client, gateway, product, headers, quantity=2):
    resp = await checkout(client, product, headers, quantity=quantity)
    assert resp.status == 201, await resp.text()
    order = (await resp.json())["order"]
    payment_id = f"pay_{order['order_number']}"
    resp = await client.post(
        "/api/orders/payment/verify",
        json={
            "order_id": order["id"],
            "razorpay_order_id": order["razorpay_order_id"],
            "razorpay_payment_id": payment_id,
            "razorpay_signature": gateway.sign(order["razorpay_order_id"], payment_id),
        },
        headers=await csrf_headers(client, headers),
    )
    assert resp.status == 200, await resp.text()
    return (await resp.json())["order"]
