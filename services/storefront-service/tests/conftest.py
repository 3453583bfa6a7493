import json
import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'storefront.db')}"
os.environ["OTEL_EXPORT_ENABLED"] = "false"
os.environ["PROFILING_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"

import fakeredis
import httpx
import pytest
from fastapi.testclient import TestClient

import dependencies
from database import SessionLocal, engine, init_db
from main import app
from models import Base
from services.gateway_client import BkashGatewayClient
from services.guest_cart_store import GuestCartStore
from services.token_cache import TokenCache

CUSTOMER = {"Authorization": "Bearer customer-token-123"}
OTHER_CUSTOMER = {"Authorization": "Bearer test-token-789"}
ADMIN = {"Authorization": "Bearer admin-token-456"}
GUEST_CART_ID = "guest-device-0001"
GUEST = {"X-Guest-Cart-Id": GUEST_CART_ID}

# Seeded catalog: id -> (effective price, stock)
NAPA = 1          # 30.00, offer 27.00, stock 500
THERMOMETER = 2   # 350.00, stock 80
BP_MONITOR = 3    # 3200.00, offer 2899.00, stock 25
SANITIZER = 4     # 120.00, stock 300
FACE_MASK = 5     # 250.00, zero offer ignored, stock 150


class FakeGateway:
    """Stands in for the payment gateway behind an httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.token_response = {"id_token": "gateway-token-1", "token_type": "Bearer", "expires_in": 3600}
        self.create_response = None
        self.execute_response = {
            "statusCode": "0000",
            "statusMessage": "Successful",
            "trxID": "TRX9ABC123",
            "transactionStatus": "Completed",
        }
        self.unreachable = set()
        self._sessions = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        path = request.url.path
        self.requests.append((path, body, request.headers))

        for suffix in self.unreachable:
            if path.endswith(suffix):
                raise httpx.ConnectTimeout("timed out", request=request)

        if path.endswith("/token/grant"):
            return httpx.Response(200, json=self.token_response)
        if path.endswith("/create"):
            if self.create_response is not None:
                return httpx.Response(200, json=self.create_response)
            self._sessions += 1
            payment_id = f"TR0011SESSION{self._sessions}"
            return httpx.Response(200, json={
                "statusCode": "0000",
                "statusMessage": "Successful",
                "paymentID": payment_id,
                "bkashURL": f"https://sandbox.payment.test/checkout?paymentId={payment_id}",
                "merchantInvoiceNumber": body.get("merchantInvoiceNumber"),
            })
        if path.endswith("/execute"):
            return httpx.Response(200, json=self.execute_response)
        return httpx.Response(404, json={"statusMessage": "Not found"})

    def calls(self, suffix):
        return [body for path, body, _ in self.requests if path.endswith(suffix)]


@pytest.fixture(autouse=True)
def database():
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_sync(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def token_cache():
    return TokenCache()


@pytest.fixture
def client(redis_server, gateway, token_cache):
    # TestClient runs each request on its own event loop, so async clients
    # are created per request
    async def guest_cart_store():
        redis_client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
        yield GuestCartStore(redis_client)
        await redis_client.aclose()

    async def gateway_client():
        async with httpx.AsyncClient(transport=httpx.MockTransport(gateway.handler)) as http_client:
            yield BkashGatewayClient(http_client)

    app.dependency_overrides[dependencies.get_guest_cart_store] = guest_cart_store
    app.dependency_overrides[dependencies.get_gateway_client] = gateway_client
    app.dependency_overrides[dependencies.get_token_cache] = lambda: token_cache
    yield TestClient(app)
    app.dependency_overrides.clear()


def order_payload(items, total, payment_method="bkash", **overrides):
    """Checkout form submission with complete billing and shipping details."""
    payload = {
        "cart_items": [{"product_id": product_id, "quantity": quantity} for product_id, quantity in items],
        "total": str(total),
        "payment_method": payment_method,
        "payment_status": "pending",
        "billing_name": "Rahim Uddin",
        "billing_phone": "01711111111",
        "billing_email": "rahim@example.com",
        "billing_address": "House 12, Road 5",
        "billing_city": "Dhaka",
        "billing_district": "Dhaka",
        "billing_country": "Bangladesh",
        "billing_postal": "1207",
        "shipping_name": "Rahim Uddin",
        "shipping_phone": "01711111111",
        "shipping_address": "House 12, Road 5",
        "shipping_city": "Dhaka",
        "shipping_district": "Dhaka",
        "shipping_country": "Bangladesh",
        "shipping_postal": "1207",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def place_order(client):
    def _place(items, total, headers=None, **overrides):
        response = client.post("/orders", json=order_payload(items, total, **overrides), headers=headers or {})
        assert response.status_code == 201, response.text
        return response.json()
    return _place
