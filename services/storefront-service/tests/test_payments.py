import asyncio
from decimal import Decimal

import httpx
import pytest

from conftest import ADMIN, CUSTOMER, NAPA, SANITIZER, THERMOMETER, FakeGateway
from database import SessionLocal
from models import Order
from schemas import PaymentCallbackRequest
from services.gateway_client import BkashGatewayClient
from services.order_service import OrderService
from services.payment_service import PaymentService


def load_order(order_id):
    with SessionLocal() as session:
        return session.get(Order, order_id)


def initiate_body(order_id=None, amount="377.00", **overrides):
    body = {
        "user_id": "user-customer-1",
        "order_id": order_id,
        "amount": amount,
        "email": "customer@example.com",
        "name": "Demo Customer",
        "phone": "01700000001",
        "purpose": "order",
    }
    body.update(overrides)
    return body


@pytest.fixture
def bkash_order(place_order):
    # 27.00 + 350.00
    return place_order([(NAPA, 1), (THERMOMETER, 1)], "377.00", headers=CUSTOMER)


@pytest.fixture
def session(client, bkash_order):
    response = client.post("/payments/initiate", json=initiate_body(bkash_order["id"]))
    assert response.status_code == 200, response.text
    return response.json()


def callback(client, session, status="success", **overrides):
    body = {
        "paymentID": session["paymentID"],
        "status": status,
        "merchantInvoiceNumber": session["correlationId"],
    }
    body.update(overrides)
    return client.post("/payments/callback", json=body)


def test_initiate_opens_gateway_session(client, gateway, bkash_order):
    response = client.post("/payments/initiate", json=initiate_body(bkash_order["id"]))

    assert response.status_code == 200
    body = response.json()
    assert body["orderId"] == bkash_order["id"]
    assert body["redirectURL"].startswith("https://sandbox.payment.test/")
    assert len(body["correlationId"]) == 10

    create = gateway.calls("/create")
    assert len(create) == 1
    assert create[0]["merchantInvoiceNumber"] == body["correlationId"]
    assert create[0]["amount"] == "377.00"
    assert create[0]["currency"] == "BDT"
    assert create[0]["intent"] == "sale"
    assert create[0]["mode"] == "0011"
    assert create[0]["callbackURL"].endswith("/payments/callback")

    order = load_order(bkash_order["id"])
    assert order.payment_transaction_id == body["correlationId"]
    assert order.gateway_payment_id == body["paymentID"]
    assert order.payment_amount == Decimal("377.00")
    assert order.payment_status == "pending"


def test_gateway_requests_carry_token_and_app_key(client, gateway, bkash_order):
    client.post("/payments/initiate", json=initiate_body(bkash_order["id"]))

    create_headers = [headers for path, _, headers in gateway.requests if path.endswith("/create")][0]
    assert create_headers["authorization"] == "gateway-token-1"
    assert "x-app-key" in create_headers


def test_amount_mismatch_makes_no_gateway_call(client, gateway, bkash_order):
    response = client.post("/payments/initiate", json=initiate_body(bkash_order["id"], amount="376.99"))

    assert response.status_code == 400
    assert response.json()["code"] == "amount_mismatch"
    assert gateway.requests == []
    assert load_order(bkash_order["id"]).payment_transaction_id is None


def test_amount_with_extra_precision_is_rejected(client, gateway, bkash_order):
    response = client.post("/payments/initiate", json=initiate_body(bkash_order["id"], amount="377.001"))

    assert response.status_code == 400
    assert gateway.requests == []


@pytest.mark.parametrize("field", ["amount", "email", "name", "user_id", "purpose"])
def test_initiate_requires_fields(client, gateway, field):
    response = client.post("/payments/initiate", json=initiate_body(**{field: None}))

    assert response.status_code == 400
    assert field in response.json()["detail"]
    assert gateway.requests == []


def test_initiate_minimum_amount(client):
    response = client.post("/payments/initiate", json=initiate_body(amount="0.50"))

    assert response.status_code == 400


def test_initiate_rejects_oversized_amount(client, gateway):
    response = client.post("/payments/initiate", json=initiate_body(amount="1e30", purpose="other"))

    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"
    assert gateway.requests == []
    with SessionLocal() as db:
        assert db.query(Order).count() == 0


def test_initiate_unknown_user(client):
    response = client.post("/payments/initiate", json=initiate_body(user_id="nobody"))

    assert response.status_code == 404


def test_initiate_unknown_order(client):
    response = client.post("/payments/initiate", json=initiate_body("missing-order"))

    assert response.status_code == 404


def test_cash_on_delivery_order_is_not_paid_online(client, place_order):
    order = place_order([(SANITIZER, 1)], "120.00", payment_method="cod", headers=CUSTOMER)

    response = client.post("/payments/initiate", json=initiate_body(order["id"], amount="120.00"))

    assert response.status_code == 409


def test_cancelled_order_cannot_be_paid(client, gateway, bkash_order):
    client.patch(f"/admin/orders/{bkash_order['id']}", json={"status": "cancelled"}, headers=ADMIN)

    response = client.post("/payments/initiate", json=initiate_body(bkash_order["id"]))

    assert response.status_code == 409
    assert gateway.requests == []
    assert load_order(bkash_order["id"]).payment_transaction_id is None


def test_cancelled_order_with_pending_payment_is_refused(client, gateway, bkash_order):
    with SessionLocal() as db:
        db.query(Order).filter(Order.id == bkash_order["id"]).update({Order.status: "cancelled"})
        db.commit()

    response = client.post("/payments/initiate", json=initiate_body(bkash_order["id"]))

    assert response.status_code == 409
    assert response.json()["code"] == "invalid_payment_state"
    assert gateway.requests == []


def test_reinitiate_returns_active_session(client, gateway, bkash_order, session):
    response = client.post("/payments/initiate", json=initiate_body(bkash_order["id"]))

    assert response.status_code == 200
    assert response.json() == session
    assert len(gateway.calls("/create")) == 1


def test_token_is_reused_across_payments(client, gateway, place_order):
    for _ in range(2):
        order = place_order([(SANITIZER, 1)], "120.00", headers=CUSTOMER)
        response = client.post("/payments/initiate", json=initiate_body(order["id"], amount="120.00"))
        assert response.status_code == 200

    assert len(gateway.calls("/token/grant")) == 1
    assert len(gateway.calls("/create")) == 2


def test_payment_without_order_creates_payment_order(client, gateway):
    response = client.post("/payments/initiate", json=initiate_body(amount="500", purpose="other"))

    assert response.status_code == 200
    order = load_order(response.json()["orderId"])
    assert order.purpose == "other"
    assert order.total == Decimal("500.00")
    assert order.user_id == "user-customer-1"
    assert len(order.cart_items) == 1
    assert Decimal(order.cart_items[0]["line_total"]) == order.total
    assert order.payment_transaction_id == response.json()["correlationId"]


def test_gateway_rejection_fails_order(client, gateway, bkash_order):
    gateway.create_response = {"statusCode": "2056", "statusMessage": "Invalid Payment State"}

    response = client.post("/payments/initiate", json=initiate_body(bkash_order["id"]))

    assert response.status_code == 502
    assert response.json()["detail"] == "Invalid Payment State"
    assert load_order(bkash_order["id"]).payment_status == "failed"


def test_gateway_timeout_leaves_order_pending(client, gateway, bkash_order):
    gateway.unreachable.add("/create")

    response = client.post("/payments/initiate", json=initiate_body(bkash_order["id"]))

    assert response.status_code == 502
    assert response.json()["code"] == "gateway_error"
    order = load_order(bkash_order["id"])
    assert order.payment_status == "pending"
    assert order.payment_transaction_id is None


def test_successful_callback_marks_order_paid(client, gateway, bkash_order, session):
    response = callback(client, session)

    assert response.status_code == 200
    assert response.json() == {"statusCode": 200, "statusMessage": "Payment completed successfully"}
    assert gateway.calls("/execute") == [{"paymentID": session["paymentID"]}]

    order = load_order(bkash_order["id"])
    assert order.payment_status == "paid"
    assert order.status == "paid"
    assert order.payment_date is not None
    assert order.gateway_trx_id == "TRX9ABC123"


def test_duplicate_callback_is_idempotent(client, gateway, bkash_order, session):
    callback(client, session)
    paid_at = load_order(bkash_order["id"]).payment_date

    response = callback(client, session)

    assert response.status_code == 200
    assert response.json()["statusMessage"] == "Payment already processed"
    assert len(gateway.calls("/execute")) == 1
    assert load_order(bkash_order["id"]).payment_date == paid_at


def test_callback_for_unknown_invoice(client, gateway, bkash_order, session):
    response = callback(client, session, merchantInvoiceNumber="ffffffffff")

    assert response.status_code == 404
    assert response.json() == {"statusCode": 404, "statusMessage": "Payment record not found"}
    assert gateway.calls("/execute") == []
    assert load_order(bkash_order["id"]).payment_status == "pending"


def test_callback_without_invoice_number(client, session):
    response = client.post("/payments/callback", json={"paymentID": session["paymentID"], "status": "success"})

    assert response.status_code == 404


def test_callback_requires_payment_id(client, session):
    response = callback(client, session, paymentID=None)

    assert response.status_code == 400
    assert response.json()["statusMessage"] == "paymentID required"


def test_callback_with_foreign_payment_id(client, gateway, bkash_order, session):
    response = callback(client, session, paymentID="TR0011SOMEONEELSE")

    assert response.status_code == 400
    assert gateway.calls("/execute") == []
    assert load_order(bkash_order["id"]).payment_status == "pending"


@pytest.mark.parametrize("status", ["cancel", "failure"])
def test_cancelled_callback_fails_without_execute(client, gateway, bkash_order, session, status):
    response = callback(client, session, status=status)

    assert response.status_code == 400
    assert gateway.calls("/execute") == []
    order = load_order(bkash_order["id"])
    assert order.payment_status == "failed"
    assert order.status == "pending"


def test_callback_after_admin_cancel_is_not_executed(client, gateway, bkash_order, session):
    client.patch(f"/admin/orders/{bkash_order['id']}", json={"status": "cancelled"}, headers=ADMIN)

    response = callback(client, session)

    assert response.json()["statusMessage"] == "Payment already processed"
    assert gateway.calls("/execute") == []
    order = load_order(bkash_order["id"])
    assert order.status == "cancelled"
    assert order.payment_status == "failed"


def test_callback_for_cancelled_order_fails_payment(client, gateway, bkash_order, session):
    with SessionLocal() as db:
        db.query(Order).filter(Order.id == bkash_order["id"]).update({Order.status: "cancelled"})
        db.commit()

    response = callback(client, session)

    assert response.status_code == 409
    assert response.json() == {"statusCode": 409, "statusMessage": "Order has been cancelled"}
    assert gateway.calls("/execute") == []
    assert load_order(bkash_order["id"]).payment_status == "failed"


def test_mark_paid_skips_cancelled_order(bkash_order, session):
    with SessionLocal() as db:
        db.query(Order).filter(Order.id == bkash_order["id"]).update({Order.status: "cancelled"})
        db.commit()

        service = PaymentService(BkashGatewayClient(http_client=None), token_cache=None, order_service=OrderService())
        assert service._mark_paid(db, bkash_order["id"], "TRX1") is False

    order = load_order(bkash_order["id"])
    assert order.status == "cancelled"
    assert order.payment_status == "pending"


def test_execute_rejection_fails_order(client, gateway, bkash_order, session):
    gateway.execute_response = {"statusCode": "2062", "statusMessage": "The payment has already been completed"}

    response = callback(client, session)

    assert response.status_code == 400
    assert response.json()["statusMessage"] == "The payment has already been completed"
    assert load_order(bkash_order["id"]).payment_status == "failed"


def test_execute_transport_error_fails_order(client, gateway, bkash_order, session):
    gateway.unreachable.add("/execute")

    response = callback(client, session)

    assert response.status_code == 500
    assert load_order(bkash_order["id"]).payment_status == "failed"


def test_payment_status_lookup(client, bkash_order, session):
    callback(client, session)

    response = client.get(f"/payments/{session['correlationId']}")

    assert response.status_code == 200
    body = response.json()
    assert body["correlationId"] == session["correlationId"]
    assert body["order_id"] == bkash_order["id"]
    assert body["payment_status"] == "paid"
    assert body["status"] == "paid"
    assert body["payment_channel"] == "bkash"
    assert Decimal(body["payment_amount"]) == Decimal("377.00")
    assert body["payment_date"] is not None


def test_payment_status_unknown(client):
    assert client.get("/payments/0123456789").status_code == 404


def test_paid_status_is_not_downgraded_by_late_failure(bkash_order, session):
    service = PaymentService(BkashGatewayClient(http_client=None), token_cache=None, order_service=OrderService())

    with SessionLocal() as db:
        assert service._mark_paid(db, bkash_order["id"], "TRX1") is True
        assert service._mark_failed(db, bkash_order["id"]) is False
        assert service._mark_paid(db, bkash_order["id"], "TRX2") is False

    order = load_order(bkash_order["id"])
    assert order.payment_status == "paid"
    assert order.gateway_trx_id == "TRX1"


def test_mark_paid_keeps_advanced_fulfilment_status(bkash_order, session):
    with SessionLocal() as db:
        db.query(Order).filter(Order.id == bkash_order["id"]).update({Order.status: "processing"})
        db.commit()

        service = PaymentService(BkashGatewayClient(http_client=None), token_cache=None, order_service=OrderService())
        service._mark_paid(db, bkash_order["id"], "TRX1")

    order = load_order(bkash_order["id"])
    assert order.payment_status == "paid"
    assert order.status == "processing"


def test_redelivered_callback_executes_once(bkash_order, session, token_cache):
    fake = FakeGateway()

    async def deliver_twice():
        async with httpx.AsyncClient(transport=httpx.MockTransport(fake.handler)) as http_client:
            service = PaymentService(BkashGatewayClient(http_client), token_cache, OrderService())
            payload = PaymentCallbackRequest(
                paymentID=session["paymentID"],
                status="success",
                merchantInvoiceNumber=session["correlationId"],
            )
            results = []
            for _ in range(2):
                with SessionLocal() as db:
                    results.append(await service.handle_callback(db, payload))
            return results

    first, second = asyncio.run(deliver_twice())

    assert first["statusCode"] == 200
    assert second == {"statusCode": 200, "statusMessage": "Payment already processed"}
    assert len(fake.calls("/execute")) == 1
