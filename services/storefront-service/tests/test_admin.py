import pytest

from conftest import ADMIN, BP_MONITOR, CUSTOMER, NAPA, SANITIZER
from database import SessionLocal
from models import Order, Product
from services.order_service import can_transition_payment, can_transition_status


def stock_of(product_id):
    with SessionLocal() as session:
        return session.get(Product, product_id).stock


def set_statuses(order_id, **values):
    with SessionLocal() as session:
        session.query(Order).filter(Order.id == order_id).update(values)
        session.commit()


@pytest.fixture
def order(place_order):
    return place_order([(BP_MONITOR, 2), (NAPA, 1)], "5825.00", payment_method="cod", headers=CUSTOMER)


def test_admin_routes_require_staff(client):
    assert client.get("/admin/orders").status_code == 401
    assert client.get("/admin/orders", headers=CUSTOMER).status_code == 403


def test_list_orders_filters_and_search(client, place_order):
    place_order([(NAPA, 1)], "27.00", billing_name="Karim Ahmed")
    cod = place_order([(SANITIZER, 1)], "120.00", payment_method="cod")

    by_name = client.get("/admin/orders", params={"search": "karim"}, headers=ADMIN).json()["orders"]
    assert [entry["billing_name"] for entry in by_name] == ["Karim Ahmed"]

    set_statuses(cod["id"], status="processing")
    processing = client.get("/admin/orders", params={"status": "processing"}, headers=ADMIN).json()["orders"]
    assert [entry["id"] for entry in processing] == [cod["id"]]


def test_list_orders_sorted_by_total(client, place_order):
    place_order([(SANITIZER, 1)], "120.00")
    place_order([(NAPA, 1)], "27.00")

    orders = client.get("/admin/orders", params={"sort_by": "total", "sort_order": "asc"}, headers=ADMIN).json()["orders"]

    assert [entry["total"] for entry in orders] == ["27.00", "120.00"]


def test_list_orders_rejects_unknown_sort(client):
    response = client.get("/admin/orders", params={"sort_by": "billing_name"}, headers=ADMIN)

    assert response.status_code == 400


def test_status_moves_forward(client, order):
    response = client.patch(f"/admin/orders/{order['id']}", json={"status": "processing"}, headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["status"] == "processing"

    response = client.patch(f"/admin/orders/{order['id']}", json={"status": "shipped"}, headers=ADMIN)
    assert response.json()["status"] == "shipped"


def test_status_cannot_move_backward(client, order):
    set_statuses(order["id"], status="shipped")

    response = client.patch(f"/admin/orders/{order['id']}", json={"status": "processing"}, headers=ADMIN)

    assert response.status_code == 409
    assert response.json()["code"] == "invalid_transition"


def test_cancel_returns_reserved_stock(client, order):
    assert stock_of(BP_MONITOR) == 23

    response = client.patch(f"/admin/orders/{order['id']}", json={"status": "cancelled"}, headers=ADMIN)

    assert response.status_code == 200
    assert stock_of(BP_MONITOR) == 25
    assert stock_of(NAPA) == 500


def test_cancel_fails_pending_payment(client, order):
    response = client.patch(f"/admin/orders/{order['id']}", json={"status": "cancelled"}, headers=ADMIN)

    assert response.json()["status"] == "cancelled"
    assert response.json()["payment_status"] == "failed"


def test_cancel_keeps_settled_payment(client, order):
    set_statuses(order["id"], status="paid", payment_status="paid")

    response = client.patch(f"/admin/orders/{order['id']}", json={"status": "cancelled"}, headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["payment_status"] == "paid"


def test_cancelled_is_terminal(client, order):
    client.patch(f"/admin/orders/{order['id']}", json={"status": "cancelled"}, headers=ADMIN)

    response = client.patch(f"/admin/orders/{order['id']}", json={"status": "cancelled"}, headers=ADMIN)
    assert response.status_code == 200
    assert stock_of(BP_MONITOR) == 25

    response = client.patch(f"/admin/orders/{order['id']}", json={"status": "processing"}, headers=ADMIN)
    assert response.status_code == 409


def test_delivered_order_cannot_be_cancelled(client, order):
    set_statuses(order["id"], status="delivered")

    response = client.patch(f"/admin/orders/{order['id']}", json={"status": "cancelled"}, headers=ADMIN)

    assert response.status_code == 409


def test_cash_payment_marked_paid(client, order):
    response = client.patch(f"/admin/orders/{order['id']}", json={"payment_status": "paid"}, headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["payment_status"] == "paid"
    assert response.json()["payment_date"] is not None


def test_refund_only_after_payment(client, order):
    response = client.patch(f"/admin/orders/{order['id']}", json={"payment_status": "refunded"}, headers=ADMIN)
    assert response.status_code == 409

    client.patch(f"/admin/orders/{order['id']}", json={"payment_status": "paid"}, headers=ADMIN)
    response = client.patch(f"/admin/orders/{order['id']}", json={"payment_status": "refunded"}, headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["payment_status"] == "refunded"


def test_unknown_status_rejected(client, order):
    response = client.patch(f"/admin/orders/{order['id']}", json={"status": "lost"}, headers=ADMIN)

    assert response.status_code == 400


def test_empty_update_rejected(client, order):
    response = client.patch(f"/admin/orders/{order['id']}", json={}, headers=ADMIN)

    assert response.status_code == 400


def test_unknown_order(client):
    response = client.patch("/admin/orders/missing", json={"status": "processing"}, headers=ADMIN)

    assert response.status_code == 404


@pytest.mark.parametrize("current,new,allowed", [
    ("pending", "paid", True),
    ("paid", "processing", True),
    ("processing", "pending", False),
    ("delivered", "completed", False),
    ("shipped", "cancelled", True),
    ("completed", "cancelled", False),
    ("cancelled", "processing", False),
])
def test_status_transition_rules(current, new, allowed):
    assert can_transition_status(current, new) is allowed


@pytest.mark.parametrize("current,new,allowed", [
    ("pending", "paid", True),
    ("pending", "failed", True),
    ("paid", "refunded", True),
    ("failed", "paid", False),
    ("refunded", "paid", False),
    ("pending", "refunded", False),
])
def test_payment_transition_rules(current, new, allowed):
    assert can_transition_payment(current, new) is allowed
