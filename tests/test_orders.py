import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from errors import InsufficientStock, Unexpected
from models import Order, OrderItem


@pytest.fixture
def shopper(register):
    return register(email="buyer@example.com", name="Buyer One")


def stock(catalog, pid):
    return catalog.get_product(pid)["stock"]


def order_count(engine):
    with Session(engine) as session:
        return session.scalar(select(func.count(Order.id)))


def place(client, headers, *lines):
    return client.post("/api/orders", json={
        "items": [{"product_id": pid, "quantity": qty} for pid, qty in lines],
    }, headers=headers)


def test_place_order_freezes_prices_and_takes_stock(client, products, shopper, catalog, mongo_db):
    user, headers = shopper
    a, b = products["HP-100"], products["CB-200"]

    resp = place(client, headers, (a, 2), (b, 1))

    assert resp.status_code == 201
    order = resp.json()["order"]
    assert order["total"] == 25.0
    assert order["status"] == "completed"
    assert order["user_id"] == user["id"]
    assert [(i["product_id"], i["quantity"], i["price_at_purchase"]) for i in order["items"]] == [
        (a, 2, 10.0),
        (b, 1, 5.0),
    ]
    assert stock(catalog, a) == 3
    assert stock(catalog, b) == 2

    mongo_db["products"].update_one({"sku": "HP-100"}, {"$set": {"price": 99.0}})
    again = client.get(f"/api/orders/{order['id']}", headers=headers).json()
    assert again["total"] == 25.0
    assert again["items"][0]["price_at_purchase"] == 10.0
    assert again["items"][0]["product"]["price"] == 99.0


def test_empty_order_is_rejected(client, shopper, engine):
    _, headers = shopper
    resp = client.post("/api/orders", json={"items": []}, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["message"] == "Cart is empty"
    assert order_count(engine) == 0


def test_unknown_product_rejects_whole_order(client, products, shopper, catalog, engine):
    _, headers = shopper
    missing = "507f1f77bcf86cd799439011"

    resp = place(client, headers, (products["HP-100"], 1), (missing, 1))

    assert resp.status_code == 404
    assert resp.json()["message"] == f"Product {missing} not found"
    assert stock(catalog, products["HP-100"]) == 5
    assert order_count(engine) == 0


def test_insufficient_stock_rejects_whole_order(client, products, shopper, catalog, engine):
    _, headers = shopper

    resp = place(client, headers, (products["HP-100"], 1), (products["CB-200"], 4))

    assert resp.status_code == 400
    assert resp.json()["message"] == "Insufficient stock for USB Cable"
    assert resp.json()["available_stock"] == 3
    assert stock(catalog, products["HP-100"]) == 5
    assert order_count(engine) == 0


def test_repeated_lines_are_checked_together(client, products, shopper, engine):
    _, headers = shopper
    pid = products["CB-200"]

    resp = place(client, headers, (pid, 2), (pid, 2))

    assert resp.status_code == 400
    assert order_count(engine) == 0


def test_failed_stock_decrement_rolls_back(order_service, catalog, products, shopper, engine, monkeypatch):
    user, _ = shopper
    a, b = products["HP-100"], products["MG-300"]
    real_reserve = catalog.reserve_stock

    def reserve(pid, quantity):
        if pid == b:
            # someone else bought it out between validation and decrement
            return False
        return real_reserve(pid, quantity)

    monkeypatch.setattr(catalog, "reserve_stock", reserve)

    with pytest.raises(InsufficientStock):
        order_service.place_order(user["id"], [
            {"product_id": a, "quantity": 2},
            {"product_id": b, "quantity": 1},
        ])

    assert stock(catalog, a) == 5
    assert order_count(engine) == 0
    with Session(engine) as session:
        assert session.scalar(select(func.count(OrderItem.id))) == 0


def test_stock_never_goes_negative(order_service, catalog, products, register):
    first, _ = register(email="first@example.com")
    second, _ = register(email="second@example.com")
    pid = products["CB-200"]

    order_service.place_order(first["id"], [{"product_id": pid, "quantity": 3}])
    with pytest.raises(InsufficientStock):
        order_service.place_order(second["id"], [{"product_id": pid, "quantity": 1}])

    assert stock(catalog, pid) == 0


def test_shipping_address_is_kept(client, products, shopper):
    _, headers = shopper
    address = {"street": "1 Main St", "city": "Springfield", "zip": "12345"}

    resp = client.post("/api/orders", json={
        "items": [{"product_id": products["MG-300"], "quantity": 1}],
        "shipping_address": address,
    }, headers=headers)

    assert resp.json()["order"]["shipping_address"] == address


def test_order_visibility(client, products, shopper, register, admin_headers):
    _, headers = shopper
    _, stranger = register(email="stranger@example.com")
    order = place(client, headers, (products["MG-300"], 1)).json()["order"]

    assert client.get(f"/api/orders/{order['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=admin_headers).status_code == 200

    resp = client.get(f"/api/orders/{order['id']}", headers=stranger)
    assert resp.status_code == 403
    assert resp.json()["message"] == "Unauthorized"

    # a missing order looks the same to a non-admin
    assert client.get("/api/orders/9999", headers=stranger).status_code == 403
    assert client.get("/api/orders/9999", headers=admin_headers).status_code == 404


def test_order_view_tolerates_vanished_product(client, products, shopper, mongo_db):
    _, headers = shopper
    order = place(client, headers, (products["KT-500"], 1)).json()["order"]
    mongo_db["products"].delete_one({"sku": "KT-500"})

    resp = client.get(f"/api/orders/{order['id']}", headers=headers)

    assert resp.status_code == 200
    assert resp.json()["items"][0]["product"] is None
    assert resp.json()["items"][0]["price_at_purchase"] == 39.99


def test_my_orders_newest_first(client, products, shopper, register):
    _, headers = shopper
    _, other = register(email="someone@example.com")
    first = place(client, headers, (products["MG-300"], 1)).json()["order"]
    second = place(client, headers, (products["MG-300"], 2)).json()["order"]
    place(client, other, (products["MG-300"], 1))

    orders = client.get("/api/orders/my-orders", headers=headers).json()["orders"]

    assert [o["id"] for o in orders] == [second["id"], first["id"]]


def test_admin_lists_all_orders(client, products, shopper, register, admin_headers):
    _, headers = shopper
    _, other = register(email="someone@example.com")
    place(client, headers, (products["MG-300"], 1))
    place(client, other, (products["MG-300"], 1))

    assert client.get("/api/orders", headers=headers).status_code == 403
    assert len(client.get("/api/orders", headers=admin_headers).json()["orders"]) == 2


def test_document_store_admins_cannot_place_orders(client, products, admin_headers):
    resp = place(client, admin_headers, (products["MG-300"], 1))
    assert resp.status_code == 403


def test_reports(client, products, shopper, register, admin_headers):
    _, headers = shopper
    big, other = register(email="big@example.com", name="Big Spender")
    register(email="idle@example.com", name="Window Shopper")
    place(client, headers, (products["HP-100"], 1))
    place(client, other, (products["KT-500"], 2))
    place(client, other, (products["MG-300"], 1))

    assert client.get("/api/orders/reports/daily-revenue", headers=headers).status_code == 403

    revenue = client.get("/api/orders/reports/daily-revenue", headers=admin_headers).json()["daily_revenue"]
    assert len(revenue) == 1
    assert revenue[0]["revenue"] == pytest.approx(10.0 + 79.98 + 12.5)

    top = client.get("/api/orders/reports/top-customers", headers=admin_headers).json()["top_customers"]
    assert top[0]["email"] == "big@example.com"
    assert top[0]["order_count"] == 2
    assert top[0]["total_spent"] == pytest.approx(92.48)
    assert top[1]["email"] == "buyer@example.com"
    assert top[-1]["email"] == "idle@example.com"
    assert top[-1]["order_count"] == 0
    assert top[-1]["total_spent"] == 0.0


def test_commit_failure_gives_stock_back(client, order_service, catalog, products, shopper, engine):
    _, headers = shopper
    pid = products["HP-100"]

    def lose_connection(session):
        raise OperationalError("COMMIT", {}, Exception("server closed the connection"))

    event.listen(order_service.sessions, "before_commit", lose_connection)
    try:
        resp = place(client, headers, (pid, 2))
    finally:
        event.remove(order_service.sessions, "before_commit", lose_connection)

    assert resp.status_code == 500
    assert resp.json() == {"message": "Failed to create order"}
    assert stock(catalog, pid) == 5
    assert order_count(engine) == 0


def test_product_without_price_is_not_sold(client, order_service, catalog, products, shopper, engine, mongo_db):
    user, headers = shopper
    pid = products["HP-100"]
    mongo_db["products"].update_one({"sku": "HP-100"}, {"$set": {"price": None}})

    with pytest.raises(Unexpected):
        order_service.place_order(user["id"], [{"product_id": pid, "quantity": 2}])

    resp = place(client, headers, (pid, 2))
    assert resp.status_code == 500
    assert stock(catalog, pid) == 5
    assert order_count(engine) == 0
