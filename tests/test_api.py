import asyncio

import pytest
from fastapi.testclient import TestClient

from order_service.config import Settings
from order_service.emitter import InMemoryEmitter
from order_service.main import create_app
from order_service.store import InMemoryOrderStore

from conftest import FailingEmitter, new_order_payload


@pytest.fixture()
def emitter():
    return InMemoryEmitter()


@pytest.fixture()
def client(emitter):
    app = create_app(Settings(), store=InMemoryOrderStore(), emitter=emitter)
    with TestClient(app) as test_client:
        yield test_client


def _place(client, user_id="u1", **overrides):
    response = client.post(f"/order/add/{user_id}", json=new_order_payload(user_id=user_id, **overrides))
    assert response.status_code == 200, response.text
    return response.json()["order_id"]


def _payment(order_id, success=True, message="transaction successful"):
    return {
        "metadata": {"domain": "Payment", "source": "ValidateCreditCard", "type": "CreditCardValidated"},
        "data": {"orderID": order_id, "success": success, "message": message},
    }


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "order-service"}


def test_add_order_answers_pending_payment(client, emitter):
    response = client.post("/order/add/u1", json=new_order_payload())

    assert response.status_code == 200
    body = response.json()
    assert body["order_id"]
    assert body["userid"] == "u1"
    assert body["payment"] == {"message": "pending payment", "success": False}
    [message] = emitter.messages("payment")
    assert message["data"]["orderID"] == body["order_id"]


def test_path_user_overrides_body_user(client):
    response = client.post("/order/add/u9", json=new_order_payload(user_id="someone-else"))

    assert response.json()["userid"] == "u9"


def test_stored_order_is_served_without_card(client):
    order_id = _place(client)

    response = client.get(f"/order/id/{order_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["_id"] == order_id
    assert body["status"] == "PendingPayment"
    assert body["total"] == "42.00"
    assert "card" not in body


def test_listing_all_and_per_user(client):
    first = _place(client, "u1")
    second = _place(client, "u1")
    _place(client, "u2")

    everything = client.get("/order/all").json()
    mine = client.get("/order/u1").json()

    assert len(everything) == 3
    assert {o["_id"] for o in mine} == {first, second}
    assert client.get("/order/nobody").json() == []


def test_payment_then_shipment_callbacks(client, emitter):
    order_id = _place(client)

    paid = client.post("/order/payment", json=_payment(order_id))
    assert paid.status_code == 200
    assert paid.json()["status"] == "PendingShipment"
    assert len(emitter.messages("shipment")) == 1

    shipped = client.post(
        "/order/shipment",
        json={"data": {"orderNumber": order_id, "status": "Shipped", "trackingNumber": "TRK-1"}},
    )
    assert shipped.status_code == 200
    assert shipped.json()["status"] == "Shipped"
    assert shipped.json()["statusMessage"] == "tracking number TRK-1"


def test_redelivered_payment_is_answered_without_side_effects(client, emitter):
    order_id = _place(client)
    client.post("/order/payment", json=_payment(order_id))

    again = client.post("/order/payment", json=_payment(order_id))

    assert again.status_code == 200
    assert again.json()["status"] == "PendingShipment"
    assert len(emitter.messages("shipment")) == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"total": "lots"},
        {"total": 19.9},
        {"card": None},
        {"cart": [{"id": "x", "quantity": 0, "price": "1.00"}]},
    ],
)
def test_malformed_order_is_bad_request(client, emitter, overrides):
    response = client.post("/order/add/u1", json=new_order_payload(**overrides))

    assert response.status_code == 400
    assert response.json()["detail"]
    assert emitter.sent == []


def test_empty_cart_is_bad_request(client):
    response = client.post("/order/add/u1", json=new_order_payload(cart=[]))

    assert response.status_code == 400
    assert response.json() == {"detail": "cart is empty"}


def test_unknown_order_is_not_found(client):
    assert client.get("/order/id/nope").status_code == 404
    assert client.post("/order/payment", json=_payment("nope")).status_code == 404


def test_shipment_before_payment_is_conflict(client):
    order_id = _place(client)

    response = client.post(
        "/order/shipment", json={"data": {"orderNumber": order_id, "status": "Shipped"}}
    )

    assert response.status_code == 409


def test_missing_order_number_is_bad_request(client):
    response = client.post("/order/shipment", json={"data": {"status": "Shipped"}})

    assert response.status_code == 400
    assert "orderNumber" in response.json()["detail"]


def test_transport_failure_is_bad_gateway_and_retry_recovers():
    emitter = FailingEmitter(fail_topics=["payment"])
    app = create_app(Settings(), store=InMemoryOrderStore(), emitter=emitter)
    with TestClient(app) as client:
        response = client.post("/order/add/u1", json=new_order_payload())
        assert response.status_code == 502

        [order] = client.get("/order/u1").json()
        assert order["status"] == "PaymentRequestFailed"

        emitter.fail_topics.clear()
        retried = client.post(
            f"/order/{order['_id']}/payment/retry",
            json={"card": new_order_payload()["card"]},
        )
        assert retried.status_code == 200
        assert client.get(f"/order/id/{order['_id']}").json()["status"] == "PendingPayment"
        assert len(emitter.messages("payment")) == 1


def test_unreadable_order_is_reported_not_crashed():
    store = InMemoryOrderStore()
    asyncio.run(store.put_raw("o-bad", "u1", '{"_id": "o-bad", "status": "Bogus"}'))
    app = create_app(Settings(), store=store, emitter=InMemoryEmitter())
    with TestClient(app) as client:
        read = client.get("/order/id/o-bad")
        shipped = client.post("/order/shipment", json={"data": {"orderNumber": "o-bad", "status": "Shipped"}})

    assert read.status_code == 500
    assert read.json() == {"detail": "order o-bad is unreadable"}
    assert shipped.status_code == 500
    assert shipped.json() == {"detail": "order o-bad is unreadable"}
