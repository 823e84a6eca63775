import uuid

import pytest
from _helper import Marketplace, run
from fastapi.testclient import TestClient

from dispatch_engine.main import create_app
from dispatch_engine.models import ActorContext


def headers(actor: ActorContext) -> dict:
    result = {}
    if actor.user_id:
        result["X-User-Id"] = str(actor.user_id)
    if actor.role:
        result["X-User-Role"] = actor.role.value
    if actor.vendor_ids:
        result["X-Vendor-Ids"] = ",".join(str(v) for v in actor.vendor_ids)
    if actor.courier_id:
        result["X-Courier-Id"] = str(actor.courier_id)
    return result


def order_payload(market: Marketplace) -> dict:
    return {
        "branch_id": str(market.branch.id),
        "type": "delivery",
        "address_text": "Fountain Square 1, Baku",
        "delivery_fee": "5.00",
        "items": [
            {"product_id": str(uuid.uuid4()), "name": "Lahmacun", "unit_price": "12.50", "qty": 2},
            {"product_id": str(uuid.uuid4()), "name": "Ayran", "unit_price": "3.99", "qty": 1},
        ],
    }


@pytest.fixture()
def client(market):
    with TestClient(create_app(market.engine)) as c:
        yield c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_create_and_read_order(client, market):
    customer = market.customer()
    r = client.post("/orders", json=order_payload(market), headers=headers(customer))
    assert r.status_code == 201
    body = r.json()
    assert body["order"]["status"] == "NEW"
    assert body["order"]["total"] == "33.99"
    assert len(body["items"]) == 2

    order_id = body["order"]["id"]
    r = client.get(f"/orders/{order_id}", headers=headers(customer))
    assert r.status_code == 200
    assert r.json()["order"]["id"] == order_id

    r = client.get(f"/orders/{order_id}", headers=headers(market.customer()))
    assert r.status_code == 403
    assert r.json()["code"] == "FORBIDDEN"


def test_idempotency_key_header(client, market):
    customer = market.customer()
    h = {**headers(customer), "Idempotency-Key": "checkout-42"}
    first = client.post("/orders", json=order_payload(market), headers=h)
    second = client.post("/orders", json=order_payload(market), headers=h)
    assert first.status_code == second.status_code == 201
    assert first.json()["order"]["id"] == second.json()["order"]["id"]


def test_malformed_body_is_validation_error(client, market):
    r = client.post("/orders", json={"items": []}, headers=headers(market.customer()))
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"


def test_unknown_role_cannot_create(client, market):
    h = {"X-User-Id": str(uuid.uuid4()), "X-User-Role": "superhero"}
    r = client.post("/orders", json=order_payload(market), headers=h)
    assert r.status_code == 403


def test_transition_endpoint(client, market):
    order = run(market.place_order(market.customer()))
    vendor = headers(market.vendor_admin())

    r = client.post(f"/orders/{order.id}/transition", json={"status": "REJECTED"}, headers=vendor)
    assert r.status_code == 400
    assert r.json()["details"]["field"] == "reason"

    r = client.post(f"/orders/{order.id}/transition", json={"status": "CONFIRMED"}, headers=vendor)
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "CONFIRMED"

    r = client.post(f"/orders/{order.id}/transition", json={"status": "CONFIRMED"}, headers=vendor)
    assert r.status_code == 409
    assert r.json()["code"] == "INVALID_TRANSITION"

    r = client.get(f"/orders/{order.id}/history", headers=vendor)
    assert [h["to_status"] for h in r.json()["history"]] == ["NEW", "CONFIRMED"]


def test_assign_and_unassign_endpoints(client, market):
    first, _ = market.add_courier()
    second, _ = market.add_courier()
    order = run(market.confirmed_order())
    vendor = headers(market.vendor_admin())
    url = f"/vendor/orders/{order.id}/assign-courier"

    r = client.post(url, json={"courier_id": str(first.id)}, headers=vendor)
    assert r.status_code == 200
    assert r.json()["order"]["courier_id"] == str(first.id)

    r = client.post(url, json={"courier_id": str(second.id)}, headers=vendor)
    assert r.status_code == 409
    assert r.json()["code"] == "ALREADY_ASSIGNED"

    r = client.delete(url, headers=vendor)
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "CONFIRMED"
    assert r.json()["order"]["courier_id"] is None


def test_available_couriers_endpoint(client, market):
    market.add_courier()
    market.add_courier(online=False)
    r = client.get("/vendor/couriers/available", headers=headers(market.vendor_admin()))
    assert r.status_code == 200
    assert r.json()["total_count"] == 1


def test_shift_endpoint(client, market):
    courier, actor = market.add_courier(online=False)
    r = client.put("/courier/shift", json={"shift_status": "online"}, headers=headers(actor))
    assert r.status_code == 200
    assert r.json()["courier"]["shift_status"] == "online"
    assert market.store.couriers[courier.id].shift_status == "online"


def test_location_endpoint(client, market):
    _, actor = market.add_courier()
    r = client.post("/courier/location", json={"lat": 40.4093, "lng": 49.8671}, headers=headers(actor))
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["position"] == {"type": "Point", "coordinates": [49.8671, 40.4093]}

    r = client.post("/courier/location", json={"lat": 95, "lng": 49.8671}, headers=headers(actor))
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_COORDINATES"


def test_courier_resolved_from_user_id(client, market):
    courier, _ = market.add_courier()
    h = {"X-User-Id": str(courier.user_id), "X-User-Role": "courier"}
    r = client.post("/courier/location", json={"lat": 40.4093, "lng": 49.8671}, headers=h)
    assert r.status_code == 200
    assert market.store.pings[-1].courier_id == courier.id


def test_offline_courier_location_is_403(client, market):
    _, actor = market.add_courier(online=False)
    r = client.post("/courier/location", json={"lat": 40.4093, "lng": 49.8671}, headers=headers(actor))
    assert r.status_code == 403
    assert r.json()["code"] == "COURIER_OFFLINE"


def test_location_rate_limit_sets_retry_after():
    market = Marketplace(per_minute=1)
    _, actor = market.add_courier()
    with TestClient(create_app(market.engine)) as client:
        ok = client.post("/courier/location", json={"lat": 40.4093, "lng": 49.8671}, headers=headers(actor))
        limited = client.post("/courier/location", json={"lat": 40.4093, "lng": 49.8671}, headers=headers(actor))
    assert ok.status_code == 200
    assert limited.status_code == 429
    assert limited.json()["code"] == "RATE_LIMITED"
    assert int(limited.headers["Retry-After"]) >= 1


def test_realtime_stream_rejects_unauthorized_subscriber(client, market):
    order = run(market.place_order(market.customer()))
    r = client.get(f"/realtime/order:{order.id}", headers=headers(market.customer()))
    assert r.status_code == 403

    r = client.get("/realtime/lorry:123", headers=headers(market.customer()))
    assert r.status_code == 400
