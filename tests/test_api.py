import pytest
from fastapi.testclient import TestClient

from bikehub.main import create_app
from bikehub.gateway import GatewayStatus

RIDER = {"X-User-Id": "7", "X-User-Role": "rider"}
ADMIN = {"X-User-Id": "900", "X-User-Role": "admin"}


def partner(pid):
    return {"X-User-Id": str(pid), "X-User-Role": "partner"}


@pytest.fixture
def client(settings, gateway, clock):
    app = create_app(settings=settings, gateway=gateway, now=clock)
    with TestClient(app) as c:
        yield c


def _active_partner(client, name, location):
    r = client.post("/api/partners", json={"name": name, "email": f"{name}@shops.test", "location": location})
    assert r.status_code == 201, r.text
    pid = r.json()["id"]
    r = client.post(f"/api/admin/partners/{pid}/approve", headers=ADMIN)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "active"
    return pid


def _bike(client, pid):
    r = client.post("/api/bikes", json={"name": "Tourer", "daily_rate": "1000"}, headers=partner(pid))
    assert r.status_code == 201, r.text
    return r.json()["id"]


def _book(client, bike_id, **extra):
    body = {"bike_id": bike_id, "date_range": {"start": "2026-03-05", "end": "2026-03-08"}}
    body.update(extra)
    return client.post("/api/bookings", json=body, headers=RIDER)


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_identity_headers_are_required(client):
    assert client.get("/api/bookings").status_code == 401
    assert client.get("/api/bookings", headers={"X-User-Id": "abc"}).status_code == 400
    assert client.get("/api/bookings", headers={"X-User-Id": "1", "X-User-Role": "wizard"}).status_code == 400
    assert client.get("/api/admin/bookings", headers=RIDER).status_code == 403


def test_full_rental_over_http(client, gateway):
    pickup = _active_partner(client, "harbour", "Harbour Street 1")
    dropoff = _active_partner(client, "station", "Station Square 4")
    bike_id = _bike(client, pickup)

    r = _book(client, bike_id, dropoff_partner_id=dropoff)
    assert r.status_code == 201, r.text
    booking = r.json()
    assert booking["status"] == "requested"
    assert booking["total_price"] == "3000.00"

    r = client.get("/api/partner/bookings", headers=partner(pickup))
    assert [b["id"] for b in r.json()] == [booking["id"]]

    r = client.post(f"/api/bookings/{booking['id']}/accept", headers=partner(pickup))
    assert r.status_code == 200, r.text
    detail = r.json()
    assert detail["status"] == "confirmed"
    assert detail["payment_summary"]["next_payment_due"] == "initial"
    initial = detail["payments"][0]
    assert initial["amount"] == "600.00"

    r = client.post(f"/api/payments/{initial['id']}/checkout", json={"method": "card"}, headers=RIDER)
    assert r.status_code == 200, r.text
    session_id = r.json()["session_id"]
    assert r.json()["status"] == "processing"

    gateway.mark(session_id, GatewayStatus.PAID, "pi_1")
    r = client.post("/api/payments/webhook", json={"session_id": session_id, "status": "paid"})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "completed"

    r = client.get(f"/api/bookings/{booking['id']}", headers=RIDER)
    assert r.json()["status"] == "active"

    items = [{"part": p, "rating": "good"} for p in (
        "frame", "wheels", "brakes", "drivetrain", "handlebars", "seat", "lights", "accessories"
    )]
    r = client.post(
        f"/api/bookings/{booking['id']}/assessment",
        json={"condition_items": items, "additional_charges": [{"type": "cleaning", "amount": "25"}]},
        headers=partner(dropoff),
    )
    assert r.status_code == 201, r.text

    r = client.get(f"/api/bookings/{booking['id']}/payments", headers=RIDER)
    remaining = [p for p in r.json() if p["kind"] == "remaining"][0]
    assert remaining["amount"] == "2425.00"

    r = client.post(f"/api/payments/{remaining['id']}/checkout", json={"method": "cash"}, headers=RIDER)
    assert r.status_code == 200, r.text
    r = client.post(f"/api/payments/{remaining['id']}/cash", headers=partner(dropoff))
    assert r.status_code == 200, r.text

    r = client.get(f"/api/bookings/{booking['id']}", headers=RIDER)
    assert r.json()["status"] == "completed"
    assert r.json()["payment_summary"]["is_fully_paid"] is True

    r = client.get(f"/api/bikes/{bike_id}")
    assert r.json()["partner_id"] == dropoff
    assert r.json()["location"] == "Station Square 4"


def test_errors_carry_code_and_reason(client):
    pickup = _active_partner(client, "harbour", "Harbour Street 1")
    bike_id = _bike(client, pickup)
    first = _book(client, bike_id).json()
    second = client.post(
        "/api/bookings",
        json={"bike_id": bike_id, "date_range": {"start": "2026-03-06", "end": "2026-03-09"}},
        headers={"X-User-Id": "8"},
    ).json()

    assert client.post(f"/api/bookings/{first['id']}/accept", headers=partner(pickup)).status_code == 200
    r = client.post(f"/api/bookings/{second['id']}/accept", headers=partner(pickup))
    assert r.status_code == 409
    assert r.json() == {"detail": "Bike unavailable for selected dates", "code": "Conflict"}

    r = client.post(f"/api/bookings/{first['id']}/accept", headers=partner(pickup))
    assert r.status_code == 409
    assert r.json()["code"] == "StaleState"

    r = client.get(f"/api/bookings/{first['id']}", headers={"X-User-Id": "8"})
    assert r.status_code == 403

    assert client.get("/api/bookings/4242", headers=RIDER).status_code == 404
    r = _book(client, bike_id, date_range={"start": "2026-03-08", "end": "2026-03-05"})
    assert r.status_code == 422


def test_cancel_and_reject_routes(client):
    pickup = _active_partner(client, "harbour", "Harbour Street 1")
    bike_id = _bike(client, pickup)
    booking = _book(client, bike_id).json()

    r = client.post(f"/api/bookings/{booking['id']}/cancel", json={"reason": "weather"}, headers=RIDER)
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert r.json()["status_reason"] == "weather"

    other = _book(client, bike_id).json()
    r = client.post(f"/api/bookings/{other['id']}/reject", headers=partner(pickup))
    assert r.status_code == 200
    assert r.json()["status"] == "rejected"


def test_availability_route(client):
    pickup = _active_partner(client, "harbour", "Harbour Street 1")
    bike_id = _bike(client, pickup)
    r = client.patch(
        f"/api/bikes/{bike_id}/availability",
        json={"status": "maintenance", "reason": "brakes", "unavailable_ranges": []},
        headers=partner(pickup),
    )
    assert r.status_code == 200, r.text
    assert r.json()["availability_status"] == "maintenance"
    assert _book(client, bike_id).status_code == 409


def test_polling_route_reports_checkout_state(client, gateway):
    pickup = _active_partner(client, "harbour", "Harbour Street 1")
    bike_id = _bike(client, pickup)
    booking = _book(client, bike_id).json()
    detail = client.post(f"/api/bookings/{booking['id']}/accept", headers=partner(pickup)).json()
    request_id = detail["payments"][0]["id"]
    session_id = client.post(f"/api/payments/{request_id}/checkout", json={}, headers=RIDER).json()["session_id"]

    r = client.get(f"/api/payments/sessions/{session_id}", headers=RIDER)
    assert r.json()["status"] == "processing"
    assert r.json()["poll_attempts"] == 1

    gateway.mark(session_id, GatewayStatus.PAID, "pi_poll")
    r = client.get(f"/api/payments/sessions/{session_id}", headers=RIDER)
    assert r.json()["status"] == "completed"
    assert r.json()["transaction_id"] == "pi_poll"


def test_webhook_cannot_mark_an_unpaid_checkout_paid(client, gateway):
    pickup = _active_partner(client, "harbour", "Harbour Street 1")
    bike_id = _bike(client, pickup)
    booking = _book(client, bike_id).json()
    detail = client.post(f"/api/bookings/{booking['id']}/accept", headers=partner(pickup)).json()
    request_id = detail["payments"][0]["id"]
    session_id = client.post(f"/api/payments/{request_id}/checkout", json={}, headers=RIDER).json()["session_id"]

    r = client.post("/api/payments/webhook", json={"session_id": session_id, "status": "paid"})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "processing"
    assert client.get(f"/api/bookings/{booking['id']}", headers=RIDER).json()["status"] == "confirmed"

    r = client.post("/api/payments/webhook", json={"session_id": "cs_unknown", "status": "paid"})
    assert r.status_code == 404


def test_partner_lists_own_bikes(client):
    pickup = _active_partner(client, "harbour", "Harbour Street 1")
    other = _active_partner(client, "station", "Station Square 4")
    bike_id = _bike(client, pickup)
    _bike(client, other)

    r = client.get("/api/partner/bikes", headers=partner(pickup))
    assert r.status_code == 200
    assert [b["id"] for b in r.json()] == [bike_id]
    assert client.get("/api/partner/bikes", headers=RIDER).status_code == 403


def test_event_feed_and_admin_tools(client):
    pickup = _active_partner(client, "harbour", "Harbour Street 1")
    bike_id = _bike(client, pickup)
    _book(client, bike_id)

    r = client.get("/api/events", headers=partner(pickup))
    events = r.json()
    assert [e["type"] for e in events] == ["BOOKING_CREATED"]
    assert events[0]["targetUserRole"] == "partner"

    assert client.post(f"/api/events/{events[0]['id']}/processed", headers=partner(pickup)).status_code == 200
    assert client.post(f"/api/events/{events[0]['id']}/processed", headers=RIDER).status_code == 404
    assert client.get("/api/events", headers=partner(pickup)).json() == []

    stats = client.get("/api/admin/events/stats", headers=ADMIN).json()
    assert stats["total_events"] == 1
    assert stats["processed_events"] == 1
    r = client.post("/api/admin/events/cleanup", json={"older_than_days": 0}, headers=ADMIN)
    assert r.json() == {"deleted_count": 0}

    r = client.get("/api/admin/bookings", params={"status": "requested"}, headers=ADMIN)
    assert len(r.json()) == 1
    r = client.get("/api/admin/partners", params={"status": "active"}, headers=ADMIN)
    assert [p["id"] for p in r.json()] == [pickup]


def test_event_stream_replays_backlog(client):
    pickup = _active_partner(client, "harbour", "Harbour Street 1")
    bike_id = _bike(client, pickup)
    booking = _book(client, bike_id).json()

    with client.websocket_connect("/api/events/ws", headers=partner(pickup)) as ws:
        message = ws.receive_json()
        ws.send_json({"ack": message["id"]})
    assert message["type"] == "BOOKING_CREATED"
    assert message["payload"]["bookingId"] == booking["id"]
    assert client.get("/api/events", headers=partner(pickup)).json() == []
    # the subscription goes away with the socket
    assert client.app.state.hub._subscriptions == {}
