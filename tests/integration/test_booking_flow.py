# tests/integration/test_booking_flow.py

import csv
import io
import json

from conftest import ADMIN_ID, OTHER_USER_ID, USER_ID, VENDOR_ID, auth, sign_webhook

FUTURE_DEPARTURE = "2099-01-01T10:00:00+00:00"
VENDOR = auth(VENDOR_ID, "vendor")


def _create_route(client, total_quantity=10, **overrides):
    payload = {
        "title": "Dhaka to Sylhet Intercity",
        "fromCity": "Dhaka",
        "toCity": "Sylhet",
        "transportType": "train",
        "travelClass": "Snigdha",
        "price": 850,
        "totalQuantity": total_quantity,
        "schedules": [{"departureTime": "06:40", "arrivalTime": "13:00", "frequency": "daily"}],
    }
    payload.update(overrides)
    response = client.post("/vendor/routes", json=payload, headers=VENDOR)
    assert response.status_code == 201
    route = response.json()["data"]

    approve = client.put(
        f"/admin/routes/{route['id']}/verification",
        json={"verificationStatus": "approved"},
        headers=auth(ADMIN_ID, "admin"),
    )
    assert approve.status_code == 200
    return route


def _book(client, route_id, quantity, user_id=USER_ID):
    return client.post(
        "/bookings",
        json={"routeId": route_id, "quantity": quantity, "bookingDate": FUTURE_DEPARTURE},
        headers=auth(user_id),
    )


def _available(client, route_id):
    return client.get(f"/routes/{route_id}").json()["data"]["availableQuantity"]


def test_booking_flow(client, gateway):
    route = _create_route(client, total_quantity=10)

    response = _book(client, route["id"], 2)
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    booking = body["data"]
    assert booking["bookingStatus"] == "pending"
    assert booking["paymentStatus"] == "pending"
    assert booking["totalAmount"] == 1700.0
    assert len(booking["passengers"]) == 2
    assert _available(client, route["id"]) == 10

    accept = client.put(
        f"/vendor/bookings/{booking['id']}/accept",
        json={"notes": "Confirmed seats"},
        headers=VENDOR,
    )
    assert accept.status_code == 200
    assert accept.json()["data"]["bookingStatus"] == "accepted"
    assert _available(client, route["id"]) == 8

    checkout = client.post(
        "/payments/create-checkout-session",
        json={
            "bookingId": booking["id"],
            "successUrl": "https://app.test/payment/success",
            "cancelUrl": "https://app.test/payment/cancel",
        },
    )
    assert checkout.status_code == 200
    session = checkout.json()["data"]
    assert session["bookingId"] == booking["id"]
    assert session["sessionUrl"].endswith(session["sessionId"])

    gateway.pay(session["sessionId"])

    confirm = client.post("/payments/update-payment-status", json={"bookingId": booking["id"]})
    assert confirm.status_code == 200
    confirmed = confirm.json()["data"]
    assert confirmed["paymentStatus"] == "paid"
    assert confirmed["bookingStatus"] == "confirmed"
    assert confirmed["alreadyPaid"] is False

    again = client.post(
        "/payments/update-payment-status",
        json={"bookingId": booking["id"], "sessionId": session["sessionId"]},
    )
    assert again.status_code == 200
    assert again.json()["data"]["alreadyPaid"] is True
    assert _available(client, route["id"]) == 8

    export = client.get("/payments/export", headers=auth())
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    rows = list(csv.DictReader(io.StringIO(export.text)))
    assert len(rows) == 1
    assert rows[0]["Booking Reference"] == booking["bookingReference"]
    assert rows[0]["Amount"] == "1700.00"
    assert rows[0]["Status"] == "completed"
    assert rows[0]["Route"] == "Dhaka to Sylhet"

    events = client.get("/outbox/events", params={"topic": f"booking-{booking['id']}"}).json()["data"]
    assert [e["eventType"] for e in events].count("payment-confirmed") == 1


def test_second_booking_cannot_be_accepted_once_route_is_drained(client):
    route = _create_route(client, total_quantity=2)

    first = _book(client, route["id"], 2).json()["data"]
    second = _book(client, route["id"], 1, user_id=OTHER_USER_ID)
    assert second.status_code == 201

    accept = client.put(f"/vendor/bookings/{first['id']}/accept", headers=VENDOR)
    assert accept.status_code == 200
    assert _available(client, route["id"]) == 0

    refused = client.put(f"/vendor/bookings/{second.json()['data']['id']}/accept", headers=VENDOR)
    assert refused.status_code == 400
    assert refused.json()["error"] == "InsufficientInventoryError"
    assert refused.json()["success"] is False
    assert _available(client, route["id"]) == 0

    late = _book(client, route["id"], 1)
    assert late.status_code == 201
    late_accept = client.put(f"/vendor/bookings/{late.json()['data']['id']}/accept", headers=VENDOR)
    assert late_accept.status_code == 400
    assert late_accept.json()["error"] == "InsufficientInventoryError"

    oversized = _book(client, route["id"], 3)
    assert oversized.status_code == 400


def test_acceptances_never_exceed_route_capacity(client):
    route = _create_route(client, total_quantity=3)
    riders = [USER_ID, OTHER_USER_ID, USER_ID, OTHER_USER_ID, USER_ID]
    bookings = [_book(client, route["id"], 1, user_id=rider).json()["data"] for rider in riders]

    outcomes = [
        client.put(f"/vendor/bookings/{b['id']}/accept", headers=VENDOR).status_code
        for b in bookings
    ]

    assert outcomes.count(200) == 3
    assert outcomes.count(400) == 2
    assert _available(client, route["id"]) == 0


def test_past_departure_is_rejected(client):
    route = _create_route(client)

    response = client.post(
        "/bookings",
        json={"routeId": route["id"], "quantity": 1, "bookingDate": "2001-01-01T10:00:00+00:00"},
        headers=auth(),
    )

    assert response.status_code == 400
    assert response.json()["message"] == "Cannot book tickets for past departure"


def test_refund_through_cancellation(client, gateway):
    route = _create_route(client, total_quantity=5)
    booking = _book(client, route["id"], 3).json()["data"]
    client.put(f"/vendor/bookings/{booking['id']}/accept", headers=VENDOR)
    session = client.post(
        "/payments/create-checkout-session",
        json={"bookingId": booking["id"], "successUrl": "https://a.test/ok", "cancelUrl": "https://a.test/no"},
    ).json()["data"]
    gateway.pay(session["sessionId"])
    client.post(
        "/payments/update-payment-status",
        json={"bookingId": booking["id"], "sessionId": session["sessionId"]},
    )
    assert _available(client, route["id"]) == 2

    history = client.get("/payments/history", headers=auth()).json()["data"]
    assert history["pagination"]["total"] == 1
    payment = history["payments"][0]
    assert payment["status"] == "completed"
    assert payment["isRefundable"] is True

    forbidden = client.post(f"/bookings/{booking['id']}/cancel", headers=auth(OTHER_USER_ID))
    assert forbidden.status_code == 403

    cancel = client.post(
        f"/bookings/{booking['id']}/cancel",
        json={"reason": "Family emergency"},
        headers=auth(),
    )
    assert cancel.status_code == 200
    assert cancel.json()["data"]["paymentStatus"] == "refunded"
    assert cancel.json()["data"]["status"] == "refunded"
    assert _available(client, route["id"]) == 5

    refund_again = client.post("/payments/refund", json={"paymentId": payment["id"]}, headers=auth())
    assert refund_again.status_code == 400

    status = client.get(f"/payments/status/{payment['id']}", headers=auth()).json()["data"]
    assert status["status"] == "refunded"
    assert status["refundStatus"] == "completed"


def test_refund_endpoint(client, gateway):
    route = _create_route(client, total_quantity=5)
    booking = _book(client, route["id"], 1).json()["data"]
    client.put(f"/vendor/bookings/{booking['id']}/accept", headers=VENDOR)
    session = client.post(
        "/payments/create-checkout-session",
        json={"bookingId": booking["id"], "successUrl": "https://a.test/ok", "cancelUrl": "https://a.test/no"},
    ).json()["data"]
    gateway.pay(session["sessionId"])
    confirmed = client.post("/payments/update-payment-status", json={"bookingId": booking["id"]}).json()["data"]

    refund = client.post(
        "/payments/refund",
        json={"paymentId": confirmed["paymentId"], "reason": "Changed plans"},
        headers=auth(),
    )

    assert refund.status_code == 200
    data = refund.json()["data"]
    assert data["amount"] == 850.0
    assert data["status"] == "refunded"
    assert data["refundId"].startswith("rfnd_")
    assert _available(client, route["id"]) == 5


def test_trip_cannot_be_completed_before_departure(client, gateway):
    route = _create_route(client, total_quantity=5)
    booking = _book(client, route["id"], 1).json()["data"]
    client.put(f"/vendor/bookings/{booking['id']}/accept", headers=VENDOR)

    unpaid = client.put(f"/vendor/bookings/{booking['id']}/complete", headers=VENDOR)
    assert unpaid.status_code == 400
    assert unpaid.json()["error"] == "AlreadyProcessedError"

    session = client.post(
        "/payments/create-checkout-session",
        json={"bookingId": booking["id"], "successUrl": "https://a.test/ok", "cancelUrl": "https://a.test/no"},
    ).json()["data"]
    gateway.pay(session["sessionId"])
    client.post("/payments/update-payment-status", json={"bookingId": booking["id"]})

    early = client.put(f"/vendor/bookings/{booking['id']}/complete", headers=VENDOR)
    assert early.status_code == 409
    assert early.json()["error"] == "ConflictError"
    assert client.put(f"/vendor/bookings/{booking['id']}/complete", headers=auth()).status_code == 403


def test_webhook_confirms_payment(client, gateway):
    route = _create_route(client, total_quantity=5)
    booking = _book(client, route["id"], 1).json()["data"]
    client.put(f"/vendor/bookings/{booking['id']}/accept", headers=VENDOR)
    session = client.post(
        "/payments/create-checkout-session",
        json={"bookingId": booking["id"], "successUrl": "https://a.test/ok", "cancelUrl": "https://a.test/no"},
    ).json()["data"]
    gateway.pay(session["sessionId"])

    body = json.dumps(
        {
            "event": "payment_link.paid",
            "payload": {
                "payment_link": {
                    "entity": {"id": session["sessionId"], "notes": {"booking_id": booking["id"]}}
                }
            },
        }
    ).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Razorpay-Signature": sign_webhook(body),
        "X-Razorpay-Event-Id": "evt_100",
    }

    first = client.post("/payments/webhook", content=body, headers=headers)
    second = client.post("/payments/webhook", content=body, headers=headers)

    assert first.json()["data"]["result"] == "processed"
    assert second.json()["data"]["result"] == "duplicate"
    detail = client.get(f"/bookings/{booking['id']}", headers=auth()).json()["data"]
    assert detail["paymentStatus"] == "paid"

    forged = client.post(
        "/payments/webhook",
        content=body,
        headers={**headers, "X-Razorpay-Signature": "forged", "X-Razorpay-Event-Id": "evt_101"},
    )
    assert forged.status_code == 403


def test_identity_and_role_checks(client):
    route = _create_route(client)

    assert client.post("/bookings", json={"routeId": route["id"], "quantity": 1}).status_code == 401
    assert client.get("/vendor/bookings", headers=auth()).status_code == 403
    assert client.put(f"/admin/routes/{route['id']}/verification", json={"verificationStatus": "approved"}, headers=VENDOR).status_code == 403

    booking = _book(client, route["id"], 1).json()["data"]
    assert client.get(f"/bookings/{booking['id']}", headers=auth(OTHER_USER_ID)).status_code == 403
    assert client.get(f"/bookings/{booking['id']}", headers=auth(ADMIN_ID, "admin")).status_code == 200

    listed = client.get("/vendor/bookings", params={"status": "pending"}, headers=VENDOR).json()["data"]
    assert [b["id"] for b in listed] == [booking["id"]]
    mine = client.get("/bookings/user", headers=auth()).json()["data"]
    assert [b["id"] for b in mine] == [booking["id"]]


def test_request_validation_uses_envelope(client):
    response = client.post("/bookings", json={"routeId": "x", "quantity": 0}, headers=auth())

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error"] == "ValidationError"


def test_outbox_acknowledgement(client):
    route = _create_route(client)
    booking = _book(client, route["id"], 1).json()["data"]
    client.put(f"/vendor/bookings/{booking['id']}/reject", json={"notes": "No seats"}, headers=VENDOR)

    events = client.get("/outbox/events", params={"topic": f"booking-{booking['id']}"}).json()["data"]
    assert [e["eventType"] for e in events] == ["booking-rejected"]
    assert events[0]["payload"]["vendorResponseNotes"] == "No seats"

    published = client.post(f"/outbox/events/{events[0]['id']}/mark-published")
    assert published.json()["data"]["status"] == "PUBLISHED"
    remaining = client.get("/outbox/events", params={"topic": f"booking-{booking['id']}"}).json()["data"]
    assert remaining == []

    assert client.post("/outbox/events/missing/mark-published").status_code == 404


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["success"] is True
