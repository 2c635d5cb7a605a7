"""Tests de la API HTTP: órdenes, POS, admin, pagos y webhook"""
import hashlib
import hmac
import json

from sqlalchemy import select

from conftest import WEBHOOK_SECRET, pos_cookie, sold_quantity
from shared.auth.jwt_handler import create_access_token
from shared.database.models import OutletPassStock, PassOffering, Ticket

CUSTOMER = {
    "name": "Amira Trabelsi",
    "phone": "+216 22 345 678",
    "email": "amira@andiamo.tn",
    "city": "Tunis",
}


def order_body(offering, quantity=2, payment_method="online", **extra):
    return {
        "customer": CUSTOMER,
        "lines": [{"poolRef": str(offering.id), "quantity": quantity}],
        "paymentMethod": payment_method,
        **extra,
    }


def signed(payload: dict):
    body = json.dumps(payload).encode()
    signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return body, {"Content-Type": "application/json", "x-flouci-signature": signature}


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# ==================== ÓRDENES ====================

async def test_create_online_order(client, db, seed):
    offering = await seed.pass_offering(await seed.event(), price="50.00", max_quantity=10)

    response = await client.post("/api/v1/orders", json=order_body(offering))

    assert response.status_code == 201
    data = response.json()
    assert data["isDuplicate"] is False
    assert data["order"]["status"] == "PENDING_ONLINE"
    assert data["order"]["totalPrice"] == 100.0
    assert data["order"]["lines"][0]["passName"] == "Standard"
    assert await sold_quantity(db, PassOffering, offering.id) == 2

    fetched = await client.get(f"/api/v1/orders/{data['order']['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "PENDING_ONLINE"


async def test_create_order_validation_error(client, seed):
    offering = await seed.pass_offering(await seed.event())
    body = order_body(offering)
    del body["customer"]

    response = await client.post("/api/v1/orders", json=body)

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


async def test_pos_method_not_accepted_on_public_route(client, seed):
    offering = await seed.pass_offering(await seed.event())

    response = await client.post("/api/v1/orders", json=order_body(offering, payment_method="pos"))

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


async def test_insufficient_stock(client, db, seed):
    offering = await seed.pass_offering(await seed.event(), max_quantity=5, sold_quantity=4)

    response = await client.post("/api/v1/orders", json=order_body(offering, quantity=2))

    assert response.status_code == 400
    assert response.json()["error"] == "insufficient_stock"
    assert await sold_quantity(db, PassOffering, offering.id) == 4


async def test_idempotency_key_header(client, db, seed):
    offering = await seed.pass_offering(await seed.event(), max_quantity=10)
    headers = {"Idempotency-Key": "checkout-7f3a"}

    first = await client.post("/api/v1/orders", json=order_body(offering), headers=headers)
    second = await client.post("/api/v1/orders", json=order_body(offering), headers=headers)

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["isDuplicate"] is True
    assert second.json()["order"]["id"] == first.json()["order"]["id"]
    assert await sold_quantity(db, PassOffering, offering.id) == 2


async def test_unknown_order(client):
    response = await client.get("/api/v1/orders/00000000-0000-0000-0000-000000000000")

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


# ==================== POS + APROBACIÓN ====================

async def pos_setup(seed, max_quantity=10):
    event = await seed.event()
    offering = await seed.pass_offering(event, price="60.00")
    outlet = await seed.outlet()
    user = await seed.outlet_user(outlet)
    stock = await seed.outlet_stock(outlet, event, offering, max_quantity=max_quantity)
    return event, offering, outlet, user, stock


def pos_body(event, offering, quantity=2):
    return {
        "customer": CUSTOMER,
        "lines": [{"poolRef": str(offering.id), "quantity": quantity}],
        "eventId": str(event.id),
    }


async def test_pos_order_then_admin_approval(client, db, seed, admin_headers, email_service):
    event, offering, outlet, user, stock = await pos_setup(seed)

    created = await client.post(
        f"/api/v1/outlets/{outlet.slug}/orders", json=pos_body(event, offering), headers=pos_cookie(outlet, user),
    )

    assert created.status_code == 201
    order = created.json()["order"]
    assert order["status"] == "PENDING_ADMIN_APPROVAL"
    assert order["source"] == "point_de_vente"
    assert await sold_quantity(db, OutletPassStock, stock.id) == 2

    approved = await client.post(f"/api/v1/orders/{order['id']}/approve", headers=admin_headers)

    assert approved.status_code == 200
    data = approved.json()
    assert data["order"]["status"] == "PAID"
    assert data["ticketsGenerated"] is True
    assert data["ticketsCount"] == 2
    assert data["notificationsSent"] is True
    assert data["alreadyApproved"] is False

    again = await client.post(f"/api/v1/orders/{order['id']}/approve", headers=admin_headers)

    assert again.status_code == 200
    assert again.json()["alreadyApproved"] is True
    assert again.json()["ticketsCount"] == 2
    tickets = (await db.execute(select(Ticket.id))).scalars().all()
    assert len(tickets) == 2
    assert [kind for kind, _ in email_service.sent] == ["order_received", "tickets"]


async def test_approval_with_failing_email_still_pays(client, seed, admin_headers, email_service, retry_recorder):
    event, offering, outlet, user, _ = await pos_setup(seed)
    created = await client.post(
        f"/api/v1/outlets/{outlet.slug}/orders", json=pos_body(event, offering, 1), headers=pos_cookie(outlet, user),
    )
    order_id = created.json()["order"]["id"]
    email_service.fail = True

    approved = await client.post(f"/api/v1/orders/{order_id}/approve", headers=admin_headers)

    assert approved.status_code == 200
    data = approved.json()
    assert data["order"]["status"] == "PAID"
    assert data["ticketsCount"] == 1
    assert data["notificationsSent"] is False
    assert data["warnings"]
    assert retry_recorder.calls[0][1] == ["email"]


async def test_admin_routes_require_admin(client, seed):
    response = await client.post("/api/v1/orders/00000000-0000-0000-0000-000000000000/approve")
    assert response.status_code == 401

    token = create_access_token({"sub": "user-1", "role": "user"})
    response = await client.post(
        "/api/v1/orders/00000000-0000-0000-0000-000000000000/approve",
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 403

    response = await client.post(
        "/api/v1/orders/00000000-0000-0000-0000-000000000000/approve",
        headers={"Authorization": "Bearer no-es-un-jwt"},
    )
    assert response.status_code == 401


async def test_approve_online_order_is_conflict(client, seed, admin_headers):
    offering = await seed.pass_offering(await seed.event())
    created = await client.post("/api/v1/orders", json=order_body(offering))

    response = await client.post(f"/api/v1/orders/{created.json()['order']['id']}/approve", headers=admin_headers)

    assert response.status_code == 409
    assert response.json()["details"]["current_status"] == "PENDING_ONLINE"


async def test_pos_requires_session(client, seed):
    event, offering, outlet, _, _ = await pos_setup(seed)

    response = await client.post(f"/api/v1/outlets/{outlet.slug}/orders", json=pos_body(event, offering))

    assert response.status_code == 401


async def test_pos_token_from_other_outlet(client, db, seed):
    event, offering, outlet, user, stock = await pos_setup(seed)
    other = await seed.outlet(slug="ariana", name="Point de vente Ariana")
    other_user = await seed.outlet_user(other)

    response = await client.post(
        f"/api/v1/outlets/{outlet.slug}/orders", json=pos_body(event, offering), headers=pos_cookie(other, other_user),
    )

    assert response.status_code == 403
    assert await sold_quantity(db, OutletPassStock, stock.id) == 0


async def test_paused_pos_user(client, seed):
    event, offering, outlet, _, _ = await pos_setup(seed)
    paused = await seed.outlet_user(outlet, is_paused=True)

    response = await client.post(
        f"/api/v1/outlets/{outlet.slug}/orders", json=pos_body(event, offering), headers=pos_cookie(outlet, paused),
    )

    assert response.status_code == 403


async def test_pos_lists_outlet_passes(client, seed):
    event, offering, outlet, user, _ = await pos_setup(seed, max_quantity=8)

    response = await client.get(
        f"/api/v1/outlets/{outlet.slug}/events/{event.id}/passes", headers=pos_cookie(outlet, user),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["outlet"] == "la-marsa"
    assert data["passes"][0]["remaining"] == 8


async def test_cancel_and_remove_routes(client, db, seed, admin_headers):
    offering = await seed.pass_offering(await seed.event(), max_quantity=10)
    ambassador = await seed.ambassador()
    created = await client.post("/api/v1/orders", json=order_body(
        offering, 3, "ambassador_cash", ambassadorId=str(ambassador.id),
    ))
    order_id = created.json()["order"]["id"]
    assert created.json()["order"]["status"] == "PENDING_CASH"

    cancelled = await client.post(
        f"/api/v1/orders/{order_id}/cancel", json={"reason": "cliente no pagó"}, headers=admin_headers,
    )

    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"
    assert cancelled.json()["stockReleased"] is True
    assert await sold_quantity(db, PassOffering, offering.id) == 0

    removed = await client.delete(f"/api/v1/orders/{order_id}", headers=admin_headers)

    assert removed.status_code == 200
    assert removed.json()["status"] == "REMOVED"
    assert (await client.get(f"/api/v1/orders/{order_id}")).status_code == 404
    assert await sold_quantity(db, PassOffering, offering.id) == 0


async def test_expire_requires_cron_secret(client):
    assert (await client.post("/api/v1/admin/orders/expire-pending-cash")).status_code == 401
    wrong = await client.post("/api/v1/admin/orders/expire-pending-cash", headers={"x-cron-secret": "nope"})
    assert wrong.status_code == 401

    response = await client.post(
        "/api/v1/admin/orders/expire-pending-cash", headers={"x-cron-secret": "test-cron-secret"},
    )

    assert response.status_code == 200
    assert response.json() == {"expired": 0, "orderIds": []}


# ==================== PAGOS ====================

async def test_generate_and_verify_payment(client, seed, flouci_stub):
    offering = await seed.pass_offering(await seed.event(), price="50.00")
    created = await client.post("/api/v1/orders", json=order_body(offering))
    order_id = created.json()["order"]["id"]

    generated = await client.post("/api/v1/payments/generate", json={"orderId": order_id})

    assert generated.status_code == 200
    payment_id = generated.json()["paymentId"]
    assert flouci_stub.payments[payment_id]["amount"] == 100000

    pending = await client.post("/api/v1/payments/verify", json={"orderId": order_id, "paymentId": payment_id})
    assert pending.json()["status"] == "PENDING"
    assert pending.json()["orderUpdated"] is False

    flouci_stub.set_status(payment_id, "SUCCESS", 100000)
    verified = await client.post("/api/v1/payments/verify", json={"orderId": order_id, "paymentId": payment_id})

    assert verified.status_code == 200
    data = verified.json()
    assert data["status"] == "SUCCESS"
    assert data["orderUpdated"] is True
    assert data["ticketsCount"] == 2

    replay = await client.post("/api/v1/payments/verify", json={"orderId": order_id, "paymentId": payment_id})
    assert replay.json()["alreadyProcessed"] is True
    assert (await client.get(f"/api/v1/orders/{order_id}")).json()["status"] == "PAID"


async def test_verify_requires_payment_id(client):
    response = await client.post(
        "/api/v1/payments/verify", json={"orderId": "00000000-0000-0000-0000-000000000000", "paymentId": ""},
    )

    assert response.status_code == 400


async def test_webhook_rejects_bad_signature(client):
    body, headers = signed({"payment_id": "pay_1", "status": "SUCCESS"})
    headers["x-flouci-signature"] = "0" * 64

    response = await client.post("/api/v1/payments/webhook", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["error"] == "unauthorized"


async def test_signed_webhook_is_processed_once(client, db, seed):
    offering = await seed.pass_offering(await seed.event(), price="50.00")
    created = await client.post("/api/v1/orders", json=order_body(offering, 1))
    order_id = created.json()["order"]["id"]
    generated = await client.post("/api/v1/payments/generate", json={"orderId": order_id})
    body, headers = signed({"payment_id": generated.json()["paymentId"], "status": "SUCCESS"})

    first = await client.post("/api/v1/payments/webhook", content=body, headers=headers)
    second = await client.post("/api/v1/payments/webhook", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["status"] == "processed"
    assert second.json()["status"] == "duplicate"
    tickets = (await db.execute(select(Ticket.id))).scalars().all()
    assert len(tickets) == 1


async def test_webhook_rejects_non_json_body(client):
    body = b"not json"
    signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()

    response = await client.post("/api/v1/payments/webhook", content=body, headers={"x-flouci-signature": signature})

    assert response.status_code == 400
