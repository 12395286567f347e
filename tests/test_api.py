import httpx
import pytest

from checkout_core.config import settings
from checkout_core.database import get_session_factory
from checkout_core.main import app

from conftest import seed_checkout, seed_inventory


USER = {"X-User-Id": "user-1"}
ADMIN = {"X-Admin-Id": "admin-1"}


@pytest.fixture
async def client(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "API_TOKEN", "test-token")
    monkeypatch.setattr(settings, "NOTIFICATIONS_BASE_URL", "")
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
async def placed_order(client, uow, ledger):
    await seed_inventory(uow, ledger, {"A": 10, "B": 10})
    checkout = await seed_checkout(uow, [("A", "5.00", 1), ("B", "7.50", 2)])
    response = await client.post(f"/api/checkouts/{checkout.id}/complete", headers=USER)
    assert response.status_code == 201
    return response.json()


async def test_health(client):
    response = await client.get("/health")
    assert response.json() == {"status": "healthy"}


async def test_complete_checkout(placed_order):
    assert placed_order["subtotal"] == "20.00"
    assert placed_order["user_id"] == "user-1"
    assert placed_order["status"] == "pending"
    assert [i["product_id"] for i in placed_order["items"]] == ["A", "B"]


async def test_complete_checkout_without_identity(client):
    response = await client.post("/api/checkouts/whatever/complete")
    assert response.status_code == 401


async def test_complete_missing_checkout(client):
    response = await client.post("/api/checkouts/missing/complete", headers=USER)
    assert response.status_code == 404


async def test_complete_someone_elses_checkout(client, uow, ledger):
    await seed_inventory(uow, ledger, {"A": 10})
    checkout = await seed_checkout(uow, [("A", "5.00", 1)])

    response = await client.post(f"/api/checkouts/{checkout.id}/complete", headers={"X-User-Id": "other"})

    assert response.status_code == 403


async def test_out_of_stock_is_conflict(client, uow, ledger):
    await seed_inventory(uow, ledger, {"A": 1})
    checkout = await seed_checkout(uow, [("A", "5.00", 3)])

    response = await client.post(f"/api/checkouts/{checkout.id}/complete", headers=USER)

    assert response.status_code == 409
    assert "Insufficient stock" in response.json()["detail"]


async def test_validation_errors_are_listed(client, uow):
    checkout = await seed_checkout(uow, [("A", "5.00", 1)], with_addresses=False)

    response = await client.post(f"/api/checkouts/{checkout.id}/complete", headers=USER)

    assert response.status_code == 422
    assert "Shipping address is required" in response.json()["detail"]


async def test_get_order_and_history(client, placed_order):
    order_id = placed_order["id"]

    response = await client.get(f"/api/orders/{order_id}", headers=USER)
    assert response.status_code == 200
    assert response.json()["order_number"] == placed_order["order_number"]

    hidden = await client.get(f"/api/orders/{order_id}", headers={"X-User-Id": "other"})
    assert hidden.status_code == 404

    history = await client.get(f"/api/orders/{order_id}/history", headers=USER, params={"event_type": "order_created"})
    assert history.status_code == 200
    assert [e["event_type"] for e in history.json()] == ["order_created", "order_created"]


async def test_cancel_order(client, placed_order):
    response = await client.post(
        f"/api/orders/{placed_order['id']}/cancel", headers=USER, json={"reason": "Too slow"}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    again = await client.post(f"/api/orders/{placed_order['id']}/cancel", headers=USER, json={})
    assert again.status_code == 409


async def test_payment_confirmation_flow(client, placed_order):
    created = await client.post(
        "/api/payments",
        headers=ADMIN,
        json={"order_id": placed_order["id"], "amount": "20.00", "payment_method_code": "cash"},
    )
    assert created.status_code == 201
    confirmation = created.json()
    assert confirmation["confirmation_status"] == "pending"

    confirmed = await client.post(
        f"/api/confirmations/{confirmation['id']}/confirm", headers=ADMIN, json={"notes": "Counted"}
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["confirmation_status"] == "confirmed"
    assert confirmed.json()["confirmed_by"] == "admin-1"

    again = await client.post(f"/api/confirmations/{confirmation['id']}/confirm", headers=ADMIN, json={})
    assert again.status_code == 409

    order = await client.get(f"/api/orders/{placed_order['id']}", headers=USER)
    assert order.json()["payment_status"] == "paid"


async def test_confirmation_endpoints_need_staff(client, placed_order):
    response = await client.post(
        "/api/payments",
        headers=USER,
        json={"order_id": placed_order["id"], "amount": "20.00", "payment_method_code": "cash"},
    )
    assert response.status_code == 403


async def test_api_token_is_checked(client, placed_order):
    bad = await client.get("/api/confirmations/stats", headers={"X-API-Token": "wrong"})
    assert bad.status_code == 403

    good = await client.get("/api/confirmations/stats", headers={"X-API-Token": "test-token"})
    assert good.status_code == 200
    assert good.json()["total"] == 0


async def test_automate_and_retry_due(client, placed_order):
    created = await client.post(
        "/api/payments",
        headers=ADMIN,
        json={"order_id": placed_order["id"], "amount": "20.00", "payment_method_code": "card"},
    )
    confirmation_id = created.json()["id"]
    rules = [{
        "id": "r-1",
        "name": "Cash only",
        "conditions": [{"type": "payment_method", "method_code": "cash"}],
    }]

    response = await client.post(
        f"/api/confirmations/{confirmation_id}/automate", headers=ADMIN, json={"rules": rules}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["automated"] is False
    assert body["confirmation"]["retry_count"] == 1
    assert body["next_retry_at"] is not None

    due = await client.get("/api/confirmations/retry-due", headers=ADMIN)
    assert due.status_code == 200
    assert due.json() == []


async def test_automate_rejects_unknown_condition(client, placed_order):
    response = await client.post(
        "/api/confirmations/any/automate",
        headers=ADMIN,
        json={"rules": [{"id": "r", "name": "x", "conditions": [{"type": "moon_phase"}]}]},
    )
    assert response.status_code == 422


async def test_bulk_confirm(client, placed_order):
    created = await client.post(
        "/api/payments",
        headers=ADMIN,
        json={"order_id": placed_order["id"], "amount": "20.00", "payment_method_code": "cash"},
    )
    confirmation_id = created.json()["id"]

    response = await client.post(
        "/api/confirmations/bulk-confirm",
        headers=ADMIN,
        json={"confirmation_ids": [confirmation_id, "missing"]},
    )

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is False
    assert [c["id"] for c in body["confirmed"]] == [confirmation_id]
    assert body["errors"][0]["confirmation_id"] == "missing"


async def test_inventory_reserve_and_release(client, uow, ledger):
    await seed_inventory(uow, ledger, {"SKU": 4})

    reserved = await client.post("/api/inventory/SKU/reserve", headers=ADMIN, json={"quantity": 3})
    assert reserved.status_code == 200
    assert reserved.json()["available"] == 1

    too_many = await client.post("/api/inventory/SKU/reserve", headers=ADMIN, json={"quantity": 2})
    assert too_many.status_code == 409

    released = await client.post("/api/inventory/SKU/release", headers=ADMIN, json={"quantity": 3})
    assert released.json()["available"] == 4

    missing = await client.post("/api/inventory/NOPE/reserve", headers=ADMIN, json={"quantity": 1})
    assert missing.status_code == 404


async def test_inventory_complete(client, uow, ledger):
    await seed_inventory(uow, ledger, {"SKU": 5})
    await client.post("/api/inventory/SKU/reserve", headers=ADMIN, json={"quantity": 2, "order_id": "o-1"})

    completed = await client.post(
        "/api/inventory/SKU/complete", headers=ADMIN, json={"quantity": 2, "order_id": "o-1"}
    )
    assert completed.status_code == 200
    assert (completed.json()["quantity"], completed.json()["reserved"]) == (3, 0)

    nothing_left = await client.post("/api/inventory/SKU/complete", headers=ADMIN, json={"quantity": 1})
    assert nothing_left.status_code == 409


async def test_automate_refuses_cancelling_rule(client, placed_order):
    response = await client.post(
        "/api/confirmations/any/automate",
        headers=ADMIN,
        json={"rules": [{
            "id": "r",
            "name": "cancel",
            "actions": [{"type": "update_order_status", "status": "cancelled"}],
        }]},
    )
    assert response.status_code == 422
