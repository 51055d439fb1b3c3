"""
HTTP-level tests: status codes and JSON shapes of the API.

Requests run in their own app context, so assertions read the responses
rather than objects held by the test session.
"""

from decimal import Decimal


def _create_order(client, product_id, quantity=1, **fields):
    body = {"customer_name": "Ada Customer", "items": [{"product_id": product_id, "quantity": quantity}]}
    body.update(fields)
    resp = client.post("/api/orders", json=body)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["order"]


def _level(client, material_id):
    resp = client.get(f"/api/stock/materials/{material_id}/level")
    assert resp.status_code == 200
    return resp.get_json()


def test_health(client, db_session):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["status"] == "healthy"
    assert "latency_ms" in data["checks"]["database"]


def test_create_and_fetch_order(client, p1):
    order = _create_order(client, p1.id, quantity=3)
    assert order["order_number"].startswith("ORD-")
    assert order["status"] == "PENDING"
    assert order["total_cents"] == 3000
    assert len(order["items"]) == 1

    resp = client.get(f"/api/orders/{order['id']}")
    assert resp.status_code == 200
    assert set(resp.get_json()["order"]["allowed_transitions"]) == {"CONFIRMED", "CANCELLED"}


def test_create_order_rejects_bad_items(client, p1):
    resp = client.post("/api/orders", json={"customer_name": "X", "items": "not-a-list"})
    assert resp.status_code == 400

    resp = client.post("/api/orders", json={"customer_name": "X", "items": [{"product_id": 99999, "quantity": 1}]})
    assert resp.status_code == 404


def test_confirm_deducts_and_undo_restores(client, p1, m1):
    order = _create_order(client, p1.id, quantity=1)

    resp = client.post(f"/api/orders/{order['id']}/transition", json={"target_status": "CONFIRMED", "actor": "ops"})
    assert resp.status_code == 200
    assert resp.get_json()["order"]["status"] == "CONFIRMED"
    assert Decimal(_level(client, m1.id)["stock_quantity"]) == Decimal("98")

    log = client.get(f"/api/orders/{order['id']}/undo").get_json()
    assert log["count"] == 1
    assert log["items"][0]["stock_effect"] == "DEDUCTED"

    resp = client.post(f"/api/orders/{order['id']}/undo", json={"actor": "ops"})
    assert resp.status_code == 200
    assert resp.get_json()["order"]["status"] == "PENDING"
    assert Decimal(_level(client, m1.id)["stock_quantity"]) == Decimal("100")

    resp = client.post(f"/api/orders/{order['id']}/undo")
    assert resp.status_code == 409


def test_invalid_transition_is_409_with_allowed_targets(client, p1, m1):
    order = _create_order(client, p1.id)

    resp = client.post(f"/api/orders/{order['id']}/transition", json={"target_status": "DELIVERED"})
    assert resp.status_code == 409
    details = resp.get_json()["details"]
    assert details["from_status"] == "PENDING"
    assert "CONFIRMED" in details["allowed"]
    assert Decimal(_level(client, m1.id)["stock_quantity"]) == Decimal("100")


def test_transition_requires_target(client, p1):
    order = _create_order(client, p1.id)
    resp = client.post(f"/api/orders/{order['id']}/transition", json={})
    assert resp.status_code == 400


def test_unknown_order(client, db_session):
    assert client.get("/api/orders/4242").status_code == 404
    resp = client.post("/api/orders/4242/transition", json={"target_status": "CONFIRMED"})
    assert resp.status_code == 404


def test_stale_transition_returns_conflict_body(client, p1):
    order = _create_order(client, p1.id)
    base_version = order["version_id"]

    client.post(f"/api/orders/{order['id']}/transition", json={"target_status": "CONFIRMED"})

    resp = client.post(
        f"/api/orders/{order['id']}/transition",
        json={
            "target_status": "CANCELLED",
            "base_version": base_version,
            "base_snapshot": {"status": "PENDING"},
        },
    )
    assert resp.status_code == 409
    conflict = resp.get_json()["conflict"]
    assert conflict["priority"] == "HIGH"
    assert conflict["status"] == "DETECTED"

    stats = client.get("/api/conflicts/stats").get_json()
    assert stats["pending"] == 1

    resolve = client.post(f"/api/conflicts/{conflict['id']}/resolve", json={"resolution": "KEEP_REMOTE"})
    assert resolve.status_code == 200
    assert resolve.get_json()["conflict"]["status"] == "RESOLVED"

    again = client.post(f"/api/conflicts/{conflict['id']}/resolve", json={"resolution": "KEEP_REMOTE"})
    assert again.status_code == 409


def test_resolve_conflict_errors(client, db_session):
    assert client.post("/api/conflicts/777/resolve", json={"resolution": "KEEP_REMOTE"}).status_code == 404


def test_patch_order_details(client, p1):
    order = _create_order(client, p1.id)
    resp = client.patch(
        f"/api/orders/{order['id']}",
        json={"changes": {"shipping_city": "Oslo"}, "base_version": order["version_id"]},
    )
    assert resp.status_code == 200
    assert resp.get_json()["order"]["shipping_city"] == "Oslo"

    resp = client.patch(f"/api/orders/{order['id']}", json={"changes": {"status": "DELIVERED"}})
    assert resp.status_code == 400


def test_stock_writes(client, m1):
    resp = client.post(f"/api/stock/materials/{m1.id}/receive", json={"qty": "25", "reason": "PO-17"})
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["movement"]["movement_type"] == "IN"
    assert Decimal(body["material"]["stock_quantity"]) == Decimal("125")
    assert body["level"] == "NORMAL"

    resp = client.post(f"/api/stock/materials/{m1.id}/adjust", json={"delta": "-5", "reason": "damaged"})
    assert resp.status_code == 201
    assert Decimal(resp.get_json()["movement"]["balance_after"]) == Decimal("120")

    resp = client.post(f"/api/stock/materials/{m1.id}/count", json={"counted_qty": "120", "reason": "cycle count"})
    assert resp.status_code == 200
    assert resp.get_json()["movement"] is None

    resp = client.post(f"/api/stock/materials/{m1.id}/count", json={"counted_qty": "118", "reason": "cycle count"})
    assert resp.status_code == 201
    assert Decimal(resp.get_json()["movement"]["quantity"]) == Decimal("-2")

    movements = client.get(f"/api/stock/materials/{m1.id}/movements").get_json()
    assert movements["count"] == 4
    assert Decimal(movements["ledger_balance"]) == Decimal("118")

    verify = client.get("/api/stock/verify").get_json()
    assert verify == {"ok": True, "drift": []}


def test_stock_write_validation(client, m1):
    assert client.post(f"/api/stock/materials/{m1.id}/adjust", json={"reason": "x"}).status_code == 400
    assert client.post(f"/api/stock/materials/{m1.id}/adjust", json={"delta": "0", "reason": "x"}).status_code == 400
    assert client.post(f"/api/stock/materials/{m1.id}/receive", json={"qty": "-3", "reason": "x"}).status_code == 400
    assert client.post(f"/api/stock/materials/{m1.id}/receive", json={"qty": "3"}).status_code == 400
    assert client.post("/api/stock/materials/999/receive", json={"qty": "3", "reason": "x"}).status_code == 404
    assert client.get(f"/api/stock/materials/{m1.id}/movements?as_of=yesterday").status_code == 400


def test_low_stock_and_summary(client, make_material):
    make_material(name="Glue", stock="5", minimum="10")
    make_material(name="Nails", stock="500", minimum="10")

    low = client.get("/api/stock/low").get_json()
    assert [row["name"] for row in low["items"]] == ["Glue"]
    assert low["items"][0]["level"] == "CRITICAL"

    summary = client.get("/api/stock/summary").get_json()
    assert summary["total_materials"] == 2
    assert summary["critical_count"] == 1


def test_catalog_material_endpoints(client, db_session):
    resp = client.post("/api/catalog/materials", json={"name": "Linen", "opening_stock": "40", "min_stock_quantity": "10"})
    assert resp.status_code == 201
    material = resp.get_json()["material"]
    assert Decimal(material["stock_quantity"]) == Decimal("40")

    assert client.post("/api/catalog/materials", json={"name": "Linen"}).status_code == 409
    assert client.post("/api/catalog/materials", json={"name": "Silk", "stock_quantity": "5"}).status_code == 400

    resp = client.patch(f"/api/catalog/materials/{material['id']}", json={"changes": {"stock_quantity": "0"}})
    assert resp.status_code == 400

    resp = client.get(f"/api/catalog/materials/{material['id']}")
    assert resp.get_json()["level"]["level"] == "NORMAL"


def test_catalog_recipe_endpoints(client, m1):
    resp = client.post("/api/catalog/products", json={"name": "Tray", "sku": "TRY-1", "price_cents": 2000})
    assert resp.status_code == 201
    product_id = resp.get_json()["product"]["id"]

    resp = client.post(f"/api/catalog/products/{product_id}/recipe", json={"raw_material_id": m1.id, "quantity": "1.5"})
    assert resp.status_code == 201
    recipe_id = resp.get_json()["recipe"]["id"]

    assert client.post(f"/api/catalog/products/{product_id}/recipe", json={"quantity": "1"}).status_code == 400
    assert client.get(f"/api/catalog/products/{product_id}/recipe").get_json()["count"] == 1

    assert client.delete(f"/api/catalog/products/{product_id}/recipe/{recipe_id}").status_code == 200
    assert client.delete(f"/api/catalog/products/{product_id}/recipe/{recipe_id}").status_code == 404


def test_events_polling(client, p1):
    order = _create_order(client, p1.id)
    client.post(f"/api/orders/{order['id']}/transition", json={"target_status": "CONFIRMED"})
    client.post(f"/api/orders/{order['id']}/transition", json={"target_status": "PROCESSING"})

    first = client.get("/api/events?event_type=order.status_changed&limit=1").get_json()
    assert first["count"] == 1
    assert first["items"][0]["payload"]["new_status"] == "CONFIRMED"

    rest = client.get(f"/api/events?event_type=order.status_changed&after_id={first['last_id']}").get_json()
    assert [ev["payload"]["new_status"] for ev in rest["items"]] == ["PROCESSING"]

    assert client.get("/api/events?event_type=bogus").status_code == 400
