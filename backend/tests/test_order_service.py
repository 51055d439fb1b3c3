from decimal import Decimal

import pytest

from orderledger.errors import NotFoundError
from orderledger.extensions import db
from orderledger.models import DomainEvent, Order, OrderUndoEntry, StockMovement
from orderledger.services import order_service, stock_ledger_service
from orderledger.services.order_service import (
    InvalidTransitionError,
    NothingToUndoError,
    OrderError,
)
from orderledger.services.stock_ledger_service import LedgerWriteFailure
from orderledger.validation import ValidationError


def _order_movements(order_id):
    return (
        StockMovement.query
        .filter_by(order_id=order_id)
        .order_by(StockMovement.id.asc())
        .all()
    )


def _fresh(order_id):
    db.session.expire_all()
    return db.session.get(Order, order_id)


# =============================================================================
# Creation and totals
# =============================================================================

def test_create_order_allocates_sequential_numbers(make_order, p1):
    first = make_order([{"product_id": p1.id, "quantity": 1}])
    second = make_order([{"product_id": p1.id, "quantity": 1}])

    assert first.order_number == "ORD-000001"
    assert second.order_number == "ORD-000002"
    assert first.status == "PENDING"
    assert first.created_by == "tester"


def test_create_order_computes_money(make_order, p1):
    order = make_order(
        [{"product_id": p1.id, "quantity": 3}],
        discount_cents=200,
        labor_cost_cents=300,
        received_cents=1000,
    )
    # 3 x 1000 - 200 - 300 - material (6 x M1 at 100c)
    assert order.total_cents == 3000
    assert order.net_profit_cents == 3000 - 200 - 300 - 600
    assert order.remaining_cents == 3000 - 200 - 1000


def test_create_order_requires_customer(p1):
    with pytest.raises(ValidationError):
        order_service.create_order({"items": [{"product_id": p1.id, "quantity": 1}]})


def test_create_order_unknown_product(db_session):
    with pytest.raises(NotFoundError):
        order_service.create_order({"customer_name": "X", "items": [{"product_id": 999, "quantity": 1}]})
    assert Order.query.count() == 0


def test_items_editable_only_while_pending(make_order, p1):
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    item = order_service.add_item(order.id, {"product_id": p1.id, "quantity": 2})
    assert _fresh(order.id).total_cents == 3000

    order_service.remove_item(order.id, item.id)
    assert _fresh(order.id).total_cents == 1000

    order_service.transition(order.id, "CONFIRMED", "ops")
    with pytest.raises(OrderError):
        order_service.add_item(order.id, {"product_id": p1.id, "quantity": 1})


def test_update_order_details_rejects_status(make_order, p1):
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    with pytest.raises(ValidationError):
        order_service.update_order_details(order.id, {"status": "SHIPPED"})

    updated = order_service.update_order_details(order.id, {"shipping_city": "Lyon", "discount_cents": 100})
    assert updated.shipping_city == "Lyon"
    assert updated.net_profit_cents == 1000 - 100 - 200


# =============================================================================
# Transitions and stock effects
# =============================================================================

def test_confirm_then_cancel_moves_stock_exactly(make_order, p1, m1, balance):
    order = make_order([{"product_id": p1.id, "quantity": 3}])

    order_service.transition(order.id, "CONFIRMED", "ops")
    rows = _order_movements(order.id)
    assert [(r.movement_type, r.quantity) for r in rows] == [("OUT", Decimal("-6"))]
    assert rows[0].reason == f"order:{order.id} confirm"
    assert balance(m1.id) == Decimal("94")

    order_service.transition(order.id, "CANCELLED", "ops")
    rows = _order_movements(order.id)
    assert [(r.movement_type, r.quantity) for r in rows] == [("OUT", Decimal("-6")), ("RETURN", Decimal("6"))]
    assert rows[1].reason == f"order:{order.id} cancelled"
    assert balance(m1.id) == Decimal("100")
    assert stock_ledger_service.verify_conservation() == []


def test_refund_after_cancel_does_not_restore_twice(make_order, p1, m1, balance):
    order = make_order([{"product_id": p1.id, "quantity": 3}])
    order_service.transition(order.id, "CONFIRMED")
    order_service.transition(order.id, "CANCELLED")
    order_service.transition(order.id, "REFUNDED")

    assert balance(m1.id) == Decimal("100")
    assert len(_order_movements(order.id)) == 2
    assert _fresh(order.id).stock_committed is False


def test_cancel_from_pending_has_no_stock_effect(make_order, p1, m1, balance):
    order = make_order([{"product_id": p1.id, "quantity": 3}])
    order_service.transition(order.id, "CANCELLED")

    assert balance(m1.id) == Decimal("100")
    assert _order_movements(order.id) == []
    entry = order_service.list_undo_entries(order.id)[0]
    assert entry.stock_effect == "NONE"


def test_invalid_edge_has_no_side_effects(make_order, p1, m1, balance):
    order = make_order([{"product_id": p1.id, "quantity": 3}])
    version = order.version_id

    with pytest.raises(InvalidTransitionError) as exc:
        order_service.transition(order.id, "SHIPPED", "ops")
    assert exc.value.details["from_status"] == "PENDING"
    assert exc.value.details["allowed"] == ["CANCELLED", "CONFIRMED"]

    fresh = _fresh(order.id)
    assert fresh.status == "PENDING"
    assert fresh.version_id == version
    assert balance(m1.id) == Decimal("100")
    assert order_service.list_undo_entries(order.id) == []


def test_unknown_status_is_invalid_transition(make_order, p1):
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    with pytest.raises(InvalidTransitionError):
        order_service.transition(order.id, "LOST_IN_MAIL")


def test_terminal_states_are_never_left(make_order, p1):
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    for target in ("CONFIRMED", "PROCESSING", "READY_TO_SHIP", "SHIPPED", "DELIVERED"):
        order_service.transition(order.id, target)

    for target in order_service.ORDER_STATUSES:
        with pytest.raises(InvalidTransitionError):
            order_service.transition(order.id, target)
    assert order_service.allowed_targets("DELIVERED") == []
    assert order_service.allowed_targets("REFUNDED") == []


def test_missing_recipe_skips_item_and_records_event(make_order, make_product, p1, m1, balance):
    bare = make_product(name="Gift card", lines=[])
    order = make_order([
        {"product_id": p1.id, "quantity": 1},
        {"product_id": bare.id, "quantity": 2},
    ])

    confirmed = order_service.transition(order.id, "CONFIRMED")
    assert confirmed.status == "CONFIRMED"
    assert balance(m1.id) == Decimal("98")

    events = DomainEvent.query.filter_by(event_type="bom.recipe_missing").all()
    assert len(events) == 1
    assert events[0].data == {"order_id": order.id, "order_number": order.order_number, "product_id": bare.id}


def test_failed_deduction_rolls_back_whole_transition(make_material, make_product, make_order, balance):
    kept = make_material(name="Kept", stock="50")
    doomed = make_material(name="Doomed", stock="50")
    product = make_product(lines=[(kept, "1", None), (doomed, "1", None)])
    order = make_order([{"product_id": product.id, "quantity": 5}])
    order_id, kept_id, doomed_id = order.id, kept.id, doomed.id

    # Remove the second material behind the engine's back
    db.session.execute(db.text("DELETE FROM stock_movements WHERE raw_material_id = :id"), {"id": doomed_id})
    db.session.execute(db.text("DELETE FROM raw_materials WHERE id = :id"), {"id": doomed_id})
    db.session.commit()

    with pytest.raises(LedgerWriteFailure) as exc:
        order_service.transition(order_id, "CONFIRMED", "ops")
    assert exc.value.details["order_id"] == order_id
    assert exc.value.details["material_id"] == doomed_id

    fresh = _fresh(order_id)
    assert fresh.status == "PENDING"
    assert fresh.stock_committed is False
    assert balance(kept_id) == Decimal("50")
    assert _order_movements(order_id) == []
    assert OrderUndoEntry.query.filter_by(order_id=order_id).count() == 0
    assert DomainEvent.query.filter_by(event_type="order.status_changed").count() == 0


def test_status_change_event_payload(make_order, p1):
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    order_service.transition(order.id, "CONFIRMED", "alice")

    event = DomainEvent.query.filter_by(event_type="order.status_changed").one()
    assert event.entity_id == order.id
    assert event.data["previous_status"] == "PENDING"
    assert event.data["new_status"] == "CONFIRMED"
    assert event.data["actor"] == "alice"
    assert event.data["order_number"] == order.order_number
    assert event.data["occurred_at"].endswith("Z")


# =============================================================================
# Undo
# =============================================================================

def test_undo_confirm_restores_pending_and_stock(make_order, p1, m1, balance):
    order = make_order([{"product_id": p1.id, "quantity": 3}])
    order_service.transition(order.id, "CONFIRMED", "ops")

    undone = order_service.undo(order.id, "ops")
    assert undone.status == "PENDING"
    assert undone.stock_committed is False
    assert balance(m1.id) == Decimal("100")
    rows = _order_movements(order.id)
    assert [(r.movement_type, r.quantity) for r in rows] == [("OUT", Decimal("-6")), ("RETURN", Decimal("6"))]

    with pytest.raises(NothingToUndoError):
        order_service.undo(order.id, "ops")


def test_undo_cancel_deducts_again(make_order, p1, m1, balance):
    order = make_order([{"product_id": p1.id, "quantity": 2}])
    order_service.transition(order.id, "CONFIRMED")
    order_service.transition(order.id, "CANCELLED")
    assert balance(m1.id) == Decimal("100")

    undone = order_service.undo(order.id)
    assert undone.status == "CONFIRMED"
    assert undone.stock_committed is True
    assert balance(m1.id) == Decimal("96")

    # The confirm entry is still there and reverses cleanly
    undone = order_service.undo(order.id)
    assert undone.status == "PENDING"
    assert balance(m1.id) == Decimal("100")
    assert stock_ledger_service.verify_conservation() == []


def test_undo_without_stock_effect(make_order, p1, m1, balance):
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    order_service.transition(order.id, "CONFIRMED")
    order_service.transition(order.id, "PROCESSING")

    undone = order_service.undo(order.id)
    assert undone.status == "CONFIRMED"
    assert balance(m1.id) == Decimal("98")


def test_undo_refused_in_terminal_state(make_order, p1):
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    for target in ("CONFIRMED", "PROCESSING", "READY_TO_SHIP", "SHIPPED", "DELIVERED"):
        order_service.transition(order.id, target)

    with pytest.raises(InvalidTransitionError):
        order_service.undo(order.id)
    assert _fresh(order.id).status == "DELIVERED"


def test_undo_does_not_push_entries(make_order, p1):
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    order_service.transition(order.id, "CONFIRMED")
    order_service.transition(order.id, "PROCESSING")
    order_service.undo(order.id)

    entries = order_service.list_undo_entries(order.id)
    assert [(e.previous_status, e.new_status) for e in entries] == [("PENDING", "CONFIRMED")]


def test_undo_log_is_bounded(app, make_order, p1, monkeypatch):
    monkeypatch.setitem(app.config, "UNDO_STACK_CAPACITY", 2)
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    for target in ("CONFIRMED", "PROCESSING", "READY_TO_SHIP", "SHIPPED"):
        order_service.transition(order.id, target)

    entries = order_service.list_undo_entries(order.id)
    assert [e.new_status for e in entries] == ["SHIPPED", "READY_TO_SHIP"]


def test_undo_log_default_capacity(app, make_order, p1):
    assert app.config["UNDO_STACK_CAPACITY"] == 10
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    for target in ("CONFIRMED", "PROCESSING", "READY_TO_SHIP", "SHIPPED", "DELIVERED"):
        order_service.transition(order.id, target)
    assert len(order_service.list_undo_entries(order.id)) == 5


def test_undo_unknown_order(db_session):
    with pytest.raises(NotFoundError):
        order_service.undo(12345)
