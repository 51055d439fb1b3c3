from decimal import Decimal

import pytest

from orderledger.extensions import db
from orderledger.models import ConflictRecord, DomainEvent, Order, RawMaterial
from orderledger.services import catalog_service, conflict_service, order_service, stock_ledger_service
from orderledger.services.conflict_service import ConflictDetectedError, ConflictResolutionError
from orderledger.validation import ValidationError


@pytest.fixture
def order(make_order, p1):
    return make_order([{"product_id": p1.id, "quantity": 1}])


def test_matching_version_is_fast_path(order):
    updated = order_service.update_order_details(
        order.id,
        {"notes": "gift wrap"},
        base_version=order.version_id,
        base_snapshot={"notes": "something stale"},
    )
    assert updated.notes == "gift wrap"
    assert ConflictRecord.query.count() == 0


def test_stale_status_transition_is_high_priority_conflict(order, m1):
    snapshot = {"status": "PENDING"}
    base_version = order.version_id

    # Another writer confirms first
    order_service.transition(order.id, "CONFIRMED", "bob")

    with pytest.raises(ConflictDetectedError) as exc:
        order_service.transition(
            order.id,
            "CANCELLED",
            "alice",
            base_version=base_version,
            base_snapshot=snapshot,
        )

    record = exc.value.record
    assert record.priority == "HIGH"
    assert record.status == "DETECTED"
    assert record.entity_table == "orders"
    assert record.fields == [{"field": "status", "local": "PENDING", "remote": "CONFIRMED"}]
    assert record.source == "alice"

    db.session.expire_all()
    fresh = db.session.get(Order, order.id)
    assert fresh.status == "CONFIRMED"
    assert fresh.stock_committed is True
    assert len(order_service.list_undo_entries(order.id)) == 1

    # The record survived the rejected write
    assert ConflictRecord.query.count() == 1
    assert DomainEvent.query.filter_by(event_type="conflict.detected").count() == 1


def test_version_moved_but_snapshot_matches_is_merged(order):
    base_version = order.version_id
    order_service.update_order_details(order.id, {"notes": "packed"})

    updated = order_service.update_order_details(
        order.id,
        {"shipping_city": "Oslo"},
        base_version=base_version,
        base_snapshot={"shipping_city": None},
    )
    assert updated.shipping_city == "Oslo"
    assert updated.notes == "packed"
    assert ConflictRecord.query.count() == 0


def test_divergence_outside_change_set_is_a_conflict(order):
    base_version = order.version_id
    snapshot = {"customer_phone": None, "shipping_city": None}
    order_service.update_order_details(order.id, {"customer_phone": "555-0100"})

    with pytest.raises(ConflictDetectedError) as exc:
        order_service.update_order_details(
            order.id,
            {"shipping_city": "Oslo"},
            base_version=base_version,
            base_snapshot=snapshot,
        )
    assert exc.value.record.priority == "NORMAL"
    assert [f["field"] for f in exc.value.record.fields] == ["customer_phone"]

    db.session.expire_all()
    assert db.session.get(Order, order.id).shipping_city is None


def test_money_field_conflict_is_high(order):
    base_version = order.version_id
    order_service.update_order_details(order.id, {"received_cents": 500})

    with pytest.raises(ConflictDetectedError) as exc:
        order_service.update_order_details(
            order.id,
            {"received_cents": 700},
            base_version=base_version,
            base_snapshot={"received_cents": 0},
        )
    assert exc.value.record.priority == "HIGH"
    assert exc.value.record.attempted_changes == {"received_cents": 700}


def test_stale_version_without_snapshot_uses_change_set(order):
    base_version = order.version_id
    order_service.update_order_details(order.id, {"notes": "first"})

    with pytest.raises(ConflictDetectedError) as exc:
        order_service.update_order_details(order.id, {"notes": "second"}, base_version=base_version)
    assert exc.value.record.fields == [{"field": "notes", "local": "second", "remote": "first"}]


def test_material_stock_change_conflicts_on_stale_snapshot(m1):
    snapshot = {"stock_quantity": "100", "unit_price_cents": 100}
    base_version = m1.version_id

    # A ledger write moves the balance and the row version
    stock_ledger_service.deduct(m1.id, 4, "pick")

    with pytest.raises(ConflictDetectedError) as exc:
        catalog_service.update_material(
            m1.id,
            {"unit_price_cents": 150},
            base_version=base_version,
            base_snapshot=snapshot,
        )
    record = exc.value.record
    assert record.priority == "HIGH"
    assert [f["field"] for f in record.fields] == ["stock_quantity"]
    assert record.fields[0]["local"] == "100"
    assert Decimal(record.fields[0]["remote"]) == Decimal("96")

    db.session.expire_all()
    assert db.session.get(RawMaterial, m1.id).unit_price_cents == 100


def test_snapshot_with_unknown_field_is_rejected(order):
    with pytest.raises(ValidationError):
        order_service.update_order_details(
            order.id,
            {"notes": "x"},
            base_version=order.version_id - 1,
            base_snapshot={"no_such_field": 1},
        )


def test_detect_compares_decimals_by_value(m1):
    fields = conflict_service.detect(
        m1,
        base_version=m1.version_id + 5,
        base_snapshot={"stock_quantity": "100.0", "min_stock_quantity": 10},
    )
    assert fields == []


def test_resolve_conflict_once(order):
    base_version = order.version_id
    order_service.update_order_details(order.id, {"notes": "a"})
    with pytest.raises(ConflictDetectedError) as exc:
        order_service.update_order_details(
            order.id, {"notes": "b"}, base_version=base_version, base_snapshot={"notes": None}
        )
    conflict_id = exc.value.record.id

    resolved = conflict_service.resolve_conflict(conflict_id, "keep_remote", actor="lead", note="checked")
    assert resolved.status == "RESOLVED"
    assert resolved.resolution == "KEEP_REMOTE"
    assert resolved.resolved_by == "lead"

    with pytest.raises(ConflictResolutionError):
        conflict_service.resolve_conflict(conflict_id, "RETRY_LOCAL")

    with pytest.raises(ValidationError):
        conflict_service.resolve_conflict(conflict_id, "SPLIT_THE_DIFFERENCE")


def test_conflict_stats(order, m1):
    base_version = order.version_id
    order_service.transition(order.id, "CONFIRMED")
    with pytest.raises(ConflictDetectedError):
        order_service.transition(order.id, "CANCELLED", base_version=base_version, base_snapshot={"status": "PENDING"})
    with pytest.raises(ConflictDetectedError):
        order_service.update_order_details(
            order.id, {"notes": "x"}, base_version=base_version, base_snapshot={"status": "PENDING"}
        )
    material_version = m1.version_id
    catalog_service.update_material(m1.id, {"notes": "new bin"})
    with pytest.raises(ConflictDetectedError) as exc:
        catalog_service.update_material(
            m1.id, {"notes": "old bin"}, base_version=material_version, base_snapshot={"notes": None}
        )
    conflict_service.resolve_conflict(exc.value.record.id, "RETRY_LOCAL")

    stats = conflict_service.conflict_stats()
    assert stats["total"] == 3
    assert stats["pending"] == 2
    assert stats["by_priority"] == {"HIGH": 2, "NORMAL": 0}
    assert stats["by_table"] == {"orders": 2}
    assert stats["resolved_today"] == 1

    assert len(conflict_service.list_conflicts(status="DETECTED")) == 2
    assert len(conflict_service.list_conflicts(entity_table="raw_materials")) == 1


def test_priority_rules():
    assert conflict_service.priority_for("orders", [{"field": "status"}]) == "HIGH"
    assert conflict_service.priority_for("orders", [{"field": "discount_cents"}]) == "HIGH"
    assert conflict_service.priority_for("orders", [{"field": "notes"}]) == "NORMAL"
    assert conflict_service.priority_for("raw_materials", [{"field": "unit_price_cents"}]) == "HIGH"
    assert conflict_service.priority_for("raw_materials", [{"field": "min_stock_quantity"}]) == "NORMAL"
