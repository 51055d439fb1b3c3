# Overview: Order state machine; confirm/cancel stock effects, bounded undo, order editing.

"""
Order Lifecycle

================================================================================
STATE MACHINE
================================================================================

    PENDING       -> CONFIRMED, CANCELLED
    CONFIRMED     -> PROCESSING, CANCELLED
    PROCESSING    -> READY_TO_SHIP, CANCELLED
    READY_TO_SHIP -> SHIPPED
    SHIPPED       -> DELIVERED
    CANCELLED     -> REFUNDED
    DELIVERED, REFUNDED: terminal

STOCK EFFECTS:
- PENDING -> CONFIRMED deducts the exploded bill of materials (OUT rows).
- Moving a stock-committed order to CANCELLED or REFUNDED restores exactly
  what the order still holds according to the ledger (RETURN rows). The
  stock_committed flag keeps this to one restore per commitment.

RULES:
1. A transition's ledger writes, status change, undo entry and events commit
   in ONE transaction. A failed deduction leaves nothing behind.
2. Transitions and undo on one order are serialized by the order row lock
   (BEGIN IMMEDIATE on SQLite) plus the optimistic version_id.
3. Materials are written in ascending id order so concurrent confirmations
   acquire locks in the same order.
4. Undo pops the newest entry and applies the mirror stock effect. It never
   pushes an entry of its own and never leaves a terminal state.

================================================================================
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from ..errors import NotFoundError, OrderLedgerError
from ..extensions import db
from ..models import Order, OrderItem, OrderUndoEntry, Product, StockMovement
from ..validation import (
    ModelValidationPolicy,
    ValidationError,
    enforce_rules_order,
    parse_int,
    validate_payload,
)
from orderledger.time_utils import utcnow
from . import bom_service, conflict_service, event_service
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import next_document_number
from .stock_ledger_service import LedgerWriteFailure, _apply_movement


PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
PROCESSING = "PROCESSING"
READY_TO_SHIP = "READY_TO_SHIP"
SHIPPED = "SHIPPED"
DELIVERED = "DELIVERED"
CANCELLED = "CANCELLED"
REFUNDED = "REFUNDED"

ORDER_STATUSES = (PENDING, CONFIRMED, PROCESSING, READY_TO_SHIP, SHIPPED, DELIVERED, CANCELLED, REFUNDED)

TRANSITIONS = {
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {PROCESSING, CANCELLED},
    PROCESSING: {READY_TO_SHIP, CANCELLED},
    READY_TO_SHIP: {SHIPPED},
    SHIPPED: {DELIVERED},
    CANCELLED: {REFUNDED},
    DELIVERED: set(),
    REFUNDED: set(),
}

TERMINAL_STATUSES = {DELIVERED, REFUNDED}

# Stock effect recorded on each undo entry
DEDUCTED = "DEDUCTED"
RESTORED = "RESTORED"
NONE = "NONE"

ORDER_DOCUMENT_TYPE = "ORDER"

ORDER_POLICY = ModelValidationPolicy(
    writable_fields={
        "customer_name",
        "customer_email",
        "customer_phone",
        "shipping_address",
        "shipping_city",
        "shipping_method",
        "order_source",
        "deadline_date",
        "notes",
        "received_cents",
        "discount_cents",
        "labor_cost_cents",
    },
    required_on_create={"customer_name"},
)


class OrderError(OrderLedgerError):
    """Order-level rule violation (items edited outside PENDING, bad quantities)."""


class InvalidTransitionError(OrderLedgerError):
    """The requested status change is not an edge of the lifecycle graph."""


class NothingToUndoError(OrderLedgerError):
    """The order's undo log is empty."""


def allowed_targets(status: str) -> list[str]:
    return sorted(TRANSITIONS.get(status, set()))


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def _normalize_status(value) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().upper()


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def _get_order_locked(order_id: int) -> Order:
    order = lock_for_update(Order.query.filter_by(id=order_id)).populate_existing().first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def list_orders(*, status: str | None = None, limit: int = 200) -> list[Order]:
    q = Order.query
    if status:
        status = _normalize_status(status)
        if status not in ORDER_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(ORDER_STATUSES)}")
        q = q.filter(Order.status == status)
    return q.order_by(Order.id.desc()).limit(limit).all()


def list_undo_entries(order_id: int) -> list[OrderUndoEntry]:
    """Newest first; the first entry is what undo() would pop."""
    get_order(order_id)
    return (
        OrderUndoEntry.query
        .filter_by(order_id=order_id)
        .order_by(OrderUndoEntry.id.desc())
        .all()
    )


# =============================================================================
# Totals
# =============================================================================

def _recompute_totals(order: Order) -> None:
    """total = sum of lines; net profit = total - discount - labor - material cost."""
    order.total_cents = sum(item.line_total_cents for item in order.items)
    explosion = bom_service.explode_order(order)
    material_cents = bom_service.material_cost_cents(explosion.materials)
    order.net_profit_cents = (
        order.total_cents
        - (order.discount_cents or 0)
        - (order.labor_cost_cents or 0)
        - material_cents
    )


def order_material_plan(order_id: int) -> dict:
    """What confirming this order would deduct, at current recipes and prices."""
    order = get_order(order_id)
    explosion = bom_service.explode_order(order)
    return {
        "order_id": order.id,
        "materials": [
            {"material_id": material_id, "required_qty": str(qty)}
            for material_id, qty in explosion.materials
        ],
        "skipped_product_ids": explosion.skipped_product_ids,
        "material_cost_cents": bom_service.material_cost_cents(explosion.materials),
    }


# =============================================================================
# Creation and editing (PENDING only for items)
# =============================================================================

def _parse_item(raw) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError("each item must be an object")
    if "product_id" not in raw:
        raise ValidationError("item product_id is required")
    product_id = parse_int(raw["product_id"], "product_id")
    quantity = parse_int(raw.get("quantity", 1), "quantity")
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")

    unit_price_cents = raw.get("unit_price_cents")
    if unit_price_cents is not None:
        unit_price_cents = parse_int(unit_price_cents, "unit_price_cents")
        if unit_price_cents < 0:
            raise ValidationError("unit_price_cents must be >= 0")

    personalization = raw.get("personalization")
    if personalization is not None and not isinstance(personalization, (dict, list)):
        raise ValidationError("personalization must be an object or a list of option keys")

    return {
        "product_id": product_id,
        "quantity": quantity,
        "unit_price_cents": unit_price_cents,
        "personalization": personalization,
    }


def _build_item(order: Order, parsed: dict) -> OrderItem:
    product = db.session.get(Product, parsed["product_id"])
    if product is None:
        raise NotFoundError(
            f"Product {parsed['product_id']} not found",
            details={"product_id": parsed["product_id"]},
        )
    if not product.is_active:
        raise OrderError(
            f"Product {product.id} is inactive",
            details={"product_id": product.id},
        )
    price = parsed["unit_price_cents"]
    item = OrderItem(
        product_id=product.id,
        quantity=parsed["quantity"],
        unit_price_cents=product.price_cents if price is None else price,
        personalization=parsed["personalization"],
    )
    order.items.append(item)
    return item


def create_order(payload: dict, actor: str | None = None) -> Order:
    """
    Create a PENDING order with its items and an allocated order number.

    payload: the order's customer/shipping/money fields plus "items":
    [{"product_id", "quantity", "unit_price_cents"?, "personalization"?}].
    Item prices default to the product's current price.
    """
    if payload is None or not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    payload = dict(payload)
    raw_items = payload.pop("items", None) or []
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")

    patch = validate_payload(model=Order, payload=payload, policy=ORDER_POLICY, partial=False)
    enforce_rules_order(patch)
    parsed_items = [_parse_item(raw) for raw in raw_items]

    def _op():
        begin_write()
        order = Order(status=PENDING, created_by=actor, **patch)
        order.order_number = next_document_number(
            document_type=ORDER_DOCUMENT_TYPE,
            prefix=current_app.config.get("ORDER_NUMBER_PREFIX", "ORD"),
        )
        db.session.add(order)
        for parsed in parsed_items:
            _build_item(order, parsed)
        _recompute_totals(order)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Order %s created with %d item(s)", order.order_number, len(order.items))
    return order


def _require_pending(order: Order, action: str) -> None:
    if order.status != PENDING:
        raise OrderError(
            f"Cannot {action} on a {order.status} order; items are editable only while PENDING",
            details={"order_id": order.id, "status": order.status},
        )


def add_item(order_id: int, item: dict, actor: str | None = None) -> OrderItem:
    parsed = _parse_item(item)

    def _op():
        begin_write()
        order = _get_order_locked(order_id)
        _require_pending(order, "add items")
        new_item = _build_item(order, parsed)
        _recompute_totals(order)
        db.session.commit()
        return new_item

    return run_with_retry(_op)


def remove_item(order_id: int, item_id: int, actor: str | None = None) -> Order:
    def _op():
        begin_write()
        order = _get_order_locked(order_id)
        _require_pending(order, "remove items")
        item = next((i for i in order.items if i.id == item_id), None)
        if item is None:
            raise NotFoundError(
                f"Item {item_id} not found on order {order_id}",
                details={"order_id": order_id, "item_id": item_id},
            )
        order.items.remove(item)
        db.session.delete(item)
        _recompute_totals(order)
        db.session.commit()
        return order

    return run_with_retry(_op)


def update_order_details(
    order_id: int,
    changes: dict,
    *,
    base_version: int | None = None,
    base_snapshot: dict | None = None,
    actor: str | None = None,
) -> Order:
    """
    Conflict-checked edit of customer, shipping and money fields.

    Status, totals, order number and stock flags are not writable here.
    """
    patch = validate_payload(model=Order, payload=changes, policy=ORDER_POLICY, partial=True)
    enforce_rules_order(patch)

    def _op():
        begin_write()
        order = _get_order_locked(order_id)
        conflict_service.check_write(
            order,
            base_version=base_version,
            base_snapshot=base_snapshot,
            changes=patch,
            source=actor,
        )
        for key, value in patch.items():
            setattr(order, key, value)
        _recompute_totals(order)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Order %s details updated by %s: %s", order.order_number, actor, ", ".join(sorted(patch)))
    return order


# =============================================================================
# Stock effects
# =============================================================================

def _held_quantities(order: Order) -> list[tuple[int, Decimal]]:
    """Net quantity per material the order currently holds, from its own ledger rows."""
    rows = (
        db.session.query(StockMovement.raw_material_id, func.sum(StockMovement.quantity))
        .filter(StockMovement.order_id == order.id)
        .filter(StockMovement.movement_type.in_(("OUT", "RETURN")))
        .group_by(StockMovement.raw_material_id)
        .order_by(StockMovement.raw_material_id.asc())
        .all()
    )
    held = []
    for material_id, total in rows:
        net = Decimal(str(total or 0)).quantize(Decimal("0.001"))
        if net < 0:
            held.append((material_id, -net))
    return held


def _deduct_for_order(order: Order, reason: str, actor: str | None) -> None:
    explosion = bom_service.explode_order(order)

    for product_id in explosion.skipped_product_ids:
        current_app.logger.warning(
            "Order %s: product %s has no recipe; no stock deducted for it", order.order_number, product_id
        )
        event_service.append_event(
            event_type=event_service.BOM_RECIPE_MISSING,
            entity_type="product",
            entity_id=product_id,
            payload={"order_id": order.id, "order_number": order.order_number, "product_id": product_id},
        )

    for material_id, qty in explosion.materials:
        if qty <= 0:
            continue
        _apply_movement(
            material_id=material_id,
            movement_type="OUT",
            delta=-qty,
            reason=reason,
            order_id=order.id,
            actor=actor,
        )
    order.stock_committed = True


def _restore_for_order(order: Order, reason: str, actor: str | None) -> None:
    for material_id, qty in _held_quantities(order):
        _apply_movement(
            material_id=material_id,
            movement_type="RETURN",
            delta=qty,
            reason=reason,
            order_id=order.id,
            actor=actor,
        )
    order.stock_committed = False


def _apply_stock_effect(order: Order, previous: str, target: str, actor: str | None) -> str:
    if previous == PENDING and target == CONFIRMED:
        _deduct_for_order(order, f"order:{order.id} confirm", actor)
        return DEDUCTED
    if target in (CANCELLED, REFUNDED) and order.stock_committed:
        _restore_for_order(order, f"order:{order.id} {target.lower()}", actor)
        return RESTORED
    return NONE


def _push_undo(order: Order, previous: str, target: str, effect: str, actor: str | None) -> None:
    db.session.add(OrderUndoEntry(
        order_id=order.id,
        previous_status=previous,
        new_status=target,
        stock_effect=effect,
        actor=actor,
    ))
    db.session.flush()

    capacity = current_app.config.get("UNDO_STACK_CAPACITY", 10)
    stale_ids = [
        row.id
        for row in (
            db.session.query(OrderUndoEntry.id)
            .filter(OrderUndoEntry.order_id == order.id)
            .order_by(OrderUndoEntry.id.desc())
            .offset(capacity)
            .all()
        )
    ]
    if stale_ids:
        OrderUndoEntry.query.filter(OrderUndoEntry.id.in_(stale_ids)).delete(synchronize_session=False)


def _status_event(order: Order, previous: str, actor: str | None, *, undo: bool = False) -> None:
    event_service.append_event(
        event_type=event_service.ORDER_STATUS_CHANGED,
        entity_type="order",
        entity_id=order.id,
        payload={
            "order_id": order.id,
            "order_number": order.order_number,
            "previous_status": previous,
            "new_status": order.status,
            "actor": actor,
            "occurred_at": utcnow(),
            "undo": undo,
        },
    )


def _raise_ledger_failure(order_id: int, exc: LedgerWriteFailure, action: str):
    details = dict(exc.details)
    details["order_id"] = order_id
    raise LedgerWriteFailure(f"{action} of order {order_id} failed: {exc.message}", details=details) from exc


# =============================================================================
# Transition and undo
# =============================================================================

def transition(
    order_id: int,
    target_status: str,
    actor: str | None = None,
    *,
    base_version: int | None = None,
    base_snapshot: dict | None = None,
) -> Order:
    """
    Move an order along one lifecycle edge.

    Raises:
        InvalidTransitionError: target is not a successor (nothing changes)
        ConflictDetectedError: base_version/base_snapshot are stale
        LedgerWriteFailure: a stock write failed; the whole transition rolled back
    """
    target = _normalize_status(target_status)

    def _op():
        begin_write()
        order = _get_order_locked(order_id)
        previous = order.status

        if target not in ORDER_STATUSES or not can_transition(previous, target):
            raise InvalidTransitionError(
                f"Cannot move order {order_id} from {previous} to {target_status}",
                details={
                    "order_id": order_id,
                    "from_status": previous,
                    "to_status": target_status,
                    "allowed": allowed_targets(previous),
                },
            )

        conflict_service.check_write(
            order,
            base_version=base_version,
            base_snapshot=base_snapshot,
            changes={"status": target},
            source=actor,
        )

        effect = _apply_stock_effect(order, previous, target, actor)
        order.status = target
        order.updated_at = utcnow()
        _recompute_totals(order)
        _push_undo(order, previous, target, effect, actor)
        _status_event(order, previous, actor)

        db.session.commit()
        return order, previous, effect

    try:
        order, previous, effect = run_with_retry(_op)
    except LedgerWriteFailure as exc:
        _raise_ledger_failure(order_id, exc, "Transition")

    event_service.publish_pending()
    current_app.logger.info(
        "Order %s %s -> %s by %s (stock %s)", order.order_number, previous, order.status, actor, effect
    )
    return order


def undo(order_id: int, actor: str | None = None) -> Order:
    """
    Revert the newest transition of an order.

    DEDUCTED entries restore what the order holds; RESTORED entries deduct the
    bill of materials again. The popped entry is deleted.
    """
    def _op():
        begin_write()
        order = _get_order_locked(order_id)

        entry = (
            OrderUndoEntry.query
            .filter_by(order_id=order_id)
            .order_by(OrderUndoEntry.id.desc())
            .first()
        )
        if entry is None:
            raise NothingToUndoError(
                f"Order {order_id} has nothing to undo",
                details={"order_id": order_id, "status": order.status},
            )
        if order.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Order {order_id} is {order.status}; terminal orders cannot be undone",
                details={"order_id": order_id, "status": order.status},
            )
        if entry.new_status != order.status:
            raise InvalidTransitionError(
                f"Undo entry {entry.id} no longer matches order {order_id}",
                details={
                    "order_id": order_id,
                    "status": order.status,
                    "entry_new_status": entry.new_status,
                },
            )

        previous = order.status
        if entry.stock_effect == DEDUCTED:
            _restore_for_order(order, f"order:{order.id} undo confirm", actor)
        elif entry.stock_effect == RESTORED:
            _deduct_for_order(order, f"order:{order.id} undo {previous.lower()}", actor)

        order.status = entry.previous_status
        order.updated_at = utcnow()
        _recompute_totals(order)
        db.session.delete(entry)
        _status_event(order, previous, actor, undo=True)

        db.session.commit()
        return order, previous

    try:
        order, previous = run_with_retry(_op)
    except LedgerWriteFailure as exc:
        _raise_ledger_failure(order_id, exc, "Undo")

    event_service.publish_pending()
    current_app.logger.info("Order %s undo %s -> %s by %s", order.order_number, previous, order.status, actor)
    return order
