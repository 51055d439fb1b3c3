# Overview: Flask API routes for orders; parses input and returns JSON responses.

# backend/orderledger/routes/orders.py
"""
Order API routes.

Write endpoints that accept base_version/base_snapshot are conflict-checked;
a 409 with a "conflict" body means: re-read the order and resubmit.
transition and undo are not idempotent; clients de-duplicate their retries.
"""

from flask import Blueprint, current_app, jsonify, request

from ..errors import NotFoundError
from ..services import order_service
from ..services.conflict_service import ConflictDetectedError
from ..services.order_service import InvalidTransitionError, NothingToUndoError, OrderError
from ..services.stock_ledger_service import LedgerWriteFailure
from ..validation import ValidationError, parse_int

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _base_version(data: dict):
    raw = data.get("base_version")
    return None if raw is None else parse_int(raw, "base_version")


def _base_snapshot(data: dict):
    snapshot = data.get("base_snapshot")
    if snapshot is not None and not isinstance(snapshot, dict):
        raise ValidationError("base_snapshot must be an object")
    return snapshot


@orders_bp.post("")
def create_order_route():
    data = request.get_json(silent=True) or {}
    actor = data.pop("actor", None)
    try:
        order = order_service.create_order(data, actor=actor)
        return jsonify({"order": order.to_dict()}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except OrderError as e:
        return jsonify(e.to_dict()), 409
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
def list_orders_route():
    status = request.args.get("status")
    limit = request.args.get("limit", default=200, type=int)
    try:
        orders = order_service.list_orders(status=status, limit=limit)
        return jsonify({"items": [o.to_dict(include_items=False) for o in orders], "count": len(orders)})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    data = order.to_dict()
    data["allowed_transitions"] = order_service.allowed_targets(order.status)
    return jsonify({"order": data})


@orders_bp.patch("/<int:order_id>")
def update_order_route(order_id: int):
    """
    Conflict-checked edit of customer, shipping and money fields.

    Body: {"changes": {...}, "base_version": int?, "base_snapshot": {...}?, "actor": str?}
    """
    data = request.get_json(silent=True) or {}
    try:
        order = order_service.update_order_details(
            order_id,
            data.get("changes") or {},
            base_version=_base_version(data),
            base_snapshot=_base_snapshot(data),
            actor=data.get("actor"),
        )
        return jsonify({"order": order.to_dict()})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except ConflictDetectedError as e:
        return jsonify(e.to_dict()), 409
    except Exception:
        current_app.logger.exception("Failed to update order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/items")
def add_item_route(order_id: int):
    data = request.get_json(silent=True) or {}
    try:
        item = order_service.add_item(order_id, data, actor=data.get("actor"))
        return jsonify({"item": item.to_dict()}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except OrderError as e:
        return jsonify(e.to_dict()), 409
    except Exception:
        current_app.logger.exception("Failed to add item to order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>/items/<int:item_id>")
def remove_item_route(order_id: int, item_id: int):
    try:
        order = order_service.remove_item(order_id, item_id)
        return jsonify({"order": order.to_dict()})
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except OrderError as e:
        return jsonify(e.to_dict()), 409
    except Exception:
        current_app.logger.exception("Failed to remove item %s from order %s", item_id, order_id)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/transition")
def transition_route(order_id: int):
    """
    Move an order along one lifecycle edge.

    Body: {"target_status": str, "actor": str?, "base_version": int?, "base_snapshot": {...}?}
    """
    data = request.get_json(silent=True) or {}
    target = data.get("target_status")
    if not target:
        return jsonify({"error": "target_status required"}), 400

    try:
        order = order_service.transition(
            order_id,
            target,
            data.get("actor"),
            base_version=_base_version(data),
            base_snapshot=_base_snapshot(data),
        )
        return jsonify({"order": order.to_dict()})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except (InvalidTransitionError, ConflictDetectedError) as e:
        return jsonify(e.to_dict()), 409
    except LedgerWriteFailure as e:
        current_app.logger.error("Ledger failure during transition of order %s: %s", order_id, e.message)
        return jsonify(e.to_dict()), 503
    except Exception:
        current_app.logger.exception("Failed to transition order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/undo")
def undo_route(order_id: int):
    data = request.get_json(silent=True) or {}
    try:
        order = order_service.undo(order_id, data.get("actor"))
        return jsonify({"order": order.to_dict()})
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except (NothingToUndoError, InvalidTransitionError) as e:
        return jsonify(e.to_dict()), 409
    except LedgerWriteFailure as e:
        current_app.logger.error("Ledger failure during undo of order %s: %s", order_id, e.message)
        return jsonify(e.to_dict()), 503
    except Exception:
        current_app.logger.exception("Failed to undo order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/undo")
def undo_log_route(order_id: int):
    try:
        entries = order_service.list_undo_entries(order_id)
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    return jsonify({"items": [entry.to_dict() for entry in entries], "count": len(entries)})


@orders_bp.get("/<int:order_id>/bom")
def order_bom_route(order_id: int):
    try:
        return jsonify(order_service.order_material_plan(order_id))
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
