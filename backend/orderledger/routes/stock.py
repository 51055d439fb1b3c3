# Overview: Flask API routes for raw-material stock; ledger writes, levels and reports.

# backend/orderledger/routes/stock.py
"""
Stock ledger API.

Every write appends exactly one movement row; balances are never set
directly. Quantities are sent and returned as decimal strings.
"""

from flask import Blueprint, current_app, jsonify, request

from ..errors import NotFoundError
from ..services import catalog_service, stock_advisor_service, stock_ledger_service
from ..services.stock_ledger_service import LedgerWriteFailure
from ..validation import ValidationError
from orderledger.time_utils import parse_iso_datetime

stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _movement_response(material_id: int, movement):
    material = catalog_service.get_material(material_id)
    return jsonify({
        "movement": movement.to_dict() if movement is not None else None,
        "material": material.to_dict(),
        "level": stock_advisor_service.classify(material),
    })


def _ledger_write(material_id: int, write):
    """Shared error mapping for the write endpoints."""
    try:
        catalog_service.get_material(material_id)
        movement = write()
        return _movement_response(material_id, movement), 201 if movement is not None else 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except LedgerWriteFailure as e:
        current_app.logger.error("Ledger write failed for material %s: %s", material_id, e.message)
        return jsonify(e.to_dict()), 503
    except Exception:
        current_app.logger.exception("Ledger write failed for material %s", material_id)
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/materials/<int:material_id>/adjust")
def adjust_route(material_id: int):
    """Body: {"delta": "-2.5", "reason": str, "actor": str?}"""
    data = request.get_json(silent=True) or {}
    if data.get("delta") is None:
        return jsonify({"error": "delta required"}), 400
    return _ledger_write(
        material_id,
        lambda: stock_ledger_service.adjust(material_id, data["delta"], data.get("reason"), actor=data.get("actor")),
    )


@stock_bp.post("/materials/<int:material_id>/receive")
def receive_route(material_id: int):
    """Body: {"qty": "10", "reason": str, "actor": str?}"""
    data = request.get_json(silent=True) or {}
    if data.get("qty") is None:
        return jsonify({"error": "qty required"}), 400
    return _ledger_write(
        material_id,
        lambda: stock_ledger_service.receive(material_id, data["qty"], data.get("reason"), actor=data.get("actor")),
    )


@stock_bp.post("/materials/<int:material_id>/count")
def count_route(material_id: int):
    """Body: {"counted_qty": "42", "reason": str, "actor": str?}; 200 with movement null when nothing differs."""
    data = request.get_json(silent=True) or {}
    if data.get("counted_qty") is None:
        return jsonify({"error": "counted_qty required"}), 400
    return _ledger_write(
        material_id,
        lambda: stock_ledger_service.count(
            material_id, data["counted_qty"], data.get("reason"), actor=data.get("actor")
        ),
    )


@stock_bp.get("/materials/<int:material_id>/level")
def level_route(material_id: int):
    try:
        material = catalog_service.get_material(material_id)
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    return jsonify(stock_advisor_service.material_level(material))


@stock_bp.get("/materials/<int:material_id>/movements")
def movements_route(material_id: int):
    """Query params: limit (default 200), as_of (ISO-8601, inclusive)."""
    limit = request.args.get("limit", default=200, type=int)
    try:
        catalog_service.get_material(material_id)
        as_of = parse_iso_datetime(request.args.get("as_of"))
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except ValueError:
        return jsonify({"error": "as_of must be an ISO-8601 datetime"}), 400

    movements = stock_ledger_service.list_movements(material_id, limit=limit, as_of=as_of)
    return jsonify({
        "items": [m.to_dict() for m in movements],
        "count": len(movements),
        "ledger_balance": str(stock_ledger_service.ledger_balance(material_id)),
    })


@stock_bp.get("/low")
def low_stock_route():
    rows = stock_advisor_service.low_stock_report()
    return jsonify({"items": rows, "count": len(rows)})


@stock_bp.get("/summary")
def summary_route():
    return jsonify(stock_advisor_service.stock_summary())


@stock_bp.get("/verify")
def verify_route():
    drifted = stock_ledger_service.verify_conservation()
    return jsonify({"ok": not drifted, "drift": drifted})
