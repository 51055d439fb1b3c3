# backend/orderledger/routes/conflicts.py
"""Conflict review API: list, stats, and out-of-band resolution."""

from flask import Blueprint, current_app, jsonify, request

from ..errors import NotFoundError
from ..services import conflict_service
from ..services.conflict_service import ConflictResolutionError
from ..validation import ValidationError

conflicts_bp = Blueprint("conflicts", __name__, url_prefix="/api/conflicts")


@conflicts_bp.get("")
def list_conflicts_route():
    status = request.args.get("status")
    entity_table = request.args.get("entity_table")
    limit = request.args.get("limit", default=200, type=int)
    records = conflict_service.list_conflicts(status=status, entity_table=entity_table, limit=limit)
    return jsonify({"items": [r.to_dict() for r in records], "count": len(records)})


@conflicts_bp.get("/stats")
def conflict_stats_route():
    return jsonify(conflict_service.conflict_stats())


@conflicts_bp.get("/<int:conflict_id>")
def get_conflict_route(conflict_id: int):
    try:
        record = conflict_service.get_conflict(conflict_id)
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    return jsonify({"conflict": record.to_dict()})


@conflicts_bp.post("/<int:conflict_id>/resolve")
def resolve_conflict_route(conflict_id: int):
    """Body: {"resolution": "KEEP_REMOTE" | "RETRY_LOCAL", "actor": str?, "note": str?}"""
    data = request.get_json(silent=True) or {}
    try:
        record = conflict_service.resolve_conflict(
            conflict_id,
            data.get("resolution"),
            actor=data.get("actor"),
            note=data.get("note"),
        )
        return jsonify({"conflict": record.to_dict()})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except ConflictResolutionError as e:
        return jsonify(e.to_dict()), 409
    except Exception:
        current_app.logger.exception("Failed to resolve conflict %s", conflict_id)
        return jsonify({"error": "Internal server error"}), 500
