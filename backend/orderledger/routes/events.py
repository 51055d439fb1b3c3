# backend/orderledger/routes/events.py
"""Outbox polling for the notification/report layer: GET /api/events?after_id=N."""

from flask import Blueprint, jsonify, request

from ..services import event_service

events_bp = Blueprint("events", __name__, url_prefix="/api/events")


@events_bp.get("")
def list_events_route():
    after_id = request.args.get("after_id", type=int)
    event_type = request.args.get("event_type")
    limit = min(request.args.get("limit", default=100, type=int), 1000)

    if event_type and event_type not in event_service.EVENT_TYPES:
        return jsonify({"error": f"Unknown event_type {event_type!r}"}), 400

    events = event_service.list_events(after_id=after_id, event_type=event_type, limit=limit)
    return jsonify({
        "items": [ev.to_dict() for ev in events],
        "count": len(events),
        "last_id": events[-1].id if events else after_id,
    })
