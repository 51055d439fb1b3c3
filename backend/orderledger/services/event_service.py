# Overview: Domain event outbox plus post-commit fan-out to in-process subscribers.

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal

from blinker import Namespace
from flask import current_app
from sqlalchemy import event
from sqlalchemy.orm import Session

from ..extensions import db
from ..models import DomainEvent
from orderledger.time_utils import utcnow, to_utc_z
"""
Event Outbox Invariants

- Events are appended in the same DB transaction as the change they describe.
- The outbox is append-only; consumers poll by id.
- In-process subscribers are notified only after the transaction commits.
  Delivery is best-effort: a failing subscriber is logged and skipped, never
  retried, and never affects the engine operation that produced the event.
- Subscriptions are per app (blinker sender=app), not global.
"""

ORDER_STATUS_CHANGED = "order.status_changed"
STOCK_BELOW_THRESHOLD = "stock.below_threshold"
BOM_RECIPE_MISSING = "bom.recipe_missing"
CONFLICT_DETECTED = "conflict.detected"

EVENT_TYPES = {ORDER_STATUS_CHANGED, STOCK_BELOW_THRESHOLD, BOM_RECIPE_MISSING, CONFLICT_DETECTED}

_signals = Namespace()
SIGNALS = {name: _signals.signal(name) for name in EVENT_TYPES}

_PENDING_KEY = "orderledger.pending_events"


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return to_utc_z(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def append_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    payload: dict | None = None,
    occurred_at: datetime | None = None,
) -> DomainEvent:
    """
    Append an outbox row in the current transaction and queue it for fan-out.

    Does not commit. If the transaction rolls back, both the row and the
    queued notification disappear.
    """
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type {event_type!r}")

    ev = DomainEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=json.dumps(payload or {}, default=_json_default, sort_keys=True),
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(ev)
    db.session.flush()

    db.session.info.setdefault(_PENDING_KEY, []).append(ev.to_dict())
    return ev


@event.listens_for(Session, "after_soft_rollback")
def _drop_pending_on_rollback(session, previous_transaction):
    # Savepoint rollbacks leave the outer transaction (and its events) alive
    if previous_transaction.nested:
        return
    session.info.pop(_PENDING_KEY, None)


def publish_pending() -> int:
    """
    Deliver events queued by committed work to this app's subscribers.

    Call right after db.session.commit(). Returns the number of events sent.
    """
    pending = db.session.info.pop(_PENDING_KEY, [])
    if not pending:
        return 0

    app = current_app._get_current_object()
    for ev in pending:
        signal = SIGNALS[ev["event_type"]]
        for receiver in signal.receivers_for(app):
            try:
                receiver(app, event=ev)
            except Exception:
                current_app.logger.exception(
                    "Event subscriber failed for %s (event id %s)", ev["event_type"], ev["id"]
                )
    return len(pending)


def subscribe(app, event_type: str, handler) -> None:
    """
    Register handler(app, event=dict) for an event type on one app.

    Handlers run synchronously after commit inside the app context of the
    request or CLI command that produced the event.
    """
    if event_type not in SIGNALS:
        raise ValueError(f"Unknown event type {event_type!r}")
    SIGNALS[event_type].connect(handler, sender=app, weak=False)


def unsubscribe(app, event_type: str, handler) -> None:
    SIGNALS[event_type].disconnect(handler, sender=app)


def list_events(*, after_id: int | None = None, event_type: str | None = None, limit: int = 100) -> list[DomainEvent]:
    q = DomainEvent.query
    if after_id is not None:
        q = q.filter(DomainEvent.id > after_id)
    if event_type:
        q = q.filter(DomainEvent.event_type == event_type)
    return q.order_by(DomainEvent.id.asc()).limit(limit).all()
