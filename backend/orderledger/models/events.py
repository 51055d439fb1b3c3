from __future__ import annotations

import json

from ..extensions import db
from orderledger.time_utils import to_utc_z


class DomainEvent(db.Model):
    """
    Append-only outbox of domain events for the notification/report layer.

    Written in the same DB transaction as the change it describes, so an
    event exists if and only if the change committed. Consumers poll by id
    (GET /api/events?after_id=N); rows are never updated or deleted.
    """
    __tablename__ = "domain_events"
    __table_args__ = (
        db.Index("ix_domain_events_type_id", "event_type", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    event_type = db.Column(db.String(64), nullable=False)  # e.g. order.status_changed
    entity_type = db.Column(db.String(64), nullable=False)  # order, raw_material, product, conflict
    entity_id = db.Column(db.Integer, nullable=False, index=True)

    payload = db.Column(db.Text, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    @property
    def data(self) -> dict:
        return json.loads(self.payload) if self.payload else {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.data,
            "occurred_at": to_utc_z(self.occurred_at),
        }
