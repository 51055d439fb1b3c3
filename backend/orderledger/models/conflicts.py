from __future__ import annotations

import json

from ..extensions import db
from orderledger.time_utils import to_utc_z


class ConflictRecord(db.Model):
    """
    A rejected write whose base snapshot disagreed with the server row.

    fields_json holds one entry per divergent field:
        [{"field": "status", "local": "CANCELLED", "remote": "PROCESSING"}, ...]
    "local" is what the writer based its edit on (or wanted to write),
    "remote" is the current server value.

    Records are resolved out-of-band and never deleted.
    """
    __tablename__ = "conflict_records"
    __table_args__ = (
        db.Index("ix_conflict_records_entity", "entity_table", "entity_id"),
        db.Index("ix_conflict_records_status_detected", "status", "detected_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_table = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    fields_json = db.Column(db.Text, nullable=False)
    priority = db.Column(db.String(16), nullable=False, default="NORMAL", index=True)
    status = db.Column(db.String(16), nullable=False, default="DETECTED")

    # Who attempted the rejected write and against which version
    source = db.Column(db.String(128), nullable=True)
    base_version = db.Column(db.Integer, nullable=True)
    server_version = db.Column(db.Integer, nullable=True)
    attempted_changes_json = db.Column(db.Text, nullable=True)

    resolution = db.Column(db.String(32), nullable=True)
    resolved_by = db.Column(db.String(128), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_note = db.Column(db.String(255), nullable=True)

    detected_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def fields(self) -> list[dict]:
        return json.loads(self.fields_json) if self.fields_json else []

    @property
    def attempted_changes(self) -> dict:
        return json.loads(self.attempted_changes_json) if self.attempted_changes_json else {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_table": self.entity_table,
            "entity_id": self.entity_id,
            "fields": self.fields,
            "priority": self.priority,
            "status": self.status,
            "source": self.source,
            "base_version": self.base_version,
            "server_version": self.server_version,
            "attempted_changes": self.attempted_changes,
            "resolution": self.resolution,
            "resolved_by": self.resolved_by,
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
            "resolution_note": self.resolution_note,
            "detected_at": to_utc_z(self.detected_at),
        }
