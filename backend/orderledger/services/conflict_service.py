# Overview: Optimistic-concurrency conflict detection, recording, and resolution.

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import DateTime, Numeric, func

from ..errors import NotFoundError, OrderLedgerError
from ..extensions import db
from ..models import ConflictRecord
from ..validation import ValidationError, parse_choice
from orderledger.time_utils import utcnow, start_of_day, to_utc_z
from . import event_service
from .concurrency import run_with_retry
"""
Conflict Rules

A writer sends the row version it read (base_version) and/or the field values
it based its edit on (base_snapshot).

- base_version == server version  -> no conflict (fast path)
- otherwise every snapshot field whose server value differs is divergent,
  whether or not the writer intends to change it
- version differs, nothing diverged -> merged, the write proceeds
- version differs, no snapshot      -> every field in the change set counts
  as divergent (the writer cannot prove it saw the current values)

A divergent write is rejected. Last-write-wins is never applied.
The ConflictRecord is committed in its own transaction after the rejected
write has been rolled back, so it survives the rejection.
"""

DETECTED = "DETECTED"
RESOLVED = "RESOLVED"

KEEP_REMOTE = "KEEP_REMOTE"
RETRY_LOCAL = "RETRY_LOCAL"
RESOLUTIONS = {KEEP_REMOTE, RETRY_LOCAL}

HIGH = "HIGH"
NORMAL = "NORMAL"

# Financial or status fields per table; a conflict touching one is HIGH
_HIGH_PRIORITY_FIELDS = {
    "raw_materials": {"stock_quantity", "unit_price_cents"},
}


class ConflictDetectedError(OrderLedgerError):
    """A write was rejected because its base snapshot is stale. Carries the record."""

    def __init__(self, message: str, record: ConflictRecord, details: dict | None = None):
        super().__init__(message, details)
        self.record = record

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["conflict"] = self.record.to_dict()
        return data


class ConflictResolutionError(OrderLedgerError):
    """Raised when a conflict cannot be resolved (unknown resolution, already resolved)."""


def is_high_priority(entity_table: str, field: str) -> bool:
    if entity_table == "orders":
        return field == "status" or field.endswith("_cents")
    return field in _HIGH_PRIORITY_FIELDS.get(entity_table, set())


def priority_for(entity_table: str, fields: list[dict]) -> str:
    if any(is_high_priority(entity_table, f["field"]) for f in fields):
        return HIGH
    return NORMAL


def _json_safe(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return to_utc_z(value)
    return value


def _comparable(col, value):
    """Normalize a server value or a JSON snapshot value for equality checks."""
    if value is None:
        return None
    if isinstance(col.type, Numeric):
        try:
            return Decimal(str(value))
        except ArithmeticError:
            raise ValidationError(f"base_snapshot.{col.key} must be a number")
    if isinstance(col.type, DateTime):
        return value if isinstance(value, str) else to_utc_z(value)
    return value


def detect(entity, *, base_version: int | None, base_snapshot: dict | None, changes: dict | None = None) -> list[dict]:
    """
    Return the divergent fields of a write against the current row.

    Pure check: does not write anything. An empty list means the write may
    proceed. Each entry is {"field", "local", "remote"} with JSON-safe values.
    """
    if base_version is None and not base_snapshot:
        return []
    if base_version is not None and base_version == entity.version_id:
        return []

    cols = {c.key: c for c in entity.__mapper__.columns}
    divergent = []

    if base_snapshot:
        if not isinstance(base_snapshot, dict):
            raise ValidationError("base_snapshot must be an object")
        for field in sorted(base_snapshot):
            if field not in cols:
                raise ValidationError(f"base_snapshot has unknown field: {field}")
            local = base_snapshot[field]
            remote = getattr(entity, field)
            if _comparable(cols[field], local) != _comparable(cols[field], remote):
                divergent.append({"field": field, "local": _json_safe(local), "remote": _json_safe(remote)})
        return divergent

    # Stale version and nothing to compare against
    for field in sorted(changes or {}):
        divergent.append({
            "field": field,
            "local": _json_safe(changes[field]),
            "remote": _json_safe(getattr(entity, field, None)),
        })
    if not divergent:
        divergent.append({"field": "version_id", "local": base_version, "remote": entity.version_id})
    return divergent


def record_conflict(
    *,
    entity_table: str,
    entity_id: int,
    fields: list[dict],
    source: str | None = None,
    base_version: int | None = None,
    server_version: int | None = None,
    attempted_changes: dict | None = None,
) -> ConflictRecord:
    """
    Persist a ConflictRecord in its own committed transaction.

    Rolls back whatever the session holds first: the rejected write must not
    ride along with the record.
    """
    db.session.rollback()

    record = ConflictRecord(
        entity_table=entity_table,
        entity_id=entity_id,
        fields_json=json.dumps(fields, sort_keys=True),
        priority=priority_for(entity_table, fields),
        status=DETECTED,
        source=source,
        base_version=base_version,
        server_version=server_version,
        attempted_changes_json=json.dumps(
            {k: _json_safe(v) for k, v in (attempted_changes or {}).items()}, sort_keys=True
        ),
    )
    db.session.add(record)
    db.session.flush()

    event_service.append_event(
        event_type=event_service.CONFLICT_DETECTED,
        entity_type="conflict",
        entity_id=record.id,
        payload={
            "conflict_id": record.id,
            "entity_table": entity_table,
            "entity_id": entity_id,
            "priority": record.priority,
            "fields": [f["field"] for f in fields],
        },
    )
    db.session.commit()
    event_service.publish_pending()

    current_app.logger.warning(
        "Rejected conflicting write on %s %s (%s priority, fields: %s)",
        entity_table,
        entity_id,
        record.priority,
        ", ".join(f["field"] for f in fields),
    )
    return record


def check_write(
    entity,
    *,
    base_version: int | None,
    base_snapshot: dict | None,
    changes: dict | None = None,
    source: str | None = None,
) -> None:
    """
    Guard a write on a locked row inside the caller's transaction.

    No divergence: returns and the caller goes on writing. Divergence: the
    caller's transaction is rolled back, a ConflictRecord is committed and
    ConflictDetectedError is raised.
    """
    fields = detect(entity, base_version=base_version, base_snapshot=base_snapshot, changes=changes)
    if not fields:
        return

    entity_table = entity.__tablename__
    entity_id = entity.id
    server_version = entity.version_id

    record = record_conflict(
        entity_table=entity_table,
        entity_id=entity_id,
        fields=fields,
        source=source,
        base_version=base_version,
        server_version=server_version,
        attempted_changes=changes,
    )
    raise ConflictDetectedError(
        f"Write on {entity_table} {entity_id} conflicts with a newer change",
        record,
        details={
            "entity_table": entity_table,
            "entity_id": entity_id,
            "conflict_id": record.id,
            "priority": record.priority,
            "server_version": server_version,
        },
    )


def get_conflict(conflict_id: int) -> ConflictRecord:
    record = db.session.get(ConflictRecord, conflict_id)
    if record is None:
        raise NotFoundError(f"Conflict {conflict_id} not found", details={"conflict_id": conflict_id})
    return record


def resolve_conflict(conflict_id: int, resolution: str, actor: str | None = None, note: str | None = None) -> ConflictRecord:
    """
    Mark a conflict RESOLVED.

    KEEP_REMOTE: the server value stands, nothing else happens.
    RETRY_LOCAL: the caller re-reads the row and resubmits its edit with the
    new version; this call only closes the record.
    """
    resolution = parse_choice(resolution, "resolution", RESOLUTIONS)

    def _op():
        record = get_conflict(conflict_id)
        if record.status != DETECTED:
            raise ConflictResolutionError(
                f"Conflict {conflict_id} is already resolved",
                details={"conflict_id": conflict_id, "resolution": record.resolution},
            )
        record.status = RESOLVED
        record.resolution = resolution
        record.resolved_by = actor
        record.resolved_at = utcnow()
        record.resolution_note = (note or None) and str(note)[:255]
        db.session.commit()
        return record

    record = run_with_retry(_op)
    current_app.logger.info("Conflict %s resolved as %s by %s", conflict_id, resolution, actor)
    return record


def list_conflicts(*, status: str | None = None, entity_table: str | None = None, limit: int = 200) -> list[ConflictRecord]:
    q = ConflictRecord.query
    if status:
        q = q.filter(ConflictRecord.status == status.upper())
    if entity_table:
        q = q.filter(ConflictRecord.entity_table == entity_table)
    return q.order_by(ConflictRecord.id.desc()).limit(limit).all()


def conflict_stats() -> dict:
    """Counts for the conflict dashboard. by_priority/by_table cover unresolved conflicts."""
    total = db.session.query(func.count(ConflictRecord.id)).scalar() or 0
    pending = (
        db.session.query(func.count(ConflictRecord.id))
        .filter(ConflictRecord.status == DETECTED)
        .scalar()
        or 0
    )
    by_priority = dict(
        db.session.query(ConflictRecord.priority, func.count(ConflictRecord.id))
        .filter(ConflictRecord.status == DETECTED)
        .group_by(ConflictRecord.priority)
        .all()
    )
    by_table = dict(
        db.session.query(ConflictRecord.entity_table, func.count(ConflictRecord.id))
        .filter(ConflictRecord.status == DETECTED)
        .group_by(ConflictRecord.entity_table)
        .all()
    )
    resolved_today = (
        db.session.query(func.count(ConflictRecord.id))
        .filter(ConflictRecord.status == RESOLVED)
        .filter(ConflictRecord.resolved_at >= start_of_day(utcnow()))
        .scalar()
        or 0
    )
    return {
        "total": total,
        "pending": pending,
        "by_priority": {HIGH: by_priority.get(HIGH, 0), NORMAL: by_priority.get(NORMAL, 0)},
        "by_table": by_table,
        "resolved_today": resolved_today,
    }
