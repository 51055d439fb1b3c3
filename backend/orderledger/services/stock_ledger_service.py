# Overview: Append-only raw-material ledger with atomic balance updates.

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.orm.util import identity_key

from ..errors import OrderLedgerError
from ..extensions import db
from ..models import RawMaterial, StockMovement
from ..validation import ValidationError, parse_decimal, parse_positive_decimal
from . import event_service
from .concurrency import begin_write, lock_for_update, run_with_retry
from .stock_advisor_service import classify_level, is_worse, reorder_qty_for
"""
Stock Ledger Invariants (authoritative)

Conservation law:
- RawMaterial.stock_quantity == SUM(StockMovement.quantity) for that material.
- This module is the ONLY writer of stock_quantity. Catalog code never sets it.

Atomicity:
- Every write appends exactly one StockMovement row and applies the same
  signed delta to stock_quantity as an in-database increment
  (UPDATE ... SET stock_quantity = stock_quantity + :delta) inside ONE
  transaction. There is no read-modify-write of the balance, so concurrent
  writers on the same material cannot lose updates.

Movement types and signs:
- IN         (+)  supplier receipts, opening balances
- OUT        (-)  order confirmation
- RETURN     (+)  order cancel/refund, confirm undo
- ADJUSTMENT (+/-) manual corrections and physical counts

Negative balances are allowed (backorders). Callers that must block on
insufficient stock check availability before calling deduct().

Inner functions (_apply_movement) never commit and are composed by the
order state machine so a whole transition is one transaction.
"""

QTY_QUANTUM = Decimal("0.001")


class LedgerWriteFailure(OrderLedgerError):
    """The atomic ledger write could not be applied (missing material or store failure)."""


def _q(value) -> Decimal:
    return Decimal(value).quantize(QTY_QUANTUM)


def _expire_cached_material(material_id: int) -> None:
    # The increment bypasses the identity map; drop any stale in-session copy
    obj = db.session.identity_map.get(identity_key(RawMaterial, material_id))
    if obj is not None:
        db.session.expire(obj)


def _apply_movement(
    *,
    material_id: int,
    movement_type: str,
    delta: Decimal,
    reason: str,
    order_id: int | None = None,
    actor: str | None = None,
) -> StockMovement:
    """
    Core ledger write without transaction start, retry, or commit.

    Must run inside a write transaction (begin_write()). Raises
    LedgerWriteFailure if the material does not exist or the store rejects
    the write; OperationalError/StaleDataError propagate for the caller's
    retry loop.
    """
    if delta == 0:
        raise ValidationError("movement quantity must be non-zero")

    stmt = (
        update(RawMaterial)
        .where(RawMaterial.id == material_id)
        .values(
            stock_quantity=RawMaterial.stock_quantity + delta,
            version_id=RawMaterial.version_id + 1,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )

    try:
        result = db.session.execute(stmt)
        if result.rowcount != 1:
            raise LedgerWriteFailure(
                f"RawMaterial {material_id} not found",
                details={"material_id": material_id, "delta": str(delta), "reason": reason},
            )
        _expire_cached_material(material_id)

        row = (
            db.session.query(RawMaterial.name, RawMaterial.stock_quantity, RawMaterial.min_stock_quantity)
            .filter(RawMaterial.id == material_id)
            .one()
        )

        mv = StockMovement(
            raw_material_id=material_id,
            movement_type=movement_type,
            quantity=delta,
            balance_after=row.stock_quantity,
            reason=reason,
            order_id=order_id,
            actor=actor,
        )
        db.session.add(mv)
        db.session.flush()
    except (OperationalError, StaleDataError, LedgerWriteFailure):
        raise
    except SQLAlchemyError as exc:
        raise LedgerWriteFailure(
            f"Ledger write failed for material {material_id}",
            details={
                "material_id": material_id,
                "delta": str(delta),
                "reason": reason,
                "cause": exc.__class__.__name__,
            },
        ) from exc

    after = Decimal(row.stock_quantity)
    level_after = classify_level(after, row.min_stock_quantity)
    level_before = classify_level(after - delta, row.min_stock_quantity)
    if is_worse(level_before, level_after):
        event_service.append_event(
            event_type=event_service.STOCK_BELOW_THRESHOLD,
            entity_type="raw_material",
            entity_id=material_id,
            payload={
                "material_id": material_id,
                "name": row.name,
                "level": level_after,
                "stock_quantity": _q(after),
                "min_stock_quantity": row.min_stock_quantity,
                "suggested_reorder_qty": reorder_qty_for(after, row.min_stock_quantity),
            },
        )

    return mv


def _run_ledger_write(op, *, material_id: int, delta, reason: str) -> StockMovement:
    """Run a committed single-movement unit of work and publish its events."""
    try:
        mv = run_with_retry(op)
    except (OperationalError, StaleDataError) as exc:
        raise LedgerWriteFailure(
            f"Ledger write for material {material_id} did not complete after retries",
            details={"material_id": material_id, "delta": str(delta), "reason": reason},
        ) from exc

    event_service.publish_pending()
    if mv is not None:
        current_app.logger.info(
            "Ledger %s %s on material %s (%s)", mv.movement_type, mv.quantity, material_id, reason
        )
    return mv


def _single_write(*, material_id, movement_type, delta, reason, order_id=None, actor=None) -> StockMovement:
    def _op():
        begin_write()
        mv = _apply_movement(
            material_id=material_id,
            movement_type=movement_type,
            delta=delta,
            reason=reason,
            order_id=order_id,
            actor=actor,
        )
        db.session.commit()
        return mv

    return _run_ledger_write(_op, material_id=material_id, delta=delta, reason=reason)


def _require_reason(reason: str | None) -> str:
    if reason is None or not str(reason).strip():
        raise ValidationError("reason is required")
    return str(reason).strip()[:255]


def deduct(material_id: int, qty, reason: str, order_ref: int | None = None, *, actor: str | None = None) -> StockMovement:
    """Record an OUT movement of -qty. Does not block on insufficient stock."""
    qty = parse_positive_decimal(qty, "qty")
    return _single_write(
        material_id=material_id,
        movement_type="OUT",
        delta=-qty,
        reason=_require_reason(reason),
        order_id=order_ref,
        actor=actor,
    )


def restore(material_id: int, qty, reason: str, order_ref: int | None = None, *, actor: str | None = None) -> StockMovement:
    """Record a RETURN movement of +qty."""
    qty = parse_positive_decimal(qty, "qty")
    return _single_write(
        material_id=material_id,
        movement_type="RETURN",
        delta=qty,
        reason=_require_reason(reason),
        order_id=order_ref,
        actor=actor,
    )


def adjust(material_id: int, delta_qty, reason: str, *, actor: str | None = None) -> StockMovement:
    """Record a manual ADJUSTMENT with an arbitrary non-zero signed delta."""
    delta = parse_decimal(delta_qty, "delta")
    if delta == 0:
        raise ValidationError("delta must be non-zero for ADJUSTMENT")
    return _single_write(
        material_id=material_id,
        movement_type="ADJUSTMENT",
        delta=delta,
        reason=_require_reason(reason),
        actor=actor,
    )


def receive(material_id: int, qty, reason: str, *, actor: str | None = None) -> StockMovement:
    """Record an IN movement (supplier delivery, opening balance)."""
    qty = parse_positive_decimal(qty, "qty")
    return _single_write(
        material_id=material_id,
        movement_type="IN",
        delta=qty,
        reason=_require_reason(reason),
        actor=actor,
    )


def count(material_id: int, counted_qty, reason: str, *, actor: str | None = None) -> StockMovement | None:
    """
    Reconcile a physical count: one ADJUSTMENT of (counted - current).

    The current balance is read under the write lock, so no movement can land
    between the read and the adjustment. Returns None when nothing differs.
    """
    counted = parse_decimal(counted_qty, "counted_qty")
    if counted < 0:
        raise ValidationError("counted_qty must be >= 0")
    reason = _require_reason(reason)

    def _op():
        begin_write()
        current = lock_for_update(
            db.session.query(RawMaterial.stock_quantity).filter(RawMaterial.id == material_id)
        ).scalar()
        if current is None:
            raise LedgerWriteFailure(
                f"RawMaterial {material_id} not found",
                details={"material_id": material_id, "reason": reason},
            )
        delta = counted - _q(current)
        if delta == 0:
            db.session.rollback()
            return None
        mv = _apply_movement(
            material_id=material_id,
            movement_type="ADJUSTMENT",
            delta=delta,
            reason=reason,
            actor=actor,
        )
        db.session.commit()
        return mv

    return _run_ledger_write(_op, material_id=material_id, delta=counted, reason=reason)


def list_movements(material_id: int, *, limit: int = 200, as_of: datetime | None = None) -> list[StockMovement]:
    """Newest first; as_of is inclusive."""
    q = StockMovement.query.filter_by(raw_material_id=material_id)
    if as_of is not None:
        q = q.filter(StockMovement.created_at <= as_of)
    return q.order_by(StockMovement.id.desc()).limit(limit).all()


def list_order_movements(order_id: int) -> list[StockMovement]:
    return StockMovement.query.filter_by(order_id=order_id).order_by(StockMovement.id.asc()).all()


def ledger_balance(material_id: int) -> Decimal:
    """Signed sum of every movement for a material."""
    total = (
        db.session.query(func.coalesce(func.sum(StockMovement.quantity), 0))
        .filter(StockMovement.raw_material_id == material_id)
        .scalar()
    )
    return _q(total or 0)


def verify_conservation(material_id: int | None = None) -> list[dict]:
    """
    Compare every material's balance with its ledger sum.

    Returns one entry per material that drifted; an empty list means the
    conservation law holds.
    """
    sums = dict(
        db.session.query(StockMovement.raw_material_id, func.sum(StockMovement.quantity))
        .group_by(StockMovement.raw_material_id)
        .all()
    )

    q = RawMaterial.query
    if material_id is not None:
        q = q.filter(RawMaterial.id == material_id)

    drifted = []
    for material in q.order_by(RawMaterial.id.asc()).all():
        balance = _q(material.stock_quantity or 0)
        ledger_sum = _q(sums.get(material.id) or 0)
        if balance != ledger_sum:
            drifted.append({
                "material_id": material.id,
                "name": material.name,
                "stock_quantity": str(balance),
                "ledger_sum": str(ledger_sum),
                "drift": str(balance - ledger_sum),
            })
    return drifted
