# Overview: Low-stock classification and reorder suggestions from current ledger balances.

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..errors import NotFoundError
from ..extensions import db
from ..models import RawMaterial

NORMAL = "NORMAL"
LOW = "LOW"
CRITICAL = "CRITICAL"

STOCK_LEVELS = (NORMAL, LOW, CRITICAL)
_SEVERITY = {NORMAL: 0, LOW: 1, CRITICAL: 2}


def _low_factor() -> Decimal:
    return Decimal(str(current_app.config.get("LOW_STOCK_FACTOR", "1.2")))


def _reorder_multiplier() -> Decimal:
    return Decimal(str(current_app.config.get("REORDER_MULTIPLIER", "2")))


def classify_level(stock, minimum) -> str:
    """
    CRITICAL: stock <= min
    LOW:      min < stock < min * factor
    NORMAL:   everything else, including materials with no minimum set
    """
    if minimum is None:
        return NORMAL
    stock = Decimal(stock)
    minimum = Decimal(minimum)

    if stock <= minimum:
        return CRITICAL
    if stock < minimum * _low_factor():
        return LOW
    return NORMAL


def reorder_qty_for(stock, minimum) -> Decimal:
    """max(0, min * multiplier - stock); zero when the level is NORMAL."""
    if classify_level(stock, minimum) == NORMAL:
        return Decimal("0")
    suggestion = Decimal(minimum) * _reorder_multiplier() - Decimal(stock)
    return max(Decimal("0"), suggestion)


def is_worse(before: str, after: str) -> bool:
    return _SEVERITY[after] > _SEVERITY[before]


def _resolve(material) -> RawMaterial:
    if isinstance(material, RawMaterial):
        return material
    found = db.session.get(RawMaterial, material)
    if found is None:
        raise NotFoundError(f"RawMaterial {material} not found", details={"material_id": material})
    return found


def classify(material) -> str:
    """Classify a material (instance or id) by its current balance."""
    m = _resolve(material)
    return classify_level(m.stock_quantity, m.min_stock_quantity)


def suggest_reorder_qty(material) -> Decimal:
    m = _resolve(material)
    return reorder_qty_for(m.stock_quantity, m.min_stock_quantity)


def material_level(material) -> dict:
    m = _resolve(material)
    level = classify_level(m.stock_quantity, m.min_stock_quantity)
    return {
        "material_id": m.id,
        "name": m.name,
        "level": level,
        "stock_quantity": str(m.stock_quantity),
        "min_stock_quantity": None if m.min_stock_quantity is None else str(m.min_stock_quantity),
        "max_stock_quantity": None if m.max_stock_quantity is None else str(m.max_stock_quantity),
        "stock_unit": m.stock_unit,
        "suggested_reorder_qty": str(reorder_qty_for(m.stock_quantity, m.min_stock_quantity)),
        "supplier_id": m.supplier_id,
        "lead_time_days": m.lead_time_days,
    }


def low_stock_report() -> list[dict]:
    """Every non-NORMAL material, CRITICAL first, then by name."""
    rows = []
    materials = (
        RawMaterial.query
        .filter(RawMaterial.min_stock_quantity.isnot(None))
        .order_by(RawMaterial.name.asc())
        .all()
    )
    for m in materials:
        info = material_level(m)
        if info["level"] != NORMAL:
            rows.append(info)
    rows.sort(key=lambda r: -_SEVERITY[r["level"]])
    return rows


def stock_summary() -> dict:
    counts = {level: 0 for level in STOCK_LEVELS}
    for m in RawMaterial.query.all():
        counts[classify_level(m.stock_quantity, m.min_stock_quantity)] += 1
    return {
        "total_materials": sum(counts.values()),
        "normal_count": counts[NORMAL],
        "low_count": counts[LOW],
        "critical_count": counts[CRITICAL],
    }
