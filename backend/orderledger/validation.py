from __future__ import annotations
from datetime import datetime
from decimal import Decimal, InvalidOperation
from orderledger.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, Numeric, String, Text, DateTime, JSON
from sqlalchemy.orm import DeclarativeMeta


# 9,999,999.99 in cents; keeps money columns inside a sane range
MAX_PRICE_CENTS = 999_999_999

# Largest quantity a single movement or recipe line may carry
MAX_QUANTITY = Decimal("99999999999.999")
QUANTITY_QUANTUM = Decimal("0.001")


class ValidationError(ValueError):
    """400-level input problem."""


class DuplicateError(ValueError):
    """409-level uniqueness violation (e.g., material name already in use)."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def parse_decimal(value: Any, field: str) -> Decimal:
    """Coerce JSON input to Decimal; floats go through str() to avoid binary noise."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"{field} must be a number")
    else:
        raise ValidationError(f"{field} must be a number")

    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    if abs(result) > MAX_QUANTITY:
        raise ValidationError(f"{field} is out of range")
    # Quantity columns are Numeric(14, 3); finer values would be stored rounded
    if result != result.quantize(QUANTITY_QUANTUM):
        raise ValidationError(f"{field} allows at most 3 decimal places")
    return result


def parse_positive_decimal(value: Any, field: str) -> Decimal:
    result = parse_decimal(value, field)
    if result <= 0:
        raise ValidationError(f"{field} must be > 0")
    return result


def parse_int(value: Any, field: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
    raise ValidationError(f"{field} must be an integer")


def parse_choice(value: Any, field: str, choices) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field} is required")
    normalized = value.strip().upper()
    if normalized not in choices:
        raise ValidationError(f"{field} must be one of: {', '.join(sorted(choices))}")
    return normalized


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Numeric before Integer checks; quantities are fractional (grams, metres)
    if isinstance(coltype, Numeric):
        return parse_decimal(value, col.key)

    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            if "e" in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            if "." in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        return bool(value)

    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, JSON):
        if not isinstance(value, dict):
            raise ValidationError(f"{col.key} must be an object")
        return value

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_cents(patch: dict, field: str) -> None:
    if field in patch and patch[field] is not None:
        value = patch[field]
        if value < 0:
            raise ValidationError(f"{field} must be >= 0")
        if value > MAX_PRICE_CENTS:
            raise ValidationError(f"{field} cannot exceed {MAX_PRICE_CENTS}")


def enforce_rules_material(patch: dict) -> None:
    _check_cents(patch, "unit_price_cents")

    for field in ("min_stock_quantity", "max_stock_quantity"):
        if patch.get(field) is not None and patch[field] < 0:
            raise ValidationError(f"{field} must be >= 0")

    low = patch.get("min_stock_quantity")
    high = patch.get("max_stock_quantity")
    if low is not None and high is not None and high < low:
        raise ValidationError("max_stock_quantity must be >= min_stock_quantity")

    if patch.get("lead_time_days") is not None and patch["lead_time_days"] < 0:
        raise ValidationError("lead_time_days must be >= 0")


def enforce_rules_product(patch: dict) -> None:
    _check_cents(patch, "price_cents")


def enforce_rules_recipe(patch: dict) -> None:
    """MATERIAL lines move stock and need a material; LABOR lines never do."""
    item_type = patch.get("item_type", "MATERIAL")
    if item_type not in ("MATERIAL", "LABOR"):
        raise ValidationError("item_type must be MATERIAL or LABOR")

    if item_type == "MATERIAL" and patch.get("raw_material_id") is None:
        raise ValidationError("raw_material_id is required for MATERIAL recipe lines")
    if item_type == "LABOR" and patch.get("raw_material_id") is not None:
        raise ValidationError("raw_material_id must be omitted for LABOR recipe lines")

    if "quantity" in patch and (patch["quantity"] is None or patch["quantity"] <= 0):
        raise ValidationError("quantity must be > 0")

    _check_cents(patch, "unit_cost_cents")


def enforce_rules_order(patch: dict) -> None:
    for field in ("received_cents", "discount_cents", "labor_cost_cents"):
        _check_cents(patch, field)
