# Overview: Bill-of-materials resolution; turns ordered products into raw-material quantities.

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from ..errors import OrderLedgerError
from ..models import ProductRecipe, RawMaterial, Order
"""
BOM Resolution Rules

- Only MATERIAL lines move stock. LABOR lines are cost-only.
- A MATERIAL line with no option_key applies to every unit ordered.
- A line with an option_key applies only when the item's personalization
  selects that key (key present with a truthy value).
- required_qty = quantity_per_unit * ordered quantity; lines on the same
  material are summed.
- Results are sorted by material id. The ledger writes in that order, which
  keeps lock acquisition consistent across concurrent confirmations.
"""


class InsufficientDataError(OrderLedgerError):
    """
    The product has no recipe at all, so nothing can be deducted for it.

    Not a hard failure: the order state machine skips the item and emits a
    warning-level event. A product with only LABOR lines is NOT this case;
    it simply resolves to no materials.
    """


@dataclass
class OrderExplosion:
    materials: list[tuple[int, Decimal]] = field(default_factory=list)
    skipped_product_ids: list[int] = field(default_factory=list)


def selected_options(personalization) -> set[str]:
    """Option keys a personalization payload switches on."""
    if not personalization:
        return set()
    if isinstance(personalization, dict):
        return {
            str(key)
            for key, value in personalization.items()
            if value not in (None, False, "", 0)
        }
    if isinstance(personalization, (list, tuple, set)):
        return {str(key) for key in personalization}
    return set()


def explode(product_id: int, quantity: int, personalization=None) -> list[tuple[int, Decimal]]:
    """
    Resolve one ordered product into (material_id, required_qty) pairs.

    Raises InsufficientDataError when the product has no recipe lines.
    """
    recipes = (
        ProductRecipe.query
        .filter_by(product_id=product_id)
        .order_by(ProductRecipe.id.asc())
        .all()
    )
    if not recipes:
        raise InsufficientDataError(
            f"Product {product_id} has no recipe; no stock can be moved for it",
            details={"product_id": product_id},
        )

    options = selected_options(personalization)
    totals: dict[int, Decimal] = {}

    for recipe in recipes:
        if recipe.item_type != "MATERIAL" or recipe.raw_material_id is None:
            continue
        if recipe.option_key is not None and recipe.option_key not in options:
            continue
        required = Decimal(recipe.quantity) * quantity
        totals[recipe.raw_material_id] = totals.get(recipe.raw_material_id, Decimal("0")) + required

    return sorted(totals.items())


def explode_order(order: Order) -> OrderExplosion:
    """
    Aggregate the explosion of every item on an order.

    Items whose product has no recipe are collected in skipped_product_ids
    instead of raising.
    """
    result = OrderExplosion()
    totals: dict[int, Decimal] = {}

    for item in order.items:
        try:
            pairs = explode(item.product_id, item.quantity, item.personalization)
        except InsufficientDataError:
            if item.product_id not in result.skipped_product_ids:
                result.skipped_product_ids.append(item.product_id)
            continue
        for material_id, qty in pairs:
            totals[material_id] = totals.get(material_id, Decimal("0")) + qty

    result.materials = sorted(totals.items())
    return result


def _to_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def material_cost_cents(materials: list[tuple[int, Decimal]]) -> int:
    """Cost of an explosion at current material prices (unpriced materials count as 0)."""
    if not materials:
        return 0
    prices = {
        m.id: m.unit_price_cents
        for m in RawMaterial.query.filter(RawMaterial.id.in_([mid for mid, _ in materials])).all()
    }
    total = Decimal("0")
    for material_id, qty in materials:
        price = prices.get(material_id)
        if price is not None:
            total += qty * price
    return _to_cents(total)


def recipe_cost(product_id: int) -> dict:
    """
    Per-unit cost of the base variant of a product (option lines excluded).

    Used by pricing screens; does not raise for recipe-less products.
    """
    recipes = ProductRecipe.query.filter_by(product_id=product_id).all()

    material_pairs = [
        (r.raw_material_id, Decimal(r.quantity))
        for r in recipes
        if r.item_type == "MATERIAL" and r.raw_material_id is not None and r.option_key is None
    ]
    labor = sum(
        (Decimal(r.quantity) * (r.unit_cost_cents or 0) for r in recipes if r.item_type == "LABOR"),
        Decimal("0"),
    )

    material_cents = material_cost_cents(material_pairs)
    labor_cents = _to_cents(labor)
    return {
        "product_id": product_id,
        "has_recipe": bool(recipes),
        "material_cost_cents": material_cents,
        "labor_cost_cents": labor_cents,
        "unit_cost_cents": material_cents + labor_cents,
    }
