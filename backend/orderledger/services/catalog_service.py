# Overview: Catalog master data (suppliers, raw materials, products, recipes).

"""
Catalog Service

Master data the engine reads but does not own: suppliers, raw materials,
products and their recipe lines.

BALANCE RULE:
RawMaterial.stock_quantity is never written here. New materials start at 0;
an opening balance is booked as an IN movement in the same transaction, and
any later change goes through the stock ledger. Material edits are
conflict-checked like order edits.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError
from ..extensions import db
from ..models import Product, ProductRecipe, RawMaterial, Supplier
from ..validation import (
    DuplicateError,
    ModelValidationPolicy,
    ValidationError,
    enforce_rules_material,
    enforce_rules_product,
    enforce_rules_recipe,
    parse_positive_decimal,
    validate_payload,
)
from . import conflict_service
from .concurrency import begin_write, lock_for_update, run_with_retry
from .stock_ledger_service import _apply_movement

SUPPLIER_POLICY = ModelValidationPolicy(
    writable_fields={"name", "contact", "url", "notes"},
    required_on_create={"name"},
)

MATERIAL_POLICY = ModelValidationPolicy(
    writable_fields={
        "name",
        "stock_unit",
        "min_stock_quantity",
        "max_stock_quantity",
        "unit_price_cents",
        "lead_time_days",
        "notes",
        "supplier_id",
    },
    required_on_create={"name"},
)

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={"sku", "name", "description", "category", "price_cents", "stock_quantity", "is_active"},
    required_on_create={"name"},
)

RECIPE_POLICY = ModelValidationPolicy(
    writable_fields={"raw_material_id", "item_type", "quantity", "unit", "option_key", "unit_cost_cents", "notes"},
    required_on_create={"quantity"},
)


def _reject_balance_write(payload) -> None:
    if isinstance(payload, dict) and "stock_quantity" in payload:
        raise ValidationError(
            "stock_quantity is ledger-managed; use the receive, adjust or count stock operations"
        )


def _commit_unique(what: str, name) -> None:
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise DuplicateError(f"{what} {name!r} already exists") from exc


# =============================================================================
# Suppliers
# =============================================================================

def get_supplier(supplier_id: int) -> Supplier:
    supplier = db.session.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFoundError(f"Supplier {supplier_id} not found", details={"supplier_id": supplier_id})
    return supplier


def list_suppliers() -> list[Supplier]:
    return Supplier.query.order_by(Supplier.name.asc()).all()


def create_supplier(payload: dict) -> Supplier:
    patch = validate_payload(model=Supplier, payload=payload, policy=SUPPLIER_POLICY, partial=False)
    supplier = Supplier(**patch)
    db.session.add(supplier)
    _commit_unique("Supplier", patch.get("name"))
    return supplier


def update_supplier(supplier_id: int, payload: dict) -> Supplier:
    patch = validate_payload(model=Supplier, payload=payload, policy=SUPPLIER_POLICY, partial=True)
    supplier = get_supplier(supplier_id)
    for key, value in patch.items():
        setattr(supplier, key, value)
    _commit_unique("Supplier", supplier.name)
    return supplier


# =============================================================================
# Raw materials
# =============================================================================

def get_material(material_id: int) -> RawMaterial:
    material = db.session.get(RawMaterial, material_id)
    if material is None:
        raise NotFoundError(f"RawMaterial {material_id} not found", details={"material_id": material_id})
    return material


def list_materials(*, supplier_id: int | None = None) -> list[RawMaterial]:
    q = RawMaterial.query
    if supplier_id is not None:
        q = q.filter(RawMaterial.supplier_id == supplier_id)
    return q.order_by(RawMaterial.name.asc()).all()


def create_material(payload: dict, actor: str | None = None) -> RawMaterial:
    """
    Create a raw material at balance 0.

    An optional "opening_stock" in the payload is booked as an IN movement
    ("opening balance") in the same transaction.
    """
    _reject_balance_write(payload)
    payload = dict(payload or {})
    opening = payload.pop("opening_stock", None)
    opening_qty = None if opening is None else parse_positive_decimal(opening, "opening_stock")

    patch = validate_payload(model=RawMaterial, payload=payload, policy=MATERIAL_POLICY, partial=False)
    enforce_rules_material(patch)
    if patch.get("supplier_id") is not None:
        get_supplier(patch["supplier_id"])

    def _op():
        begin_write()
        if RawMaterial.query.filter_by(name=patch["name"]).first() is not None:
            raise DuplicateError(f"RawMaterial {patch['name']!r} already exists")
        material = RawMaterial(stock_quantity=0, **patch)
        db.session.add(material)
        db.session.flush()
        if opening_qty is not None:
            _apply_movement(
                material_id=material.id,
                movement_type="IN",
                delta=opening_qty,
                reason="opening balance",
                actor=actor,
            )
        db.session.commit()
        return material

    material = run_with_retry(_op)
    current_app.logger.info("RawMaterial %s created (%s)", material.id, material.name)
    return material


def update_material(
    material_id: int,
    changes: dict,
    *,
    base_version: int | None = None,
    base_snapshot: dict | None = None,
    actor: str | None = None,
) -> RawMaterial:
    """Conflict-checked edit of material master data. Never touches the balance."""
    _reject_balance_write(changes)
    patch = validate_payload(model=RawMaterial, payload=changes, policy=MATERIAL_POLICY, partial=True)
    if patch.get("supplier_id") is not None:
        get_supplier(patch["supplier_id"])

    def _op():
        begin_write()
        material = lock_for_update(RawMaterial.query.filter_by(id=material_id)).populate_existing().first()
        if material is None:
            raise NotFoundError(f"RawMaterial {material_id} not found", details={"material_id": material_id})

        conflict_service.check_write(
            material,
            base_version=base_version,
            base_snapshot=base_snapshot,
            changes=patch,
            source=actor,
        )

        merged = {
            "min_stock_quantity": material.min_stock_quantity,
            "max_stock_quantity": material.max_stock_quantity,
        }
        merged.update(patch)
        enforce_rules_material(merged)

        for key, value in patch.items():
            setattr(material, key, value)
        _commit_unique("RawMaterial", material.name)
        return material

    return run_with_retry(_op)


# =============================================================================
# Products and recipes
# =============================================================================

def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def list_products(*, active_only: bool = False) -> list[Product]:
    q = Product.query
    if active_only:
        q = q.filter(Product.is_active.is_(True))
    return q.order_by(Product.name.asc(), Product.id.asc()).all()


def create_product(payload: dict) -> Product:
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch)
    product = Product(**patch)
    db.session.add(product)
    _commit_unique("Product sku", patch.get("sku"))
    return product


def update_product(product_id: int, payload: dict) -> Product:
    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
    enforce_rules_product(patch)
    product = get_product(product_id)
    for key, value in patch.items():
        setattr(product, key, value)
    _commit_unique("Product sku", product.sku)
    return product


def deactivate_product(product_id: int) -> Product:
    """Soft delete: existing order items keep their product reference."""
    product = get_product(product_id)
    if product.is_active:
        product.is_active = False
        db.session.commit()
    return product


def list_recipe(product_id: int) -> list[ProductRecipe]:
    get_product(product_id)
    return (
        ProductRecipe.query
        .filter_by(product_id=product_id)
        .order_by(ProductRecipe.id.asc())
        .all()
    )


def add_recipe_line(product_id: int, payload: dict) -> ProductRecipe:
    patch = validate_payload(model=ProductRecipe, payload=payload, policy=RECIPE_POLICY, partial=False)
    patch.setdefault("item_type", "MATERIAL")
    patch["item_type"] = str(patch["item_type"]).upper()
    enforce_rules_recipe(patch)

    get_product(product_id)
    if patch.get("raw_material_id") is not None:
        get_material(patch["raw_material_id"])

    line = ProductRecipe(product_id=product_id, **patch)
    db.session.add(line)
    db.session.commit()
    return line


def delete_recipe_line(product_id: int, recipe_id: int) -> None:
    line = ProductRecipe.query.filter_by(id=recipe_id, product_id=product_id).first()
    if line is None:
        raise NotFoundError(
            f"Recipe line {recipe_id} not found on product {product_id}",
            details={"product_id": product_id, "recipe_id": recipe_id},
        )
    db.session.delete(line)
    db.session.commit()
