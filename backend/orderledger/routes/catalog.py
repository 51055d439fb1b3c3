# Overview: Flask API routes for catalog master data (suppliers, materials, products, recipes).

# backend/orderledger/routes/catalog.py
from flask import Blueprint, current_app, jsonify, request

from ..errors import NotFoundError
from ..services import bom_service, catalog_service, stock_advisor_service
from ..services.conflict_service import ConflictDetectedError
from ..validation import DuplicateError, ValidationError, parse_int

catalog_bp = Blueprint("catalog", __name__, url_prefix="/api/catalog")


# =============================================================================
# Suppliers
# =============================================================================

@catalog_bp.get("/suppliers")
def list_suppliers_route():
    suppliers = catalog_service.list_suppliers()
    return jsonify({"items": [s.to_dict() for s in suppliers], "count": len(suppliers)})


@catalog_bp.post("/suppliers")
def create_supplier_route():
    payload = request.get_json(silent=True) or {}
    try:
        supplier = catalog_service.create_supplier(payload)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except DuplicateError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"supplier": supplier.to_dict()}), 201


@catalog_bp.patch("/suppliers/<int:supplier_id>")
def update_supplier_route(supplier_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        supplier = catalog_service.update_supplier(supplier_id, payload)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except DuplicateError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"supplier": supplier.to_dict()})


# =============================================================================
# Raw materials
# =============================================================================

@catalog_bp.get("/materials")
def list_materials_route():
    supplier_id = request.args.get("supplier_id", type=int)
    materials = catalog_service.list_materials(supplier_id=supplier_id)
    items = []
    for m in materials:
        data = m.to_dict()
        data["level"] = stock_advisor_service.classify(m)
        items.append(data)
    return jsonify({"items": items, "count": len(items)})


@catalog_bp.post("/materials")
def create_material_route():
    """Body: material fields plus optional "opening_stock" and "actor"."""
    payload = request.get_json(silent=True) or {}
    actor = payload.pop("actor", None)
    try:
        material = catalog_service.create_material(payload, actor=actor)
        return jsonify({"material": material.to_dict()}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except DuplicateError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create material")
        return jsonify({"error": "Internal server error"}), 500


@catalog_bp.get("/materials/<int:material_id>")
def get_material_route(material_id: int):
    try:
        material = catalog_service.get_material(material_id)
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    return jsonify({"material": material.to_dict(), "level": stock_advisor_service.material_level(material)})


@catalog_bp.patch("/materials/<int:material_id>")
def update_material_route(material_id: int):
    """
    Conflict-checked edit of material master data.

    Body: {"changes": {...}, "base_version": int?, "base_snapshot": {...}?, "actor": str?}
    stock_quantity is rejected; balances move only through the stock ledger.
    """
    data = request.get_json(silent=True) or {}
    try:
        base_version = data.get("base_version")
        if base_version is not None:
            base_version = parse_int(base_version, "base_version")
        material = catalog_service.update_material(
            material_id,
            data.get("changes") or {},
            base_version=base_version,
            base_snapshot=data.get("base_snapshot"),
            actor=data.get("actor"),
        )
        return jsonify({"material": material.to_dict()})
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except ConflictDetectedError as e:
        return jsonify(e.to_dict()), 409
    except DuplicateError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to update material %s", material_id)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# Products and recipes
# =============================================================================

@catalog_bp.get("/products")
def list_products_route():
    active_only = request.args.get("active_only", "false").lower() in ("1", "true", "yes")
    products = catalog_service.list_products(active_only=active_only)
    return jsonify({"items": [p.to_dict() for p in products], "count": len(products)})


@catalog_bp.post("/products")
def create_product_route():
    payload = request.get_json(silent=True) or {}
    try:
        product = catalog_service.create_product(payload)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except DuplicateError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"product": product.to_dict()}), 201


@catalog_bp.get("/products/<int:product_id>")
def get_product_route(product_id: int):
    try:
        product = catalog_service.get_product(product_id)
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    data = product.to_dict()
    data["cost"] = bom_service.recipe_cost(product.id)
    return jsonify({"product": data})


@catalog_bp.patch("/products/<int:product_id>")
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        product = catalog_service.update_product(product_id, payload)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    except DuplicateError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"product": product.to_dict()})


@catalog_bp.delete("/products/<int:product_id>")
def deactivate_product_route(product_id: int):
    try:
        product = catalog_service.deactivate_product(product_id)
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    return jsonify({"product": product.to_dict()})


@catalog_bp.get("/products/<int:product_id>/recipe")
def list_recipe_route(product_id: int):
    try:
        lines = catalog_service.list_recipe(product_id)
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    return jsonify({"items": [line.to_dict() for line in lines], "count": len(lines)})


@catalog_bp.post("/products/<int:product_id>/recipe")
def add_recipe_line_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        line = catalog_service.add_recipe_line(product_id, payload)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    return jsonify({"recipe": line.to_dict()}), 201


@catalog_bp.delete("/products/<int:product_id>/recipe/<int:recipe_id>")
def delete_recipe_line_route(product_id: int, recipe_id: int):
    try:
        catalog_service.delete_recipe_line(product_id, recipe_id)
    except NotFoundError as e:
        return jsonify(e.to_dict()), 404
    return jsonify({"ok": True})
