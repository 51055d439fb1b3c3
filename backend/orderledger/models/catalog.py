from __future__ import annotations

from ..extensions import db
from orderledger.time_utils import to_utc_z


def qty_str(value) -> str | None:
    """Quantities leave the API as strings so no float rounding sneaks in."""
    return None if value is None else str(value)


class Supplier(db.Model):
    """Supplier master data. Referenced by raw materials; never touched by the engine."""
    __tablename__ = "suppliers"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_suppliers_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    contact = db.Column(db.String(255), nullable=True)
    url = db.Column(db.String(512), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "contact": self.contact,
            "url": self.url,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class RawMaterial(db.Model):
    """
    Raw material with a denormalized running balance.

    LEDGER CONSERVATION:
    stock_quantity == SUM(stock_movements.quantity) for this material, always.
    The only writer of stock_quantity is stock_ledger_service, which applies
    each delta as an in-database increment in the same transaction that
    appends the movement row. Catalog updates must never set it.

    version_id is the optimistic-locking token handed to clients; the ledger
    bumps it too, so any change to the row is visible to the conflict check.
    """
    __tablename__ = "raw_materials"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_raw_materials_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    stock_quantity = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    stock_unit = db.Column(db.String(32), nullable=True)
    min_stock_quantity = db.Column(db.Numeric(14, 3), nullable=True)
    max_stock_quantity = db.Column(db.Numeric(14, 3), nullable=True)

    unit_price_cents = db.Column(db.Integer, nullable=True)
    lead_time_days = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    supplier = db.relationship("Supplier", backref=db.backref("raw_materials", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<RawMaterial id={self.id} name={self.name!r} stock={self.stock_quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "stock_quantity": qty_str(self.stock_quantity),
            "stock_unit": self.stock_unit,
            "min_stock_quantity": qty_str(self.min_stock_quantity),
            "max_stock_quantity": qty_str(self.max_stock_quantity),
            "unit_price_cents": self.unit_price_cents,
            "lead_time_days": self.lead_time_days,
            "notes": self.notes,
            "supplier_id": self.supplier_id,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Product(db.Model):
    """
    Sellable product.

    Products with a recipe move raw-material stock when an order is confirmed.
    stock_quantity is a plain counter for simple recipe-less goods; the order
    engine does not move it.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(64), nullable=True)

    price_cents = db.Column(db.Integer, nullable=False, default=0)
    stock_quantity = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "price_cents": self.price_cents,
            "stock_quantity": self.stock_quantity,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductRecipe(db.Model):
    """
    One bill-of-materials line: what a single unit of a product consumes.

    item_type:
    - MATERIAL: references a raw material; moves stock on confirm/cancel
    - LABOR: cost-only line (quantity x unit_cost_cents), no material, no stock effect

    option_key: NULL applies to every unit; otherwise the line applies only
    when the order item's personalization selects that key.
    """
    __tablename__ = "product_recipes"
    __table_args__ = (
        db.Index("ix_product_recipes_product_type", "product_id", "item_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    raw_material_id = db.Column(db.Integer, db.ForeignKey("raw_materials.id"), nullable=True, index=True)

    item_type = db.Column(db.String(16), nullable=False, default="MATERIAL")
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    unit = db.Column(db.String(32), nullable=True)
    option_key = db.Column(db.String(64), nullable=True)

    # LABOR lines only: cost per unit of quantity (e.g. per hour)
    unit_cost_cents = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("recipes", lazy=True))
    raw_material = db.relationship("RawMaterial")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "raw_material_id": self.raw_material_id,
            "item_type": self.item_type,
            "quantity": qty_str(self.quantity),
            "unit": self.unit,
            "option_key": self.option_key,
            "unit_cost_cents": self.unit_cost_cents,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
