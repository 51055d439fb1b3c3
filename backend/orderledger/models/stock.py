from __future__ import annotations

from ..extensions import db
from orderledger.time_utils import to_utc_z
from .catalog import qty_str


# Sign convention of quantity per type
MOVEMENT_TYPES = {"IN", "OUT", "RETURN", "ADJUSTMENT"}


class StockMovement(db.Model):
    """
    Append-only raw-material ledger row.

    quantity is signed: IN/RETURN positive, OUT negative, ADJUSTMENT either.
    balance_after is the material's stock_quantity right after this row was
    applied (read inside the same transaction), kept for audit display.
    Rows are never updated or deleted; corrections are new ADJUSTMENT rows.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_material_created", "raw_material_id", "created_at"),
        db.CheckConstraint(
            "movement_type IN ('IN', 'OUT', 'RETURN', 'ADJUSTMENT')",
            name="ck_stock_movements_type",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    raw_material_id = db.Column(db.Integer, db.ForeignKey("raw_materials.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    balance_after = db.Column(db.Numeric(14, 3), nullable=True)

    reason = db.Column(db.String(255), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    actor = db.Column(db.String(128), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )

    raw_material = db.relationship("RawMaterial", backref=db.backref("stock_movements", lazy="dynamic"))

    def __repr__(self) -> str:
        return f"<StockMovement {self.id}: {self.movement_type} {self.quantity} on material {self.raw_material_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "raw_material_id": self.raw_material_id,
            "movement_type": self.movement_type,
            "quantity": qty_str(self.quantity),
            "balance_after": qty_str(self.balance_after),
            "reason": self.reason,
            "order_id": self.order_id,
            "actor": self.actor,
            "created_at": to_utc_z(self.created_at),
        }
