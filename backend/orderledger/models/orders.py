from __future__ import annotations

from ..extensions import db
from orderledger.time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order document.

    STATUS:
    status is written only by order_service.transition()/undo(); every other
    edit goes through the conflict-checked detail update. Orders are never
    deleted; cancellation is a status.

    stock_committed is True while the order holds a raw-material deduction
    (set on confirm, cleared on the restoring cancel/refund or confirm-undo),
    which keeps restores to at most one per commitment.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable number (e.g. "ORD-000042")
    order_number = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    stock_committed = db.Column(db.Boolean, nullable=False, default=False)

    # Money (all amounts in cents)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    received_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    labor_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    net_profit_cents = db.Column(db.Integer, nullable=False, default=0)

    # Customer / shipping
    customer_name = db.Column(db.String(255), nullable=False)
    customer_email = db.Column(db.String(254), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)
    shipping_address = db.Column(db.String(512), nullable=True)
    shipping_city = db.Column(db.String(128), nullable=True)
    shipping_method = db.Column(db.String(64), nullable=True)
    order_source = db.Column(db.String(64), nullable=True)
    deadline_date = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(128), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def remaining_cents(self) -> int:
        return (self.total_cents or 0) - (self.discount_cents or 0) - (self.received_cents or 0)

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "status": self.status,
            "stock_committed": self.stock_committed,
            "total_cents": self.total_cents,
            "received_cents": self.received_cents,
            "discount_cents": self.discount_cents,
            "labor_cost_cents": self.labor_cost_cents,
            "net_profit_cents": self.net_profit_cents,
            "remaining_cents": self.remaining_cents,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "shipping_address": self.shipping_address,
            "shipping_city": self.shipping_city,
            "shipping_method": self.shipping_method,
            "order_source": self.order_source,
            "deadline_date": to_utc_z(self.deadline_date) if self.deadline_date else None,
            "notes": self.notes,
            "created_by": self.created_by,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Line item on an order. Editable only while the order is PENDING."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    # Free-form variant selection, e.g. {"gold_leaf": true, "engraving": "A.K."}
    personalization = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "personalization": self.personalization,
            "created_at": to_utc_z(self.created_at),
        }


class OrderUndoEntry(db.Model):
    """
    Bounded per-order undo log.

    One row per applied transition; order_service keeps at most
    UNDO_STACK_CAPACITY rows per order and deletes the oldest beyond that.
    stock_effect records what the transition did to the ledger so undo can
    apply the mirror image (DEDUCTED -> restore, RESTORED -> deduct).
    """
    __tablename__ = "order_undo_entries"
    __table_args__ = (
        db.Index("ix_order_undo_entries_order_id_id", "order_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)

    previous_status = db.Column(db.String(16), nullable=False)
    new_status = db.Column(db.String(16), nullable=False)
    stock_effect = db.Column(db.String(16), nullable=False, default="NONE")

    actor = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "stock_effect": self.stock_effect,
            "actor": self.actor,
            "created_at": to_utc_z(self.created_at),
        }


class DocumentSequence(db.Model):
    """
    Atomic per-type document sequences.

    WHY: two clients recording sales at the same time must never receive the
    same order number.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_doc_sequences_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
