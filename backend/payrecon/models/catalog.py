from __future__ import annotations

from ..extensions import db
from payrecon.time_utils import to_utc_z


class Product(db.Model):
    __tablename__ = "products"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "is_active": self.is_active,
            "sizes": [s.to_dict() for s in self.sizes],
        }


class ProductSize(db.Model):
    """
    Sellable size variant of a product with its own stock level.

    stock_quantity is only ever changed with a single atomic UPDATE
    (stock_quantity = stock_quantity - n); every change is mirrored by a
    StockMovement row.
    """
    __tablename__ = "product_sizes"
    __table_args__ = (
        db.UniqueConstraint("product_id", "size_label", name="uq_product_sizes_product_label"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    size_label = db.Column(db.String(64), nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship("Product", backref=db.backref("sizes", lazy=True, order_by="ProductSize.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "size_label": self.size_label,
            "unit_price_cents": self.unit_price_cents,
            "stock_quantity": self.stock_quantity,
        }


class StockMovement(db.Model):
    """Append-only audit of stock changes caused by paid orders."""
    __tablename__ = "stock_movements"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_size_id = db.Column(db.Integer, db.ForeignKey("product_sizes.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(64), nullable=False)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_size_id": self.product_size_id,
            "order_id": self.order_id,
            "quantity_delta": self.quantity_delta,
            "reason": self.reason,
            "occurred_at": to_utc_z(self.occurred_at),
        }
