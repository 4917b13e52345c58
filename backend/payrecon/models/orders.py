from __future__ import annotations

from ..extensions import db
from payrecon.time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order, the unit every payment and adjustment is reconciled against.

    WHY: total_amount_cents is the last *reconciled* total. When lines are
    edited upstream the Balance Engine derives a new total from the lines;
    the difference against this stored value is what the adjustment
    resolver settles.

    paid_amount_cents only moves through the capture and adjustment
    services, under a row lock plus the optimistic version check.

    PAYMENT STATUS:
    - unpaid / pending: nothing collected yet
    - partial_paid: 0 < paid < total
    - paid: nothing due (within tolerance), or marked paid manually
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_customer_created", "customer_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    # Charges (cents)
    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    # Purchase-order surcharges, only charged while po_accept is False
    po_accept = db.Column(db.Boolean, nullable=True)
    handling_charges_cents = db.Column(db.Integer, nullable=False, default=0)
    freight_charges_cents = db.Column(db.Integer, nullable=False, default=0)

    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_status = db.Column(db.String(16), nullable=False, default="unpaid", index=True)

    # First gateway capture; refunds are issued against it
    gateway_transaction_id = db.Column(db.String(64), nullable=True)

    is_void = db.Column(db.Boolean, nullable=False, default=False)
    void_reason = db.Column(db.String(255), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    estimated_delivery = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "shipping_cost_cents": self.shipping_cost_cents,
            "tax_amount_cents": self.tax_amount_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "po_accept": self.po_accept,
            "handling_charges_cents": self.handling_charges_cents,
            "freight_charges_cents": self.freight_charges_cents,
            "total_amount_cents": self.total_amount_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "payment_status": self.payment_status,
            "gateway_transaction_id": self.gateway_transaction_id,
            "is_void": self.is_void,
            "void_reason": self.void_reason,
            "voided_at": to_utc_z(self.voided_at),
            "estimated_delivery": to_utc_z(self.estimated_delivery),
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """Individual product on an order; quantities and prices live on its sizes."""
    __tablename__ = "order_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    description = db.Column(db.String(255), nullable=False)

    order = db.relationship(
        "Order",
        backref=db.backref("lines", lazy=True, order_by="OrderLine.id", cascade="all, delete-orphan"),
    )

    @property
    def line_total_cents(self) -> int:
        return sum(size.quantity * size.unit_price_cents for size in self.sizes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "description": self.description,
            "line_total_cents": self.line_total_cents,
            "sizes": [size.to_dict() for size in self.sizes],
        }


class OrderLineSize(db.Model):
    __tablename__ = "order_line_sizes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=False, index=True)
    product_size_id = db.Column(db.Integer, db.ForeignKey("product_sizes.id"), nullable=True, index=True)
    size_label = db.Column(db.String(64), nullable=False, default="default")
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)

    line = db.relationship(
        "OrderLine",
        backref=db.backref("sizes", lazy=True, order_by="OrderLineSize.id", cascade="all, delete-orphan"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_size_id": self.product_size_id,
            "size_label": self.size_label,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
        }


class OrderActivity(db.Model):
    """
    Append-only order timeline (payments received, invoices, adjustments).

    Written best-effort after the financial transaction commits.
    """
    __tablename__ = "order_activities"
    __table_args__ = (
        db.Index("ix_order_activities_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    activity_type = db.Column(db.String(32), nullable=False, index=True)
    description = db.Column(db.String(500), nullable=False)
    performed_by = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "activity_type": self.activity_type,
            "description": self.description,
            "performed_by": self.performed_by,
            "payload": self.payload,
            "created_at": to_utc_z(self.created_at),
        }
