from __future__ import annotations

from ..extensions import db
from payrecon.time_utils import to_utc_z


class Customer(db.Model):
    """
    Customer account as seen by billing.

    The credit line (credit_limit_cents / credit_used_cents) backs the
    "use credit" adjustment; store credit is not stored here, it is derived
    from AccountTransaction rows.
    """
    __tablename__ = "customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True, index=True)

    credit_limit_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_used_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def available_credit_cents(self) -> int:
        return max(0, (self.credit_limit_cents or 0) - (self.credit_used_cents or 0))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "credit_limit_cents": self.credit_limit_cents,
            "credit_used_cents": self.credit_used_cents,
            "available_credit_cents": self.available_credit_cents,
            "created_at": to_utc_z(self.created_at),
        }


class SavedPaymentMethod(db.Model):
    """Gateway customer/payment profile pair stored for off-session charges."""
    __tablename__ = "saved_payment_methods"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    customer_profile_id = db.Column(db.String(64), nullable=False)
    payment_profile_id = db.Column(db.String(64), nullable=False)

    # Masked only
    card_last_four = db.Column(db.String(4), nullable=True)
    card_brand = db.Column(db.String(32), nullable=True)

    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    customer = db.relationship("Customer", backref=db.backref("saved_payment_methods", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "card_last_four": self.card_last_four,
            "card_brand": self.card_brand,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
