# Overview: Service-layer operations for orders; creation, upstream line edits, voids and balance lookups.

"""
Order Service

WHY: Orders are the unit everything else reconciles against. This service
creates them (allocating an order number), applies upstream edits to their
lines, and answers "what is the balance" through the Balance Engine.

DESIGN:
- total_amount_cents is only set here while nothing has been paid. Once
  money was captured, a line edit leaves the stored total alone and reports
  the difference; the adjustment resolver settles it and stores the new
  total.
- Voiding is only allowed on orders with nothing paid; refunds go through
  the adjustment resolver first.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import NotFoundError, ValidationError
from ..models import Customer, Order, OrderLine, OrderLineSize, ProductSize
from payrecon.time_utils import parse_iso_datetime, utcnow
from .activity_service import (
    ORDER_CREATED,
    ORDER_UPDATED,
    ORDER_VOIDED,
    append_activity,
    dollars,
)
from .balance_service import BalanceSummary, compute_total, get_balance, snapshot_order
from .concurrency import run_with_retry
from .ledger_store import current_tolerance, get_order
from .sequence_service import allocate


CHARGE_FIELDS = (
    "shipping_cost_cents",
    "tax_amount_cents",
    "discount_amount_cents",
    "handling_charges_cents",
    "freight_charges_cents",
)


# =============================================================================
# INPUT PARSING
# =============================================================================

def _require_int(value, field: str, *, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    return value


def _build_lines(lines_data) -> list[OrderLine]:
    """
    Build OrderLine/OrderLineSize rows from request data.

    [{"description": "Tee", "product_id": 1,
      "sizes": [{"product_size_id": 4, "size_label": "M", "quantity": 2, "unit_price_cents": 1500}]}]

    A size that names a product_size_id may omit unit_price_cents; the
    catalog price is used.
    """
    if not isinstance(lines_data, list) or not lines_data:
        raise ValidationError("lines must be a non-empty list")

    lines = []
    for index, line_data in enumerate(lines_data):
        if not isinstance(line_data, dict):
            raise ValidationError(f"lines[{index}] must be an object")
        description = str(line_data.get("description") or "").strip()
        if not description:
            raise ValidationError(f"lines[{index}].description is required")

        sizes_data = line_data.get("sizes")
        if not isinstance(sizes_data, list) or not sizes_data:
            raise ValidationError(f"lines[{index}].sizes must be a non-empty list")

        line = OrderLine(product_id=line_data.get("product_id"), description=description[:255])
        for size_index, size_data in enumerate(sizes_data):
            where = f"lines[{index}].sizes[{size_index}]"
            if not isinstance(size_data, dict):
                raise ValidationError(f"{where} must be an object")

            quantity = _require_int(size_data.get("quantity"), f"{where}.quantity", minimum=1)
            product_size_id = size_data.get("product_size_id")
            unit_price = size_data.get("unit_price_cents")
            size_label = str(size_data.get("size_label") or "").strip()

            if product_size_id is not None:
                product_size = db.session.query(ProductSize).filter_by(id=product_size_id).first()
                if product_size is None:
                    raise ValidationError(f"{where}: product size {product_size_id} not found")
                if unit_price is None:
                    unit_price = product_size.unit_price_cents
                size_label = size_label or product_size.size_label
                if line.product_id is None:
                    line.product_id = product_size.product_id

            unit_price = _require_int(unit_price, f"{where}.unit_price_cents")
            line.sizes.append(
                OrderLineSize(
                    product_size_id=product_size_id,
                    size_label=size_label or "default",
                    quantity=quantity,
                    unit_price_cents=unit_price,
                )
            )
        lines.append(line)
    return lines


def _apply_charges(order: Order, charges: dict) -> None:
    for field in CHARGE_FIELDS:
        if field in charges and charges[field] is not None:
            setattr(order, field, _require_int(charges[field], field))
    if "po_accept" in charges:
        po_accept = charges["po_accept"]
        if po_accept is not None and not isinstance(po_accept, bool):
            raise ValidationError("po_accept must be true, false or null")
        order.po_accept = po_accept


# =============================================================================
# OPERATIONS
# =============================================================================

def create_order(
    customer_id: int,
    lines_data,
    *,
    charges: dict | None = None,
    estimated_delivery: str | None = None,
    notes: str | None = None,
    performed_by: str | None = None,
) -> Order:
    """
    Create an unpaid order with a freshly allocated order number.

    The stored total is derived from the lines by the Balance Engine.
    """
    def _op():
        customer = db.session.query(Customer).filter_by(id=customer_id).first()
        if customer is None:
            raise NotFoundError(f"Customer {customer_id} not found")

        order = Order(
            customer_id=customer.id,
            payment_status="unpaid",
            paid_amount_cents=0,
            notes=notes,
        )
        try:
            order.estimated_delivery = parse_iso_datetime(estimated_delivery) if estimated_delivery else None
        except ValueError:
            raise ValidationError("estimated_delivery must be an ISO-8601 datetime")

        for line in _build_lines(lines_data):
            order.lines.append(line)
        _apply_charges(order, charges or {})

        total = compute_total(snapshot_order(order))
        if total < 0:
            raise ValidationError("Order total cannot be negative", details={"total_cents": total})
        order.total_amount_cents = total

        order.order_number = allocate(current_app.config["ORDER_PREFIX"])
        db.session.add(order)
        db.session.flush()

        append_activity(
            order_id=order.id,
            activity_type=ORDER_CREATED,
            description=f"Order {order.order_number} created for {dollars(total)}",
            performed_by=performed_by,
        )
        db.session.commit()
        return order

    return run_with_retry(_op)


def replace_order_lines(
    order_id: int,
    lines_data,
    *,
    charges: dict | None = None,
    performed_by: str | None = None,
) -> dict:
    """
    Upstream edit: replace an order's lines (and optionally its charges).

    Unpaid orders simply take the new total. Orders with money captured keep
    their last reconciled total; the response says whether an adjustment is
    required and for how much.
    """
    def _op():
        order = get_order(order_id, lock=True)
        if order.is_void:
            raise ValidationError("Cannot edit a void order")

        original_total = order.total_amount_cents
        order.lines.clear()
        db.session.flush()
        for line in _build_lines(lines_data):
            order.lines.append(line)
        _apply_charges(order, charges or {})

        new_total = compute_total(snapshot_order(order))
        if new_total < 0:
            raise ValidationError("Order total cannot be negative", details={"total_cents": new_total})

        if (order.paid_amount_cents or 0) == 0:
            order.total_amount_cents = new_total

        difference = new_total - original_total
        append_activity(
            order_id=order.id,
            activity_type=ORDER_UPDATED,
            description=f"Order lines updated; total {dollars(original_total)} -> {dollars(new_total)}",
            performed_by=performed_by,
            payload={"original_total_cents": original_total, "new_total_cents": new_total},
        )
        db.session.commit()

        return {
            "order": order.to_dict(),
            "original_total_cents": original_total,
            "new_total_cents": new_total,
            "difference_cents": difference,
            "adjustment_required": (order.paid_amount_cents or 0) > 0 and difference != 0,
        }

    return run_with_retry(_op)


def void_order(order_id: int, *, reason: str, performed_by: str | None = None) -> Order:
    if not (reason or "").strip():
        raise ValidationError("A void reason is required")

    def _op():
        order = get_order(order_id, lock=True)
        if order.is_void:
            raise ValidationError("Order is already void")
        if (order.paid_amount_cents or 0) > 0:
            raise ValidationError(
                "Cannot void an order with captured payments; refund it first",
                details={"paid_amount_cents": order.paid_amount_cents},
            )

        order.is_void = True
        order.void_reason = reason.strip()[:255]
        order.voided_at = utcnow()
        append_activity(
            order_id=order.id,
            activity_type=ORDER_VOIDED,
            description=f"Order voided: {order.void_reason}",
            performed_by=performed_by,
        )
        db.session.commit()
        return order

    return run_with_retry(_op)


def get_order_balance(order_id: int) -> BalanceSummary:
    order = get_order(order_id)
    return get_balance(snapshot_order(order), current_tolerance())
