# Overview: Per-size stock decrement for paid orders, with a stock movement audit row per change.

"""
Inventory Invariants

- ProductSize.stock_quantity only changes through a single atomic
  UPDATE ... SET stock_quantity = stock_quantity - n; never read-modify-write.
- Every change is mirrored by a StockMovement row in the same transaction.
- Sizes are decremented one after another within an order; lines that
  reference no product size are skipped.
- Stock may go negative (oversold); that is reported, not prevented, since
  the customer has already paid.
"""

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..models import Order, ProductSize, StockMovement

REASON_ORDER_PAID = "order_paid"


def decrement_for_order(order: Order) -> list[StockMovement]:
    """
    Decrement stock for every sized line of a paid order.

    Flushes only; the caller commits (or rolls back) the whole batch.
    """
    movements = []
    for line in order.lines:
        for size in line.sizes:
            if size.product_size_id is None or size.quantity <= 0:
                continue

            stmt = (
                update(ProductSize)
                .where(ProductSize.id == size.product_size_id)
                .values(stock_quantity=ProductSize.stock_quantity - size.quantity)
                .execution_options(synchronize_session=False)
            )
            result = db.session.execute(stmt)
            if result.rowcount != 1:
                continue

            movement = StockMovement(
                product_size_id=size.product_size_id,
                order_id=order.id,
                quantity_delta=-size.quantity,
                reason=REASON_ORDER_PAID,
            )
            db.session.add(movement)
            movements.append(movement)

    db.session.flush()
    return movements


def oversold_sizes(order: Order) -> list[int]:
    """Product size ids on the order whose stock went below zero."""
    size_ids = [
        size.product_size_id
        for line in order.lines
        for size in line.sizes
        if size.product_size_id is not None
    ]
    if not size_ids:
        return []
    rows = (
        db.session.query(ProductSize.id)
        .filter(ProductSize.id.in_(size_ids), ProductSize.stock_quantity < 0)
        .all()
    )
    return [row[0] for row in rows]
