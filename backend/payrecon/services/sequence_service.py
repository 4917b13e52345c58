# Overview: Sequence allocator; hands out invoice/order/adjustment/memo numbers race-free.

from __future__ import annotations

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import SequenceCounter
from payrecon.time_utils import utcnow


class SequenceAllocationError(Exception):
    """Raised when a number could not be allocated."""
    pass


def format_document_number(prefix: str, number: int, year: int | None = None) -> str:
    """`INV`, 1, 2026 -> `INV-2026000001`."""
    year = year or utcnow().year
    return f"{prefix}-{year}{number:06d}"


def _read_next(prefix: str) -> int | None:
    return (
        db.session.query(SequenceCounter.next_number)
        .filter_by(prefix=prefix)
        .scalar()
    )


def _ensure_counter(prefix: str) -> None:
    """
    Create the counter row for a new prefix, tolerating a concurrent creator.

    INSERT ... ON CONFLICT DO NOTHING keeps the caller's transaction intact;
    other dialects fall back to a savepoint.
    """
    dialect = db.session.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        try:
            with db.session.begin_nested():
                db.session.add(SequenceCounter(prefix=prefix, next_number=1))
        except IntegrityError:
            pass
        return

    stmt = (
        insert(SequenceCounter)
        .values(prefix=prefix, next_number=1)
        .on_conflict_do_nothing(index_elements=["prefix"])
    )
    db.session.execute(stmt)


def allocate_number(prefix: str, *, max_attempts: int | None = None) -> int:
    """
    Atomically allocate the next raw number for a prefix.

    Compare-and-swap on the counter row:
        UPDATE sequence_counters SET next_number = n + 1
        WHERE prefix = :prefix AND next_number = n
    A zero rowcount means another caller won the race; the whole
    read-increment-write is repeated with a fresh read.

    Runs inside the caller's transaction (flush only). If the caller rolls
    back, the increment rolls back with it and the number is never handed
    out.
    """
    if not prefix:
        raise SequenceAllocationError("prefix is required")

    if max_attempts is None:
        max_attempts = current_app.config.get("SEQUENCE_MAX_ATTEMPTS", 5)

    for _ in range(max_attempts):
        current = _read_next(prefix)
        if current is None:
            _ensure_counter(prefix)
            current = _read_next(prefix)

        stmt = (
            update(SequenceCounter)
            .where(
                SequenceCounter.prefix == prefix,
                SequenceCounter.next_number == current,
            )
            .values(next_number=current + 1)
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        if result.rowcount == 1:
            return current

    raise SequenceAllocationError(
        f"Could not allocate a number for prefix {prefix} after {max_attempts} attempts"
    )


def allocate(prefix: str) -> str:
    """Allocate and format the next document number for `prefix`."""
    return format_document_number(prefix, allocate_number(prefix))


def peek_counters() -> list[SequenceCounter]:
    return db.session.query(SequenceCounter).order_by(SequenceCounter.prefix).all()


def seed_counter(prefix: str, next_number: int) -> SequenceCounter:
    """
    Move a counter forward (e.g. when importing legacy invoice numbers).

    Never moves a counter backwards; that would re-issue numbers.
    """
    if next_number < 1:
        raise SequenceAllocationError("next_number must be positive")

    counter = db.session.query(SequenceCounter).filter_by(prefix=prefix).first()
    if counter is None:
        counter = SequenceCounter(prefix=prefix, next_number=next_number)
        db.session.add(counter)
    elif next_number < counter.next_number:
        raise SequenceAllocationError(
            f"Counter {prefix} is already at {counter.next_number}; refusing to move it back"
        )
    else:
        counter.next_number = next_number
    db.session.commit()
    return counter
