import pytest

from payrecon.services.sequence_service import (
    SequenceAllocationError,
    allocate,
    allocate_number,
    format_document_number,
    peek_counters,
    seed_counter,
)
from payrecon.time_utils import utcnow


def test_format_document_number():
    assert format_document_number("INV", 1, 2026) == "INV-2026000001"
    assert format_document_number("CM", 123456, 2030) == "CM-2030123456"


def test_first_allocation_creates_counter(db_session):
    year = utcnow().year
    assert allocate("INV") == f"INV-{year}000001"
    assert allocate("INV") == f"INV-{year}000002"
    db_session.commit()

    counters = {c.prefix: c.next_number for c in peek_counters()}
    assert counters == {"INV": 3}


def test_prefixes_are_independent(db_session):
    assert allocate_number("INV") == 1
    assert allocate_number("ADJ") == 1
    assert allocate_number("INV") == 2


def test_rolled_back_allocation_is_not_reused_or_skipped(db_session):
    allocate_number("INV")
    db_session.commit()

    assert allocate_number("INV") == 2
    db_session.rollback()

    # The increment rolled back with the caller's transaction
    assert allocate_number("INV") == 2


def test_seed_moves_forward_only(db_session):
    seed_counter("INV", 500)
    assert allocate_number("INV") == 500
    db_session.commit()

    with pytest.raises(SequenceAllocationError):
        seed_counter("INV", 10)


def test_empty_prefix_rejected(db_session):
    with pytest.raises(SequenceAllocationError):
        allocate_number("")
