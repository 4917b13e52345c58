import pytest

from payrecon.errors import ValidationError
from payrecon.services.payment_methods import (
    BankAccountPayment,
    BillingAddress,
    CardPayment,
    ManualPayment,
    SavedCardPayment,
    detect_card_brand,
    gateway_expiration,
    luhn_valid,
    parse_expiration,
    parse_payment_method,
    validate_payment_method,
)

from conftest import BILLING, VALID_CARD


def _billing():
    return BillingAddress.from_dict(BILLING)


def test_parse_card_strips_formatting():
    method = parse_payment_method(VALID_CARD)
    assert isinstance(method, CardPayment)
    assert method.card_number == "4111111111111111"
    assert method.last_four == "1111"
    assert method.brand == "visa"
    assert "4111111111111111" not in repr(method)


@pytest.mark.parametrize("type_name, cls", [
    ("credit_card", CardPayment),
    ("echeck", BankAccountPayment),
    ("ach", BankAccountPayment),
    ("manual", ManualPayment),
])
def test_parse_type_aliases(type_name, cls):
    assert isinstance(parse_payment_method({"type": type_name, "saved_method_id": 1}), cls)


def test_parse_saved_card_requires_integer_id():
    assert parse_payment_method({"type": "saved_card", "saved_method_id": 7}) == SavedCardPayment(saved_method_id=7)
    with pytest.raises(ValidationError):
        parse_payment_method({"type": "saved_card", "saved_method_id": "7"})


def test_parse_rejects_unknown_type():
    with pytest.raises(ValidationError) as exc:
        parse_payment_method({"type": "bitcoin"})
    assert "allowed" in exc.value.details


def test_brand_detection_and_luhn():
    assert detect_card_brand("378282246310005") == "amex"
    assert detect_card_brand("5555555555554444") == "mastercard"
    assert detect_card_brand("6011111111111117") == "discover"
    assert luhn_valid("4111111111111111")
    assert not luhn_valid("4111111111111112")


@pytest.mark.parametrize("raw, expected", [
    ("12/30", (2030, 12)),
    ("1230", (2030, 12)),
    ("12/2030", (2030, 12)),
    ("2030-12", (2030, 12)),
    ("13/30", None),
    ("garbage", None),
])
def test_parse_expiration_formats(raw, expected):
    assert parse_expiration(raw) == expected


def test_gateway_expiration_is_year_month():
    assert gateway_expiration("03/29") == "2029-03"


def test_valid_card_passes():
    validate_payment_method(parse_payment_method(VALID_CARD), _billing())


def test_card_errors_are_reported_per_field():
    method = parse_payment_method({
        "type": "card",
        "card_number": "4111111111111112",
        "expiration_date": "01/20",
        "cvv": "12",
        "cardholder_name": "",
    })
    with pytest.raises(ValidationError) as exc:
        validate_payment_method(method, _billing())
    details = exc.value.details
    assert set(details) == {"card_number", "cvv", "expiration_date", "cardholder_name"}
    assert details["expiration_date"] == "Card expired"


def test_amex_needs_four_digit_cvv():
    method = parse_payment_method({**VALID_CARD, "card_number": "378282246310005", "cvv": "123"})
    with pytest.raises(ValidationError) as exc:
        validate_payment_method(method, _billing())
    assert exc.value.details == {"cvv": "CVV must be 4 digits"}


def test_card_requires_billing_address():
    with pytest.raises(ValidationError) as exc:
        validate_payment_method(parse_payment_method(VALID_CARD), BillingAddress.from_dict({"first_name": "Jane"}))
    assert "billing.city" in exc.value.details
    assert "billing.first_name" not in exc.value.details


def test_ach_validation():
    good = parse_payment_method({
        "type": "ach",
        "routing_number": "021000021",
        "account_number": "123456789",
        "name_on_account": "Jane Buyer",
    })
    validate_payment_method(good, _billing())

    bad = parse_payment_method({"type": "ach", "routing_number": "123", "account_number": "12", "name_on_account": "x"})
    with pytest.raises(ValidationError) as exc:
        validate_payment_method(bad, _billing())
    assert {"routing_number", "account_number"} <= set(exc.value.details)


def test_manual_payment_needs_notes_but_no_billing():
    validate_payment_method(ManualPayment(notes="Check #1042"), None)
    with pytest.raises(ValidationError):
        validate_payment_method(ManualPayment(notes=""), None)


def test_billing_truncated_for_gateway():
    billing = BillingAddress.from_dict({**BILLING, "city": "X" * 80})
    assert len(billing.to_gateway()["city"]) == 40
