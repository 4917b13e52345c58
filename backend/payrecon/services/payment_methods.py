# Overview: Payment method variants (card, ACH, saved card, manual) and their input validation.

"""
Payment methods are a closed set of frozen dataclasses. Each variant knows
its `kind` (the value written to PaymentTransaction.method) and whether it
goes through the gateway; the gateway client and the capture service pick
their handler by type instead of comparing strings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields
from typing import ClassVar, Union

from ..errors import ValidationError
from payrecon.time_utils import utcnow


@dataclass(frozen=True)
class BillingAddress:
    first_name: str
    last_name: str
    address: str
    city: str
    state: str
    zip: str
    country: str = "USA"

    REQUIRED: ClassVar[tuple[str, ...]] = ("first_name", "last_name", "address", "city", "state", "zip")

    # Gateway field limits
    _LIMITS: ClassVar[dict[str, int]] = {
        "first_name": 50,
        "last_name": 50,
        "address": 60,
        "city": 40,
        "state": 40,
        "zip": 20,
        "country": 60,
    }

    @classmethod
    def from_dict(cls, data: dict | None) -> "BillingAddress":
        data = data or {}
        values = {f.name: str(data.get(f.name) or "").strip() for f in fields(cls)}
        if not values["country"]:
            values["country"] = "USA"
        return cls(**values)

    def missing_fields(self) -> list[str]:
        return [name for name in self.REQUIRED if not getattr(self, name)]

    def to_gateway(self) -> dict:
        return {
            "firstName": self.first_name[: self._LIMITS["first_name"]],
            "lastName": self.last_name[: self._LIMITS["last_name"]],
            "address": self.address[: self._LIMITS["address"]],
            "city": self.city[: self._LIMITS["city"]],
            "state": self.state[: self._LIMITS["state"]],
            "zip": self.zip[: self._LIMITS["zip"]],
            "country": self.country[: self._LIMITS["country"]],
        }


@dataclass(frozen=True)
class CardPayment:
    card_number: str
    expiration_date: str
    cvv: str
    cardholder_name: str

    kind: ClassVar[str] = "card"
    uses_gateway: ClassVar[bool] = True

    @property
    def last_four(self) -> str:
        return self.card_number[-4:]

    @property
    def brand(self) -> str:
        return detect_card_brand(self.card_number)

    def __repr__(self) -> str:
        return f"CardPayment(brand={self.brand!r}, last_four={self.last_four!r})"


@dataclass(frozen=True)
class BankAccountPayment:
    routing_number: str
    account_number: str
    name_on_account: str
    account_type: str = "checking"
    echeck_type: str = "WEB"
    bank_name: str = ""

    kind: ClassVar[str] = "ach"
    uses_gateway: ClassVar[bool] = True

    @property
    def last_four(self) -> str:
        return self.account_number[-4:]

    @property
    def brand(self) -> str:
        return self.account_type

    def __repr__(self) -> str:
        return f"BankAccountPayment(account_type={self.account_type!r}, last_four={self.last_four!r})"


@dataclass(frozen=True)
class SavedCardPayment:
    """
    Off-session charge against a stored gateway profile.

    Parsed requests only carry saved_method_id; the services fill in the
    profile ids from SavedPaymentMethod before calling the gateway.
    """
    saved_method_id: int
    customer_profile_id: str = ""
    payment_profile_id: str = ""
    card_last_four: str | None = None
    card_brand: str | None = None

    kind: ClassVar[str] = "saved_card"
    uses_gateway: ClassVar[bool] = True

    @property
    def last_four(self) -> str | None:
        return self.card_last_four

    @property
    def brand(self) -> str | None:
        return self.card_brand


@dataclass(frozen=True)
class ManualPayment:
    """Cash/check/wire recorded by staff; no gateway call."""
    notes: str

    kind: ClassVar[str] = "manual"
    uses_gateway: ClassVar[bool] = False

    @property
    def last_four(self) -> None:
        return None

    @property
    def brand(self) -> None:
        return None


PaymentMethod = Union[CardPayment, BankAccountPayment, SavedCardPayment, ManualPayment]


# =============================================================================
# CARD HELPERS
# =============================================================================

_CARD_BRANDS = (
    ("amex", re.compile(r"^3[47]")),
    ("visa", re.compile(r"^4")),
    ("mastercard", re.compile(r"^(5[1-5]|2[2-7])")),
    ("discover", re.compile(r"^(6011|65|64[4-9])")),
    ("diners", re.compile(r"^3(0[0-5]|[68])")),
    ("jcb", re.compile(r"^35")),
)


def detect_card_brand(card_number: str) -> str:
    for brand, pattern in _CARD_BRANDS:
        if pattern.match(card_number or ""):
            return brand
    return "unknown"


def luhn_valid(card_number: str) -> bool:
    total = 0
    for index, char in enumerate(reversed(card_number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def parse_expiration(value: str) -> tuple[int, int] | None:
    """Accept MM/YY, MMYY, MM/YYYY or YYYY-MM; return (year, month)."""
    cleaned = (value or "").strip()
    match = re.fullmatch(r"(\d{4})-(\d{2})", cleaned)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
    else:
        digits = re.sub(r"[/\s-]", "", cleaned)
        if not digits.isdigit() or len(digits) not in (4, 6):
            return None
        month = int(digits[:2])
        year = int(digits[2:])
        if len(digits) == 4:
            year += 2000
    if not 1 <= month <= 12:
        return None
    return year, month


def gateway_expiration(value: str) -> str:
    """Gateway wants YYYY-MM."""
    parsed = parse_expiration(value)
    if parsed is None:
        raise ValidationError("Invalid expiration date")
    year, month = parsed
    return f"{year:04d}-{month:02d}"


# =============================================================================
# PARSING / VALIDATION
# =============================================================================

def _digits(value) -> str:
    return re.sub(r"\D", "", str(value or ""))


def parse_payment_method(data: dict | None) -> PaymentMethod:
    """
    Build a payment method variant from request JSON.

    {"type": "card", "card_number": ..., "expiration_date": "MM/YY", "cvv": ..., "cardholder_name": ...}
    {"type": "ach", "routing_number": ..., "account_number": ..., "name_on_account": ..., "account_type": "checking"}
    {"type": "saved_card", "saved_method_id": 3}
    {"type": "manual", "notes": "Paid by check #1042"}
    """
    if not isinstance(data, dict):
        raise ValidationError("payment_method is required")

    method_type = str(data.get("type") or "").strip().lower()

    if method_type in ("card", "credit_card"):
        return CardPayment(
            card_number=_digits(data.get("card_number")),
            expiration_date=str(data.get("expiration_date") or "").strip(),
            cvv=_digits(data.get("cvv")),
            cardholder_name=str(data.get("cardholder_name") or "").strip(),
        )
    if method_type in ("ach", "echeck"):
        return BankAccountPayment(
            routing_number=_digits(data.get("routing_number")),
            account_number=_digits(data.get("account_number")),
            name_on_account=str(data.get("name_on_account") or "").strip(),
            account_type=str(data.get("account_type") or "checking").strip().lower(),
            echeck_type=str(data.get("echeck_type") or "WEB").strip().upper(),
            bank_name=str(data.get("bank_name") or "").strip(),
        )
    if method_type == "saved_card":
        saved_method_id = data.get("saved_method_id")
        if not isinstance(saved_method_id, int) or isinstance(saved_method_id, bool):
            raise ValidationError("saved_method_id must be an integer")
        return SavedCardPayment(saved_method_id=saved_method_id)
    if method_type == "manual":
        return ManualPayment(notes=str(data.get("notes") or "").strip())

    raise ValidationError(
        f"Invalid payment type: {method_type or '(missing)'}",
        details={"allowed": ["card", "ach", "saved_card", "manual"]},
    )


def _card_errors(method: CardPayment) -> dict[str, str]:
    errors = {}
    brand = method.brand
    if not 13 <= len(method.card_number) <= 19 or not luhn_valid(method.card_number):
        errors["card_number"] = "Invalid card number"
    cvv_length = 4 if brand == "amex" else 3
    if len(method.cvv) != cvv_length:
        errors["cvv"] = f"CVV must be {cvv_length} digits"
    parsed = parse_expiration(method.expiration_date)
    if parsed is None:
        errors["expiration_date"] = "Invalid expiration date"
    else:
        now = utcnow()
        if parsed < (now.year, now.month):
            errors["expiration_date"] = "Card expired"
    if not method.cardholder_name:
        errors["cardholder_name"] = "Cardholder name is required"
    return errors


def _bank_errors(method: BankAccountPayment) -> dict[str, str]:
    errors = {}
    if len(method.routing_number) != 9:
        errors["routing_number"] = "Routing number must be 9 digits"
    if not 4 <= len(method.account_number) <= 17:
        errors["account_number"] = "Account number must be 4-17 digits"
    if not method.name_on_account:
        errors["name_on_account"] = "Name on account is required"
    if method.account_type not in ("checking", "savings", "businesschecking"):
        errors["account_type"] = "Account type must be checking or savings"
    return errors


def _saved_card_errors(method: SavedCardPayment) -> dict[str, str]:
    return {}


def _manual_errors(method: ManualPayment) -> dict[str, str]:
    if not method.notes:
        return {"notes": "Notes are required for manual payments"}
    return {}


_VALIDATORS = {
    CardPayment: _card_errors,
    BankAccountPayment: _bank_errors,
    SavedCardPayment: _saved_card_errors,
    ManualPayment: _manual_errors,
}


def validate_payment_method(method: PaymentMethod, billing: BillingAddress | None) -> None:
    """
    Raise ValidationError (with per-field details) for unusable input.

    Card and ACH payments need a complete billing address.
    """
    errors = dict(_VALIDATORS[type(method)](method))

    if isinstance(method, (CardPayment, BankAccountPayment)):
        missing = billing.missing_fields() if billing is not None else list(BillingAddress.REQUIRED)
        for name in missing:
            errors[f"billing.{name}"] = "Required"

    if errors:
        raise ValidationError("Invalid payment details", details=errors)
