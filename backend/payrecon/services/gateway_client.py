# Overview: Payment gateway client (authorize+capture, saved-profile charge, refund) over httpx.

"""
Gateway Client

Talks to an Authorize.net-style JSON endpoint (createTransactionRequest).
Card numbers and bank details only pass through this module on their way
to the gateway; nothing here touches the database.

RESULTS vs ERRORS:
- A decline is an answer, not an error: GatewayResult(success=False, ...)
  carrying the gateway code and a human-readable reason.
- Transport problems raise GatewayError subclasses. `outcome_unknown` says
  whether the charge might have happened anyway (timeouts, broken replies)
  or definitely did not (connection refused, 4xx).
- Missing credentials / disabled gateway raise ConfigurationError before
  any request is sent.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass

import httpx
from flask import current_app

from ..errors import ConfigurationError, GatewayTimeout, GatewayUnavailable, ValidationError
from .payment_methods import (
    BankAccountPayment,
    BillingAddress,
    CardPayment,
    SavedCardPayment,
    gateway_expiration,
)
from payrecon.time_utils import cents_to_amount


GATEWAY_ERROR_MESSAGES = {
    "E00003": "Invalid request data structure.",
    "E00007": "Authentication failed. Please check payment gateway credentials.",
    "E00012": "Duplicate subscription exists.",
    "E00015": "Field length exceeded.",
    "E00020": "Account not enabled for eCheck.",
    "E00027": "Transaction unsuccessful.",
    "E00039": "Duplicate record detected.",
    "E00040": "Record not found.",
    "E00099": "Profile creation failed.",
    "MISSING_CREDENTIALS": "Payment gateway not configured. Please contact support.",
    "GATEWAY_DISABLED": "Payment gateway is disabled. Please contact support.",
    "CONFIG_ERROR": "Payment configuration error. Please contact support.",
    "2": "Card declined. Please try a different card.",
    "3": "Card declined. Please contact your bank.",
    "4": "Card declined. Please try again.",
    "5": "Invalid amount.",
    "6": "Invalid card number.",
    "7": "Invalid expiration date.",
    "8": "Card expired.",
    "11": "Duplicate transaction.",
    "27": "AVS mismatch. Please verify billing address.",
    "44": "CVV mismatch. Please verify security code.",
    "45": "Card code verification failed.",
    "65": "Card declined. Exceeds limit.",
    "127": "AVS and CVV mismatch.",
    "252": "Transaction pending review.",
    "253": "Transaction held for review.",
}


def describe_gateway_error(code: str | None, fallback: str | None = None) -> str:
    """Human-readable reason for a gateway error code: "Card expired. (8)"."""
    if code and code in GATEWAY_ERROR_MESSAGES:
        return f"{GATEWAY_ERROR_MESSAGES[code]} ({code})"
    message = fallback or "Transaction failed"
    return f"{message} ({code})" if code else message


@dataclass(frozen=True)
class GatewayResult:
    success: bool
    transaction_id: str | None = None
    auth_code: str | None = None
    error_code: str | None = None
    error: str | None = None
    raw: dict | None = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: str | None = None
    status: str = "completed"  # completed, pending
    error_code: str | None = None
    error: str | None = None


# =============================================================================
# PAYLOAD BUILDERS
# =============================================================================

def _card_payload(method: CardPayment) -> dict:
    return {
        "creditCard": {
            "cardNumber": method.card_number,
            "expirationDate": gateway_expiration(method.expiration_date),
            "cardCode": method.cvv,
        }
    }


def _bank_payload(method: BankAccountPayment) -> dict:
    return {
        "bankAccount": {
            "accountType": method.account_type,
            "routingNumber": method.routing_number,
            "accountNumber": method.account_number,
            "nameOnAccount": method.name_on_account[:22],
            "echeckType": method.echeck_type,
            "bankName": method.bank_name[:50],
        }
    }


_PAYMENT_BUILDERS = {
    CardPayment: _card_payload,
    BankAccountPayment: _bank_payload,
}


def _order_info(invoice_number: str | None, order_reference: str | None) -> dict:
    info = {}
    if invoice_number:
        info["invoiceNumber"] = re.sub(r"[^a-zA-Z0-9-]", "", invoice_number)[:20]
    if order_reference:
        info["description"] = f"Order {order_reference}"[:255]
    return info


def _extract_error(body: dict) -> tuple[str, str]:
    """First error (code, text) from transactionResponse, else from messages."""
    transaction_response = body.get("transactionResponse") or {}
    errors = transaction_response.get("errors")
    if isinstance(errors, dict):
        errors = errors.get("error")
    if errors:
        if isinstance(errors, dict):
            errors = [errors]
        first = errors[0] or {}
        return str(first.get("errorCode") or ""), first.get("errorText") or "Transaction failed"

    messages = (body.get("messages") or {}).get("message")
    if messages:
        if isinstance(messages, dict):
            messages = [messages]
        first = messages[0] or {}
        return str(first.get("code") or ""), first.get("text") or "Transaction failed"

    return "", "Transaction failed"


def _approved(body: dict) -> bool:
    messages = body.get("messages") or {}
    transaction_response = body.get("transactionResponse") or {}
    return messages.get("resultCode") == "Ok" and str(transaction_response.get("responseCode")) == "1"


# =============================================================================
# CLIENT
# =============================================================================

class GatewayClient:
    """Synchronous client; one short-lived httpx.Client per call."""

    def __init__(
        self,
        api_login_id: str,
        transaction_key: str,
        endpoint: str,
        *,
        timeout_seconds: float = 30.0,
        enabled: bool = True,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_login_id = api_login_id or ""
        self.transaction_key = transaction_key or ""
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled
        self._transport = transport

    @classmethod
    def from_config(cls, config, transport: httpx.BaseTransport | None = None) -> "GatewayClient":
        return cls(
            api_login_id=config.get("GATEWAY_API_LOGIN_ID", ""),
            transaction_key=config.get("GATEWAY_TRANSACTION_KEY", ""),
            endpoint=config.get("GATEWAY_ENDPOINT", ""),
            timeout_seconds=float(config.get("GATEWAY_TIMEOUT_SECONDS", 30.0)),
            enabled=bool(config.get("GATEWAY_ENABLED", True)),
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return self.enabled and bool(self.api_login_id and self.transaction_key and self.endpoint)

    def ensure_configured(self) -> None:
        """Fail closed: never attempt a charge without credentials."""
        if not self.enabled:
            raise ConfigurationError(
                GATEWAY_ERROR_MESSAGES["GATEWAY_DISABLED"],
                details={"code": "GATEWAY_DISABLED"},
            )
        if not (self.api_login_id and self.transaction_key):
            raise ConfigurationError(
                GATEWAY_ERROR_MESSAGES["MISSING_CREDENTIALS"],
                details={"code": "MISSING_CREDENTIALS"},
            )
        if not self.endpoint:
            raise ConfigurationError(
                GATEWAY_ERROR_MESSAGES["CONFIG_ERROR"],
                details={"code": "CONFIG_ERROR"},
            )

    def _envelope(self, ref_prefix: str, transaction_request: dict) -> dict:
        return {
            "createTransactionRequest": {
                "merchantAuthentication": {
                    "name": self.api_login_id,
                    "transactionKey": self.transaction_key,
                },
                "refId": f"{ref_prefix}-{int(time.time() * 1000)}"[:20],
                "transactionRequest": transaction_request,
            }
        }

    def _post(self, payload: dict) -> dict:
        """
        Send one request and return the parsed body.

        Raises GatewayUnavailable / GatewayTimeout; never retries, since a
        retried charge could capture twice.
        """
        self.ensure_configured()
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = client.post(
                    self.endpoint,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            current_app.logger.warning("Gateway connection failed: %s", exc)
            raise GatewayUnavailable(
                "Payment gateway unreachable", outcome_unknown=False
            ) from exc
        except httpx.TimeoutException as exc:
            current_app.logger.error("Gateway request timed out after %ss", self.timeout_seconds)
            raise GatewayTimeout() from exc
        except httpx.TransportError as exc:
            current_app.logger.error("Gateway transport error: %s", exc)
            raise GatewayUnavailable(
                "Payment gateway connection broken", outcome_unknown=True
            ) from exc

        if response.status_code >= 500:
            current_app.logger.error("Gateway returned HTTP %s", response.status_code)
            raise GatewayUnavailable(
                f"Payment gateway error (HTTP {response.status_code})",
                outcome_unknown=True,
                details={"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise GatewayUnavailable(
                f"Payment gateway rejected the request (HTTP {response.status_code})",
                outcome_unknown=False,
                details={"status_code": response.status_code},
            )

        # The gateway prefixes some JSON replies with a UTF-8 BOM
        text = response.text.lstrip("\ufeff")
        try:
            body = json.loads(text)
        except ValueError as exc:
            current_app.logger.error("Invalid response from payment gateway")
            raise GatewayUnavailable(
                "Invalid response from payment gateway",
                outcome_unknown=True,
                details={"code": "PARSE_ERROR"},
            ) from exc
        if not isinstance(body, dict):
            raise GatewayUnavailable(
                "Invalid response from payment gateway",
                outcome_unknown=True,
                details={"code": "PARSE_ERROR"},
            )
        return body

    def _transaction_result(self, body: dict) -> GatewayResult:
        transaction_response = body.get("transactionResponse") or {}
        if _approved(body):
            return GatewayResult(
                success=True,
                transaction_id=str(transaction_response.get("transId") or "") or None,
                auth_code=transaction_response.get("authCode") or None,
                raw=body,
            )
        code, text = _extract_error(body)
        current_app.logger.info("Gateway declined transaction: code=%s", code)
        return GatewayResult(
            success=False,
            error_code=code or None,
            error=describe_gateway_error(code, text),
            raw=body,
        )

    # =========================================================================
    # Operations
    # =========================================================================

    def authorize_capture(
        self,
        method,
        amount_cents: int,
        billing: BillingAddress | None,
        *,
        invoice_number: str | None = None,
        order_reference: str | None = None,
        customer_email: str | None = None,
    ) -> GatewayResult:
        """Authorize and capture `amount_cents` on a card or bank account."""
        builder = _PAYMENT_BUILDERS.get(type(method))
        if builder is None:
            raise ValidationError(f"Payment method {method.kind} cannot be sent to the gateway")
        if amount_cents <= 0:
            raise ValidationError("Amount must be positive")

        request = {
            "transactionType": "authCaptureTransaction",
            "amount": cents_to_amount(amount_cents),
            "payment": builder(method),
        }
        order_info = _order_info(invoice_number, order_reference)
        if order_info:
            request["order"] = order_info
        if customer_email and "@" in customer_email:
            request["customer"] = {"email": customer_email.strip()[:255]}
        if billing is not None:
            request["billTo"] = billing.to_gateway()

        return self._transaction_result(self._post(self._envelope("REF", request)))

    def charge_saved_method(
        self,
        method: SavedCardPayment,
        amount_cents: int,
        *,
        invoice_number: str | None = None,
        order_reference: str | None = None,
    ) -> GatewayResult:
        """Off-session charge against a stored customer/payment profile."""
        if not (method.customer_profile_id and method.payment_profile_id):
            raise ValidationError("Saved payment method has no gateway profile")
        if amount_cents <= 0:
            raise ValidationError("Amount must be positive")

        request = {
            "transactionType": "authCaptureTransaction",
            "amount": cents_to_amount(amount_cents),
            "profile": {
                "customerProfileId": method.customer_profile_id,
                "paymentProfile": {"paymentProfileId": method.payment_profile_id},
            },
        }
        order_info = _order_info(invoice_number, order_reference)
        if order_info:
            request["order"] = order_info

        return self._transaction_result(self._post(self._envelope("ADJ", request)))

    def refund(
        self,
        amount_cents: int,
        original_transaction_id: str,
        *,
        card_last_four: str | None = None,
    ) -> RefundResult:
        """Refund part or all of a previous capture."""
        if not original_transaction_id:
            raise ValidationError("Original transaction id is required for a refund")
        if amount_cents <= 0:
            raise ValidationError("Refund amount must be positive")

        request = {
            "transactionType": "refundTransaction",
            "amount": cents_to_amount(amount_cents),
            "refTransId": original_transaction_id,
        }
        if card_last_four:
            # Masked card is enough for a refund against refTransId
            request["payment"] = {
                "creditCard": {"cardNumber": card_last_four, "expirationDate": "XXXX"}
            }

        body = self._post(self._envelope("REFUND", request))
        transaction_response = body.get("transactionResponse") or {}

        if _approved(body):
            return RefundResult(
                success=True,
                refund_id=str(transaction_response.get("transId") or "") or None,
                status="completed",
            )
        # Held for review: accepted but not final
        if (body.get("messages") or {}).get("resultCode") == "Ok" and str(transaction_response.get("responseCode")) == "4":
            return RefundResult(
                success=True,
                refund_id=str(transaction_response.get("transId") or "") or None,
                status="pending",
            )

        code, text = _extract_error(body)
        return RefundResult(
            success=False,
            error_code=code or None,
            error=describe_gateway_error(code, text or "Refund failed"),
        )


# =============================================================================
# FLASK EXTENSION
# =============================================================================

class PaymentGateway:
    """
    Installs a GatewayClient built from app config under
    app.extensions["payment_gateway"]. Tests replace that entry with a fake.
    """

    def __init__(self, app=None):
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        app.extensions["payment_gateway"] = GatewayClient.from_config(app.config)


def get_gateway():
    return current_app.extensions["payment_gateway"]
