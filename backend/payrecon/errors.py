# Overview: Error taxonomy shared by the capture and adjustment services and their routes.

from __future__ import annotations


class PaymentError(Exception):
    """Base class for payment/reconciliation failures surfaced to callers."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PaymentError):
    """Bad input. Raised before any side effect."""


class NotFoundError(PaymentError):
    status_code = 404


class ConfigurationError(PaymentError):
    """Gateway credentials missing or gateway disabled. Fails closed."""

    status_code = 503


class PaymentDeclined(PaymentError):
    """The gateway said no. No ledger writes beyond the declined attempt log."""

    status_code = 402

    def __init__(self, code: str | None, message: str, details: dict | None = None):
        super().__init__(message, details)
        self.code = code or ""

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["code"] = self.code
        return body


class GatewayError(PaymentError):
    """Transport-level gateway failure."""

    status_code = 503

    def __init__(self, message: str, *, outcome_unknown: bool, details: dict | None = None):
        super().__init__(message, details)
        self.outcome_unknown = outcome_unknown

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["outcome_unknown"] = self.outcome_unknown
        return body


class GatewayTimeout(GatewayError):
    """No answer within the timeout. The charge may or may not have happened."""

    status_code = 504

    def __init__(self, message: str = "Payment gateway timed out", details: dict | None = None):
        super().__init__(message, outcome_unknown=True, details=details)


class GatewayUnavailable(GatewayError):
    pass


class CaptureOutcomeUnknown(PaymentError):
    """A previous gateway attempt on the order is still pending or unresolved."""

    status_code = 409


class LedgerWriteFailure(PaymentError):
    """
    Money moved at the gateway but the ledger could not record it.

    Never reported as a failed payment: the caller gets a "received, pending
    reconciliation" answer and the item lands in the reconciliation report.
    """

    status_code = 202
