"""
Typed failures raised by the order/payment services.

Each class carries a stable machine-readable ``kind`` and the HTTP status
class the API layer answers with, so callers can branch on the type instead
of parsing messages.
"""


class PaymentError(Exception):
    """Base class for every business failure in the payment flow."""

    kind = "payment_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"status": "error", "kind": self.kind, "message": self.message}


class NotFoundError(PaymentError):
    """Order or payment lookup missed."""

    kind = "not_found"
    status_code = 404


class DuplicatePaymentError(PaymentError):
    """The order already has a payment that must not be replaced."""

    kind = "duplicate_payment"
    status_code = 409


class InvalidStateError(PaymentError):
    """The record's current status forbids the requested operation."""

    kind = "invalid_state"
    status_code = 400


class InvalidAmountError(PaymentError):
    kind = "invalid_amount"
    status_code = 400


class InvalidSignatureError(PaymentError):
    kind = "invalid_signature"
    status_code = 400


class NoCheckoutAvailableError(PaymentError):
    """Retry requested but there is no stored checkout URL to resume."""

    kind = "no_checkout_available"
    status_code = 400


class GatewayIntegrationError(PaymentError):
    """The payment gateway call failed or timed out."""

    kind = "gateway_integration_failure"
    status_code = 502
