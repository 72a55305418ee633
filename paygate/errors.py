"""
Exception hierarchy for the payment gateway.

Every error carries a stable machine ``code`` that the HTTP layer maps to a
status and that callback handlers map to a provider acknowledgment.
"""
from typing import Any, Dict, List, Optional


class PaymentGatewayError(Exception):
    """Base exception for payment gateway errors."""

    code = "payment_error"

    def __init__(self, message: str, **context: Any):
        """
        Initialize error.

        Args:
            message: Human readable message
            **context: Structured context included in logs and responses
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.context:
            body["context"] = {k: str(v) for k, v in self.context.items()}
        return body


class ValidationError(PaymentGatewayError):
    """Raised when an initiation request is invalid. Carries every violation found."""

    code = "validation_error"

    def __init__(self, violations: List[str], **context: Any):
        super().__init__("; ".join(violations), **context)
        self.violations = list(violations)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["violations"] = self.violations
        return body


class SignatureInvalid(PaymentGatewayError):
    """Raised when a provider payload fails signature verification."""

    code = "signature_invalid"


class AmountMismatch(PaymentGatewayError):
    """Raised when a confirmed amount differs from the stored payment amount."""

    code = "amount_mismatch"


class OrderNotFound(PaymentGatewayError):
    """Raised when the referenced order does not exist."""

    code = "order_not_found"


class PaymentNotFound(PaymentGatewayError):
    """Raised when no payment matches the given id or provider reference."""

    code = "payment_not_found"


class GatewayUnavailable(PaymentGatewayError):
    """Raised on provider timeout, network failure or an open circuit."""

    code = "gateway_unavailable"


class UnsupportedMethod(PaymentGatewayError):
    """Raised when a payment method does not support the requested operation."""

    code = "unsupported_method"


class RefundNotAllowed(PaymentGatewayError):
    """Raised when a payment cannot be refunded in its current state or method."""

    code = "refund_not_allowed"


class ProviderRejected(PaymentGatewayError):
    """Raised when the provider answered but declined the request."""

    code = "provider_rejected"

    def __init__(self, message: str, provider_code: Optional[str] = None, **context: Any):
        super().__init__(message, provider_code=provider_code, **context)
        self.provider_code = provider_code


class IllegalTransition(PaymentGatewayError):
    """Raised for a status transition outside the allowed table."""

    code = "illegal_transition"


class PaymentAlreadyTerminal(PaymentGatewayError):
    """Raised when a payment was already settled with a different outcome."""

    code = "payment_already_terminal"


class ReconciliationIntegrityError(PaymentGatewayError):
    """
    Raised when the payment and order writes could not be committed together.

    Never downgraded to a failed payment; requires operator investigation.
    """

    code = "reconciliation_integrity_error"
