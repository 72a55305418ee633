"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
)

__all__ = [
    "create_app",
    "CreatePaymentRequest",
    "CreatePaymentResponse",
    "PaymentResponse",
    "RefundRequest",
    "RefundResponse",
]
