"""Shared enumerations for payment methods and lifecycle states."""
from enum import Enum


class PaymentMethod(str, Enum):
    """Supported ways to pay for an order."""

    VNPAY = "VNPAY"
    MOMO = "MOMO"
    ZALOPAY = "ZALOPAY"
    COD = "COD"


class PaymentStatus(str, Enum):
    """
    Payment lifecycle states.

    State machine:
    PENDING → PAID → REFUNDED
        ↓
      FAILED
    """

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class OrderStatus(str, Enum):
    """Order fulfilment stages the payment flow can move an order into."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    CANCELLED = "CANCELLED"
