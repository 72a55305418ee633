"""Payment status transition table."""
from typing import Dict, FrozenSet

from paygate.enums import PaymentStatus
from paygate.errors import IllegalTransition

ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def is_allowed(current: PaymentStatus, target: PaymentStatus) -> bool:
    return PaymentStatus(target) in ALLOWED_TRANSITIONS[PaymentStatus(current)]


def assert_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    """
    Reject any transition outside the table.

    Raises:
        IllegalTransition: If ``current -> target`` is not allowed
    """
    if not is_allowed(current, target):
        raise IllegalTransition(
            f"Illegal payment transition {PaymentStatus(current).value} -> "
            f"{PaymentStatus(target).value}",
            current=PaymentStatus(current).value,
            target=PaymentStatus(target).value,
        )
