"""
Collaborators of the reconciliation flow.

``OrderStore`` is the order subsystem's interface and ``AuditSink`` the
audit trail's. Both ship with a SQL implementation over this service's
database; either can be replaced through the service constructors.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol

import structlog
from sqlalchemy import ColumnElement, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.database.models import AuditLog, Order, Payment
from paygate.enums import OrderStatus, PaymentStatus
from paygate.errors import OrderNotFound

logger = structlog.get_logger(__name__)

SENSITIVE_FIELDS = frozenset(
    {
        "signature",
        "mac",
        "vnp_securehash",
        "accesskey",
        "secretkey",
        "key1",
        "key2",
        "zp_trans_token",
        "password",
        "token",
    }
)
MASK = "***"


@dataclass(frozen=True)
class OrderSnapshot:
    """The order fields the payment flow depends on."""

    order_id: str
    total_amount: Decimal
    status: str
    payment_status: str
    user_id: Optional[str] = None


class OrderStore(Protocol):
    """Order subsystem interface."""

    async def get(self, order_id: str) -> Optional[OrderSnapshot]:
        ...

    async def update_payment_state(self, order_id: str, status: PaymentStatus) -> None:
        ...


# Order fields written for each terminal payment status
ORDER_UPDATES: Dict[PaymentStatus, Dict[str, str]] = {
    PaymentStatus.PAID: {
        "payment_status": PaymentStatus.PAID.value,
        "status": OrderStatus.PROCESSING.value,
    },
    PaymentStatus.FAILED: {"payment_status": PaymentStatus.FAILED.value},
    PaymentStatus.REFUNDED: {"payment_status": PaymentStatus.REFUNDED.value},
}

SETTLED_ORDER_STATES = (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value)


def order_update_guard(status: PaymentStatus) -> Optional[ColumnElement[bool]]:
    """
    Extra condition an order row must meet before ``status`` is projected.

    An order paid through one method stays PAID when another method's
    attempt fails, and stays PAID while any of its payments still holds
    the money.
    """
    if status is PaymentStatus.FAILED:
        return Order.payment_status.notin_(SETTLED_ORDER_STATES)
    if status is PaymentStatus.REFUNDED:
        still_paid = (
            select(Payment.id)
            .where(
                Payment.order_id == Order.order_id,
                Payment.status == PaymentStatus.PAID.value,
            )
            .correlate(Order)
            .exists()
        )
        return ~still_paid
    return None


class SqlOrderStore:
    """
    OrderStore over the ``orders`` table.

    Bound to the caller's session so order writes commit or roll back
    together with the payment write.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, order_id: str) -> Optional[OrderSnapshot]:
        order = await self.session.get(Order, order_id)
        if order is None:
            return None
        return OrderSnapshot(
            order_id=order.order_id,
            total_amount=order.total_amount,
            status=order.status,
            payment_status=order.payment_status,
            user_id=order.user_id,
        )

    async def update_payment_state(self, order_id: str, status: PaymentStatus) -> None:
        """
        Project a terminal payment status onto the order.

        Outcomes that would contradict a settled order are skipped
        (see ``order_update_guard``).

        Raises:
            OrderNotFound: If the order row does not exist
        """
        status = PaymentStatus(status)
        values = ORDER_UPDATES.get(status)
        if values is None:
            return

        stmt = update(Order).where(Order.order_id == order_id)
        guard = order_update_guard(status)
        if guard is not None:
            stmt = stmt.where(guard)
        result = await self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        current = await self.get(order_id)
        if current is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        logger.info(
            "order_update_skipped",
            order_id=order_id,
            payment_status=current.payment_status,
            outcome=status.value,
        )


def mask_sensitive(value: Any) -> Any:
    """Copy of a payload with signatures and secrets masked."""
    if isinstance(value, Mapping):
        return {
            key: MASK if str(key).lower() in SENSITIVE_FIELDS else mask_sensitive(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [mask_sensitive(item) for item in value]
    return value


class AuditSink(Protocol):
    """Audit trail interface."""

    async def record(
        self,
        actor: Optional[str],
        action: str,
        resource: str,
        resource_id: Optional[str],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class SqlAuditSink:
    """AuditSink writing to ``audit_logs`` in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        actor: Optional[str],
        action: str,
        resource: str,
        resource_id: Optional[str],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        async with self.session_factory() as db:
            async with db.begin():
                db.add(
                    AuditLog(
                        actor=actor,
                        action=action,
                        resource=resource,
                        resource_id=resource_id,
                        old_value=mask_sensitive(old_value),
                        new_value=mask_sensitive(new_value),
                        ip_address=context.get("ip_address"),
                        user_agent=context.get("user_agent"),
                    )
                )


class BestEffortAuditSink:
    """
    Non-fatal side channel around another sink.

    A failing audit write is logged and dropped; it never propagates into
    the payment flow that emitted it.
    """

    def __init__(self, inner: AuditSink):
        self.inner = inner

    async def record(
        self,
        actor: Optional[str],
        action: str,
        resource: str,
        resource_id: Optional[str],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            await self.inner.record(
                actor, action, resource, resource_id, old_value, new_value, context
            )
        except Exception as e:
            logger.warning(
                "audit_log_failed",
                action=action,
                resource=resource,
                resource_id=resource_id,
                error=str(e),
                error_type=type(e).__name__,
            )

