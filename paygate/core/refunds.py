"""
Refund orchestration.

Refunds are gated locally before any provider call: only PAID, non-COD
payments qualify, and the payment is claimed with a conditional write so
at most one refund call is in flight for it. The PAID -> REFUNDED
transition is applied only after the provider confirms.
"""
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from paygate.core.reconciliation import AuditAction, ReconciliationService, refund_attempt
from paygate.database.models import Payment
from paygate.enums import PaymentMethod, PaymentStatus
from paygate.errors import GatewayUnavailable, ProviderRejected, RefundNotAllowed
from paygate.integrations.base import RefundRequest, RefundResult
from paygate.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def refund_request_id(payment: Payment) -> str:
    """
    Merchant refund id for the payment's current attempt.

    Stable until the provider declines an attempt, so a retry after a
    timeout is recognised by the provider as the same refund.
    """
    return f"{payment.id.hex[:28]}{refund_attempt(payment):04d}"


@dataclass(frozen=True)
class RefundOutcome:
    """Refunded payment and the provider's confirmation."""

    payment: Payment
    result: RefundResult


class RefundOrchestrator:
    """Initiates provider refunds for confirmed payments."""

    def __init__(self, reconciliation: ReconciliationService):
        """
        Initialize refund orchestrator.

        Args:
            reconciliation: Service that owns payment state
        """
        self.reconciliation = reconciliation
        self.gateways = reconciliation.gateways
        self.audit = reconciliation.audit

    async def refund(
        self,
        payment_id: uuid.UUID | str,
        reason: str = "Customer refund",
        actor: str = "system",
        context: Optional[Dict[str, Any]] = None,
    ) -> RefundOutcome:
        """
        Refund a payment in full.

        Args:
            payment_id: Payment to refund
            reason: Reason sent to the provider
            actor: Who requested the refund
            context: Request context for audit

        Returns:
            RefundOutcome: The REFUNDED payment and provider result

        Raises:
            PaymentNotFound: If no such payment exists
            RefundNotAllowed: COD payment, status is not PAID, or another
                refund for the payment is in progress
            ProviderRejected: Provider declined; payment stays PAID
            GatewayUnavailable: Provider unreachable; payment stays PAID
        """
        payment = await self.reconciliation.get_payment(payment_id)
        method = PaymentMethod(payment.payment_method)

        if method is PaymentMethod.COD:
            await self._reject(payment, actor, context, "cash payments cannot be refunded")
            raise RefundNotAllowed(
                "COD payments cannot be refunded electronically", payment_id=payment.id
            )
        if payment.current_status is not PaymentStatus.PAID:
            await self._reject(payment, actor, context, f"status is {payment.status}")
            raise RefundNotAllowed(
                f"Only PAID payments can be refunded (status {payment.status})",
                payment_id=payment.id,
                status=payment.status,
            )

        try:
            payment = await self.reconciliation.claim_refund(payment, actor)
        except RefundNotAllowed as e:
            await self._reject(payment, actor, context, e.message)
            raise

        adapter = self.gateways.get(method)
        request_id = refund_request_id(payment)
        logger.info(
            "refund_requested",
            payment_id=str(payment.id),
            method=method.value,
            amount=str(payment.amount),
            request_id=request_id,
            actor=actor,
        )

        try:
            result = await adapter.refund(
                RefundRequest(
                    reference=payment.reference_number,
                    amount=payment.amount,
                    reason=reason,
                    transaction_id=payment.transaction_id,
                    paid_at=payment.paid_at,
                    actor=actor,
                    request_id=request_id,
                )
            )
        except (ProviderRejected, GatewayUnavailable) as e:
            logger.error(
                "refund_provider_failed",
                payment_id=str(payment.id),
                method=method.value,
                request_id=request_id,
                error=str(e),
                error_code=e.code,
            )
            # A timeout may still have refunded; keep the id so a retry is deduplicated
            await self.reconciliation.release_refund(
                payment, next_attempt=isinstance(e, ProviderRejected)
            )
            metrics.record_refund(method.value, e.code)
            await self.audit.record(
                actor,
                AuditAction.REFUND_FAILED,
                "payment",
                str(payment.id),
                {"status": payment.status},
                {
                    "error": e.code,
                    "message": e.message,
                    "reason": reason,
                    "request_id": request_id,
                },
                context,
            )
            raise

        refunded = await self.reconciliation.transition(
            payment.id,
            PaymentStatus.REFUNDED,
            event="refund",
            payload={
                "refund_id": result.refund_id,
                "request_id": request_id,
                "provider_code": result.provider_code,
                "reason": reason,
                "response": result.raw,
            },
            actor=actor,
            context=context,
        )
        metrics.record_refund(method.value, "refunded")
        logger.info(
            "refund_completed",
            payment_id=str(payment.id),
            refund_id=result.refund_id,
        )
        return RefundOutcome(payment=refunded, result=result)

    async def _reject(
        self,
        payment: Payment,
        actor: str,
        context: Optional[Dict[str, Any]],
        why: str,
    ) -> None:
        logger.warning(
            "refund_not_allowed",
            payment_id=str(payment.id),
            method=payment.payment_method,
            status=payment.status,
            reason=why,
        )
        metrics.record_refund(payment.payment_method, "not_allowed")
        await self.audit.record(
            actor,
            AuditAction.REFUND_FAILED,
            "payment",
            str(payment.id),
            {"status": payment.status},
            {"error": RefundNotAllowed.code, "reason": why},
            context,
        )
