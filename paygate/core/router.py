"""
Payment initiation.

Validates a request against the order, records the PENDING payment, then
asks the provider for a checkout artifact. The PENDING row is committed
before any outbound call, so a failed or abandoned call still leaves an
auditable attempt behind.
"""
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import structlog

from paygate.config import Settings, get_settings
from paygate.core.reconciliation import ReconciliationService
from paygate.database.models import Payment
from paygate.enums import PaymentMethod, PaymentStatus
from paygate.errors import GatewayUnavailable, ProviderRejected, ValidationError
from paygate.integrations.base import PaymentArtifact, PaymentContext
from paygate.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SETTLED_ORDER_STATUSES = frozenset({PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value})


@dataclass(frozen=True)
class InitiationRequest:
    """Client request to pay for an order."""

    order_id: Optional[str]
    amount: Any
    payment_method: Any
    order_info: str = ""
    bank_code: Optional[str] = None
    locale: str = "vn"
    client_ip: str = "127.0.0.1"


@dataclass(frozen=True)
class InitiationResult:
    """PENDING payment and the artifact to hand to the client."""

    payment: Payment
    artifact: PaymentArtifact
    reused: bool


class PaymentRequestRouter:
    """Validates and dispatches payment initiation requests."""

    def __init__(
        self,
        reconciliation: ReconciliationService,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize payment request router.

        Args:
            reconciliation: Service that owns payment records
            settings: Application settings
        """
        self.reconciliation = reconciliation
        self.gateways = reconciliation.gateways
        self.settings = settings or get_settings()

    @staticmethod
    def _validate_fields(request: InitiationRequest) -> List[str]:
        """
        Check the request on its own. Returns every violation found.
        """
        violations: List[str] = []

        if not request.order_id or not str(request.order_id).strip():
            violations.append("order_id is required")

        try:
            amount = Decimal(str(request.amount))
            if not amount.is_finite() or amount <= 0:
                violations.append("amount must be greater than zero")
        except (InvalidOperation, ValueError):
            violations.append("amount must be a number")

        try:
            PaymentMethod(request.payment_method)
        except ValueError:
            allowed = ", ".join(m.value for m in PaymentMethod)
            violations.append(f"payment_method must be one of: {allowed}")

        return violations

    async def initiate(
        self,
        request: InitiationRequest,
        actor: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> InitiationResult:
        """
        Initiate a payment.

        Flow:
        1. Validate fields
        2. Validate against the order (amount within tolerance, not yet paid)
        3. Create or reuse the PENDING payment
        4. Build the provider artifact
        5. Store the artifact on the payment

        Raises:
            ValidationError: With every violation found
            OrderNotFound: If the order does not exist
            GatewayUnavailable: Provider timeout/network failure (payment stays PENDING)
            ProviderRejected: Provider refused the request (payment stays PENDING)
        """
        start_time = time.time()
        method_label = str(request.payment_method)

        violations = self._validate_fields(request)
        if violations:
            metrics.record_initiation(method_label, "rejected", time.time() - start_time)
            logger.warning("payment_initiation_invalid", violations=violations)
            raise ValidationError(violations)

        order_id = str(request.order_id).strip()
        amount = Decimal(str(request.amount))
        method = PaymentMethod(request.payment_method)

        order = await self.reconciliation.get_order(order_id)
        if abs(amount - order.total_amount) > self.settings.amount_tolerance:
            violations.append(
                f"amount {amount} does not match order total {order.total_amount}"
            )
        if order.payment_status in SETTLED_ORDER_STATUSES:
            violations.append(f"order {order_id} is already {order.payment_status}")
        if violations:
            metrics.record_initiation(method.value, "rejected", time.time() - start_time)
            logger.warning(
                "payment_initiation_invalid", order_id=order_id, violations=violations
            )
            raise ValidationError(violations, order_id=order_id)

        adapter = self.gateways.get(method)
        payment, created = await self.reconciliation.create_pending(
            order_id,
            method,
            order.total_amount,
            adapter.new_reference(order_id),
            actor=actor,
            context=context,
        )

        stored = (payment.gateway_data or {}).get("initiation")
        if not created and stored and not adapter.reissue_artifacts:
            metrics.record_initiation(method.value, "reused", time.time() - start_time)
            return InitiationResult(
                payment=payment, artifact=PaymentArtifact.from_dict(stored), reused=True
            )

        payment_context = PaymentContext(
            order_id=order_id,
            reference=payment.reference_number,
            amount=payment.amount,
            order_info=request.order_info,
            user_id=order.user_id,
            client_ip=request.client_ip,
            bank_code=request.bank_code,
            locale=request.locale,
        )

        try:
            artifact = await adapter.create_payment_request(payment_context)
        except (GatewayUnavailable, ProviderRejected) as e:
            metrics.record_initiation(method.value, e.code, time.time() - start_time)
            logger.error(
                "payment_initiation_gateway_error",
                payment_id=str(payment.id),
                order_id=order_id,
                method=method.value,
                error=str(e),
                error_code=e.code,
            )
            raise

        if not await self.reconciliation.record_initiation(payment.id, artifact):
            logger.info(
                "payment_settled_before_artifact_stored",
                payment_id=str(payment.id),
            )

        metrics.record_initiation(
            method.value, "created" if created else "reused", time.time() - start_time
        )
        logger.info(
            "payment_initiated",
            payment_id=str(payment.id),
            order_id=order_id,
            method=method.value,
            reference=payment.reference_number,
            reused=not created,
        )
        return InitiationResult(payment=payment, artifact=artifact, reused=not created)
