"""
Cash on delivery.

There is no provider: initiation only returns instructions, and a staff
member's collection confirmation plays the role of the callback.
"""
from datetime import datetime
from typing import Any, Mapping, Optional

from paygate.enums import PaymentMethod, PaymentStatus
from paygate.errors import RefundNotAllowed, UnsupportedMethod
from paygate.integrations.base import (
    Acknowledgment,
    AckKind,
    CallbackVerification,
    GatewayAdapter,
    PaymentArtifact,
    PaymentContext,
    RefundRequest,
    RefundResult,
    RemoteStatus,
    parse_amount,
)


class CODAdapter(GatewayAdapter):
    """Cash on delivery handler."""

    method = PaymentMethod.COD
    reissue_artifacts = True

    def new_reference(self, order_id: str, now: Optional[datetime] = None) -> str:
        return f"COD-{super().new_reference(order_id, now)}"

    async def create_payment_request(self, context: PaymentContext) -> PaymentArtifact:
        return PaymentArtifact(
            method=self.method,
            reference=context.reference,
            message=(
                f"Pay {self.whole_amount(context.amount)} {self.settings.currency} "
                "in cash on delivery"
            ),
        )

    def verify_callback(self, raw_payload: Mapping[str, Any]) -> CallbackVerification:
        """
        Validate a staff confirmation ``{reference, collected, amount, confirmed_by}``.

        ``collected`` must be a real boolean; anything else is malformed.
        """
        fields = {k: "" if v is None else str(v) for k, v in raw_payload.items()}
        reference = raw_payload.get("reference") or None
        collected = raw_payload.get("collected")
        amount = parse_amount(raw_payload.get("amount"))
        confirmed_by = raw_payload.get("confirmed_by")

        if not reference or not isinstance(collected, bool) or amount is None or not confirmed_by:
            return CallbackVerification(
                valid=False,
                reference=str(reference) if reference else None,
                normalized_fields=fields,
                reason="malformed_payload",
            )

        return CallbackVerification(
            valid=True,
            reference=str(reference),
            outcome=PaymentStatus.PAID if collected else PaymentStatus.FAILED,
            amount=amount,
            transaction_id=str(reference) if collected else None,
            provider_code="collected" if collected else "not_collected",
            normalized_fields=fields,
        )

    async def query_status(
        self, reference: str, created_at: Optional[datetime] = None
    ) -> RemoteStatus:
        raise UnsupportedMethod("COD payments have no provider to query", reference=reference)

    async def refund(self, request: RefundRequest) -> RefundResult:
        raise RefundNotAllowed(
            "Cash payments cannot be refunded electronically", reference=request.reference
        )

    def acknowledge(self, kind: AckKind, reason: Optional[str] = None) -> Acknowledgment:
        if kind is AckKind.SUCCESS:
            return Acknowledgment(200, {"success": True})
        status_code = 500 if kind is AckKind.RETRY else 409
        return Acknowledgment(status_code, {"success": False, "error": reason})
