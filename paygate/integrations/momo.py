"""
MoMo wallet adapter.

All calls are JSON POSTs signed with HMAC-SHA256 over a fixed field order.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import structlog

from paygate.config import Settings
from paygate.enums import PaymentMethod, PaymentStatus
from paygate.errors import ProviderRejected
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
from paygate.integrations.http import ProviderHttpClient
from paygate.signing import Operation, Provider, SignatureEngine

logger = structlog.get_logger(__name__)

MOMO_SUCCESS = 0
# Initiated, processing, authorized-not-captured
MOMO_IN_PROGRESS = frozenset({1000, 7000, 7002, 9000})


def _result_code(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


class MoMoAdapter(GatewayAdapter):
    """MoMo ``captureWallet`` integration."""

    method = PaymentMethod.MOMO
    request_type = "captureWallet"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        signer: Optional[SignatureEngine] = None,
        http: Optional[ProviderHttpClient] = None,
    ):
        super().__init__(settings)
        self.signer = signer or SignatureEngine()
        self.http = http or ProviderHttpClient(
            "momo", timeout_seconds=self.settings.gateway_timeout_seconds
        )

    def _url(self, path: str) -> str:
        return f"{self.settings.momo_api_url.rstrip('/')}/{path}"

    def _base_body(self, request_id: str) -> Dict[str, Any]:
        return {
            "partnerCode": self.settings.momo_partner_code,
            "accessKey": self.settings.momo_access_key,
            "requestId": request_id,
            "lang": "vi",
        }

    async def create_payment_request(self, context: PaymentContext) -> PaymentArtifact:
        body = self._base_body(context.reference)
        body.update(
            {
                "amount": str(self.whole_amount(context.amount)),
                "orderId": context.reference,
                "orderInfo": context.order_info or f"Payment for order {context.order_id}",
                "redirectUrl": self.settings.momo_redirect_url,
                "ipnUrl": self.settings.momo_ipn_url,
                "extraData": "",
                "requestType": self.request_type,
            }
        )
        body["signature"] = self.signer.sign(Provider.MOMO, Operation.CREATE, body)

        response = await self.http.post("create", self._url("create"), json=body)
        result_code = _result_code(response.get("resultCode"))
        if result_code != MOMO_SUCCESS or not response.get("payUrl"):
            raise ProviderRejected(
                response.get("message") or "MoMo refused the payment request",
                provider_code=str(response.get("resultCode")),
                reference=context.reference,
            )

        logger.info(
            "momo_payment_created",
            order_id=context.order_id,
            reference=context.reference,
        )

        return PaymentArtifact(
            method=self.method,
            reference=context.reference,
            redirect_url=response["payUrl"],
            qr_code_url=response.get("qrCodeUrl"),
            deeplink=response.get("deeplink"),
            message=response.get("message"),
            raw={
                "requestId": response.get("requestId"),
                "responseTime": response.get("responseTime"),
            },
        )

    def verify_callback(self, raw_payload: Mapping[str, Any]) -> CallbackVerification:
        result = self.signer.verify(Provider.MOMO, raw_payload, Operation.CALLBACK)
        fields = result.normalized_fields
        reference = fields.get("orderId") or None
        if not result.valid:
            return CallbackVerification(
                valid=False, reference=reference, normalized_fields=fields, reason=result.reason
            )

        amount = parse_amount(fields.get("amount"))
        result_code = _result_code(fields.get("resultCode"))
        if amount is None or result_code is None or reference is None:
            return CallbackVerification(
                valid=False,
                reference=reference,
                normalized_fields=fields,
                reason="malformed_payload",
            )

        return CallbackVerification(
            valid=True,
            reference=reference,
            outcome=PaymentStatus.PAID if result_code == MOMO_SUCCESS else PaymentStatus.FAILED,
            amount=amount,
            transaction_id=fields.get("transId") or None,
            provider_code=str(result_code),
            normalized_fields=fields,
        )

    async def query_status(
        self, reference: str, created_at: Optional[datetime] = None
    ) -> RemoteStatus:
        body = self._base_body(f"query_{uuid.uuid4().hex[:16]}")
        body.update({"orderId": reference, "requestType": "query"})
        body["signature"] = self.signer.sign(Provider.MOMO, Operation.QUERY, body)

        response = await self.http.query("query", self._url("query"), json=body)
        result_code = _result_code(response.get("resultCode"))
        if result_code == MOMO_SUCCESS:
            outcome: Optional[PaymentStatus] = PaymentStatus.PAID
        elif result_code is None or result_code in MOMO_IN_PROGRESS:
            outcome = None
        else:
            outcome = PaymentStatus.FAILED

        return RemoteStatus(
            reference=reference,
            outcome=outcome,
            amount=parse_amount(response.get("amount")),
            transaction_id=str(response["transId"]) if response.get("transId") else None,
            provider_code=str(response.get("resultCode")),
            raw=response,
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        body = self._base_body(request.request_id or f"refund_{uuid.uuid4().hex[:16]}")
        body.update(
            {
                "orderId": request.reference,
                "transId": request.transaction_id or "",
                "amount": str(self.whole_amount(request.amount)),
                "description": request.reason,
                "requestType": "refund",
            }
        )
        body["signature"] = self.signer.sign(Provider.MOMO, Operation.REFUND, body)

        response = await self.http.post("refund", self._url("refund"), json=body)
        result_code = _result_code(response.get("resultCode"))
        if result_code != MOMO_SUCCESS:
            raise ProviderRejected(
                response.get("message") or "MoMo refund declined",
                provider_code=str(response.get("resultCode")),
                reference=request.reference,
            )

        return RefundResult(
            reference=request.reference,
            amount=request.amount,
            refund_id=str(response["transId"]) if response.get("transId") else None,
            provider_code=str(result_code),
            message=response.get("message"),
            raw=response,
        )

    def acknowledge(self, kind: AckKind, reason: Optional[str] = None) -> Acknowledgment:
        if kind is AckKind.SUCCESS:
            return Acknowledgment(200, {"resultCode": 0, "message": "success"})
        if kind is AckKind.REJECT:
            return Acknowledgment(200, {"resultCode": -1, "message": reason or "rejected"})
        # MoMo redelivers when the IPN is not answered with 2xx
        return Acknowledgment(500, {"resultCode": -1, "message": "retry"})

    async def aclose(self) -> None:
        await self.http.aclose()
