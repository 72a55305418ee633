"""
ZaloPay adapter.

Creation, status query and refund are signed with key1; callbacks are
signed by ZaloPay with key2 and carried in the ``mac`` field.
"""
import json
import time
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
    provider_now,
)
from paygate.integrations.http import ProviderHttpClient
from paygate.signing import Operation, Provider, SignatureEngine

logger = structlog.get_logger(__name__)

ZALOPAY_SUCCESS = 1

# return_code values of getstatusbyapptransid
ZALOPAY_QUERY_OUTCOMES = {
    1: PaymentStatus.PAID,
    2: PaymentStatus.FAILED,
}


def _return_code(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _epoch_millis() -> int:
    return int(time.time() * 1000)


class ZaloPayAdapter(GatewayAdapter):
    """ZaloPay order API integration."""

    method = PaymentMethod.ZALOPAY

    def __init__(
        self,
        settings: Optional[Settings] = None,
        signer: Optional[SignatureEngine] = None,
        http: Optional[ProviderHttpClient] = None,
    ):
        super().__init__(settings)
        self.signer = signer or SignatureEngine()
        self.http = http or ProviderHttpClient(
            "zalopay", timeout_seconds=self.settings.gateway_timeout_seconds
        )

    def new_reference(self, order_id: str, now: Optional[datetime] = None) -> str:
        """``app_trans_id`` must be prefixed with the transaction date as yyMMdd."""
        now = now or provider_now()
        return f"{now:%y%m%d}_{uuid.uuid4().hex[:16]}"

    def _url(self, path: str) -> str:
        return f"{self.settings.zalopay_api_url.rstrip('/')}/{path}"

    async def create_payment_request(self, context: PaymentContext) -> PaymentArtifact:
        order: Dict[str, Any] = {
            "app_id": self.settings.zalopay_app_id,
            "app_trans_id": context.reference,
            "app_user": context.user_id or "paygate",
            "app_time": int(context.created_at.timestamp() * 1000),
            "amount": self.whole_amount(context.amount),
            "item": "[]",
            "embed_data": json.dumps({"redirecturl": self.settings.zalopay_return_url}),
            "description": context.order_info or f"Payment for order #{context.order_id}",
            "bank_code": context.bank_code or "",
            "callback_url": self.settings.zalopay_callback_url,
        }
        order["mac"] = self.signer.sign(Provider.ZALOPAY, Operation.CREATE, order)

        response = await self.http.post("create", self._url("createorder"), data=order)
        return_code = _return_code(response.get("return_code"))
        if return_code != ZALOPAY_SUCCESS or not response.get("order_url"):
            raise ProviderRejected(
                response.get("return_message") or "ZaloPay refused the order",
                provider_code=str(response.get("return_code")),
                reference=context.reference,
            )

        logger.info(
            "zalopay_order_created",
            order_id=context.order_id,
            reference=context.reference,
        )

        return PaymentArtifact(
            method=self.method,
            reference=context.reference,
            redirect_url=response["order_url"],
            qr_code_url=response.get("qr_code") or response.get("qr_code_url"),
            message=response.get("return_message"),
            raw={
                "zp_trans_token": response.get("zp_trans_token"),
                "app_time": order["app_time"],
            },
        )

    def verify_callback(self, raw_payload: Mapping[str, Any]) -> CallbackVerification:
        result = self.signer.verify(Provider.ZALOPAY, raw_payload, Operation.CALLBACK)
        fields = result.normalized_fields
        reference = fields.get("app_trans_id") or None
        if not result.valid:
            return CallbackVerification(
                valid=False, reference=reference, normalized_fields=fields, reason=result.reason
            )

        amount = parse_amount(fields.get("amount"))
        return_code = _return_code(fields.get("return_code"))
        if amount is None or return_code is None or reference is None:
            return CallbackVerification(
                valid=False,
                reference=reference,
                normalized_fields=fields,
                reason="malformed_payload",
            )

        return CallbackVerification(
            valid=True,
            reference=reference,
            outcome=(
                PaymentStatus.PAID if return_code == ZALOPAY_SUCCESS else PaymentStatus.FAILED
            ),
            amount=amount,
            transaction_id=fields.get("zp_trans_id") or None,
            provider_code=str(return_code),
            normalized_fields=fields,
        )

    async def query_status(
        self, reference: str, created_at: Optional[datetime] = None
    ) -> RemoteStatus:
        body: Dict[str, Any] = {
            "app_id": self.settings.zalopay_app_id,
            "app_trans_id": reference,
        }
        body["mac"] = self.signer.sign(Provider.ZALOPAY, Operation.QUERY, body)

        response = await self.http.query("query", self._url("getstatusbyapptransid"), data=body)
        return_code = _return_code(response.get("return_code"))
        zp_trans_id = response.get("zp_trans_id")

        return RemoteStatus(
            reference=reference,
            outcome=ZALOPAY_QUERY_OUTCOMES.get(return_code) if return_code is not None else None,
            amount=parse_amount(response.get("amount")),
            transaction_id=str(zp_trans_id) if zp_trans_id else None,
            provider_code=str(response.get("return_code")),
            raw=response,
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        timestamp = _epoch_millis()
        body: Dict[str, Any] = {
            "app_id": self.settings.zalopay_app_id,
            "m_refund_id": (
                f"{provider_now():%y%m%d}_{self.settings.zalopay_app_id}_"
                f"{request.request_id or uuid.uuid4().hex[:12]}"
            ),
            "zp_trans_id": request.transaction_id or "",
            "amount": self.whole_amount(request.amount),
            "timestamp": timestamp,
            "description": request.reason,
        }
        body["mac"] = self.signer.sign(Provider.ZALOPAY, Operation.REFUND, body)

        response = await self.http.post("refund", self._url("partialrefund"), data=body)
        return_code = _return_code(response.get("return_code"))
        if return_code != ZALOPAY_SUCCESS:
            raise ProviderRejected(
                response.get("return_message") or "ZaloPay refund not confirmed",
                provider_code=str(response.get("return_code")),
                reference=request.reference,
            )

        return RefundResult(
            reference=request.reference,
            amount=request.amount,
            refund_id=str(response.get("refund_id") or body["m_refund_id"]),
            provider_code=str(return_code),
            message=response.get("return_message"),
            raw=response,
        )

    def acknowledge(self, kind: AckKind, reason: Optional[str] = None) -> Acknowledgment:
        if kind is AckKind.SUCCESS:
            return Acknowledgment(200, {"return_code": 1, "return_message": "success"})
        if kind is AckKind.REJECT:
            return Acknowledgment(
                200, {"return_code": -1, "return_message": reason or "rejected"}
            )
        # ZaloPay redelivers on return_code 0
        return Acknowledgment(500, {"return_code": 0, "return_message": "retry"})

    async def aclose(self) -> None:
        await self.http.aclose()
