"""
VNPay adapter.

Checkout is a signed redirect URL (no outbound call). Status queries and
refunds go through the merchant API (``querydr`` / ``refund``).
"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import structlog

from paygate.config import Settings
from paygate.enums import PaymentMethod, PaymentStatus
from paygate.errors import ProviderRejected
from paygate.integrations.base import (
    PROVIDER_TZ,
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

VNPAY_VERSION = "2.1.0"
VNPAY_DATE_FORMAT = "%Y%m%d%H%M%S"
VNPAY_SUCCESS = "00"

# vnp_TransactionStatus values returned by querydr
VNPAY_QUERY_OUTCOMES = {
    "00": PaymentStatus.PAID,
    "02": PaymentStatus.FAILED,
}

# IPN answer codes
VNPAY_ACK_CODES = {
    "payment_not_found": ("01", "Order not found"),
    "order_not_found": ("01", "Order not found"),
    "payment_already_terminal": ("02", "Order already confirmed"),
    "illegal_transition": ("02", "Order already confirmed"),
    "amount_mismatch": ("04", "Invalid amount"),
    "signature_invalid": ("97", "Invalid signature"),
}


def format_vnpay_date(value: datetime) -> str:
    return value.astimezone(PROVIDER_TZ).strftime(VNPAY_DATE_FORMAT)


class VNPayAdapter(GatewayAdapter):
    """VNPay payment gateway (HMAC-SHA512 over sorted ``vnp_*`` fields)."""

    method = PaymentMethod.VNPAY
    reissue_artifacts = True

    def __init__(
        self,
        settings: Optional[Settings] = None,
        signer: Optional[SignatureEngine] = None,
        http: Optional[ProviderHttpClient] = None,
    ):
        super().__init__(settings)
        self.signer = signer or SignatureEngine()
        self.http = http or ProviderHttpClient(
            "vnpay", timeout_seconds=self.settings.gateway_timeout_seconds
        )

    @staticmethod
    def minor_amount(amount: Decimal) -> int:
        """VNPay amounts are sent multiplied by 100."""
        return int((amount * 100).to_integral_value())

    async def create_payment_request(self, context: PaymentContext) -> PaymentArtifact:
        created = context.created_at
        expires = created + timedelta(minutes=self.settings.vnpay_payment_ttl_minutes)

        params: Dict[str, Any] = {
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.settings.vnpay_tmn_code,
            "vnp_Locale": context.locale or "vn",
            "vnp_CurrCode": self.settings.currency,
            "vnp_TxnRef": context.reference,
            "vnp_OrderInfo": context.order_info or f"Payment for order {context.order_id}",
            "vnp_OrderType": "other",
            "vnp_Amount": self.minor_amount(context.amount),
            "vnp_ReturnUrl": self.settings.vnpay_return_url,
            "vnp_IpAddr": context.client_ip,
            "vnp_CreateDate": format_vnpay_date(created),
            "vnp_ExpireDate": format_vnpay_date(expires),
        }
        if context.bank_code:
            params["vnp_BankCode"] = context.bank_code

        params["vnp_SecureHash"] = self.signer.sign(Provider.VNPAY, Operation.CREATE, params)
        redirect_url = f"{self.settings.vnpay_payment_url}?{urlencode(params)}"

        logger.info(
            "vnpay_payment_url_created",
            order_id=context.order_id,
            reference=context.reference,
            expires_at=params["vnp_ExpireDate"],
        )

        return PaymentArtifact(
            method=self.method,
            reference=context.reference,
            redirect_url=redirect_url,
            raw={
                "vnp_CreateDate": params["vnp_CreateDate"],
                "vnp_ExpireDate": params["vnp_ExpireDate"],
            },
        )

    def verify_callback(self, raw_payload: Mapping[str, Any]) -> CallbackVerification:
        result = self.signer.verify(Provider.VNPAY, raw_payload, Operation.CALLBACK)
        fields = result.normalized_fields
        reference = fields.get("vnp_TxnRef") or None
        if not result.valid:
            return CallbackVerification(
                valid=False,
                reference=reference,
                normalized_fields=fields,
                reason=result.reason,
            )

        minor = parse_amount(fields.get("vnp_Amount"))
        response_code = fields.get("vnp_ResponseCode")
        if minor is None or response_code is None or reference is None:
            return CallbackVerification(
                valid=False,
                reference=reference,
                normalized_fields=fields,
                reason="malformed_payload",
            )

        transaction_status = fields.get("vnp_TransactionStatus")
        succeeded = response_code == VNPAY_SUCCESS and transaction_status in (
            None,
            VNPAY_SUCCESS,
        )
        return CallbackVerification(
            valid=True,
            reference=reference,
            outcome=PaymentStatus.PAID if succeeded else PaymentStatus.FAILED,
            amount=minor / 100,
            transaction_id=fields.get("vnp_TransactionNo") or None,
            provider_code=response_code,
            normalized_fields=fields,
        )

    def _merchant_request(
        self,
        command: str,
        reference: str,
        when: datetime,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = provider_now()
        return {
            "vnp_RequestId": request_id or uuid.uuid4().hex[:32],
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": command,
            "vnp_TmnCode": self.settings.vnpay_tmn_code,
            "vnp_TxnRef": reference,
            "vnp_TransactionDate": format_vnpay_date(when),
            "vnp_CreateDate": format_vnpay_date(now),
            "vnp_IpAddr": "127.0.0.1",
        }

    async def query_status(
        self, reference: str, created_at: Optional[datetime] = None
    ) -> RemoteStatus:
        body = self._merchant_request("querydr", reference, created_at or provider_now())
        body["vnp_OrderInfo"] = f"Query transaction {reference}"
        body["vnp_SecureHash"] = self.signer.sign(Provider.VNPAY, Operation.QUERY, body)

        response = await self.http.query("querydr", self.settings.vnpay_api_url, json=body)
        response_code = str(response.get("vnp_ResponseCode", ""))
        if response_code != VNPAY_SUCCESS:
            raise ProviderRejected(
                response.get("vnp_Message") or "VNPay query failed",
                provider_code=response_code,
                reference=reference,
            )

        transaction_status = str(response.get("vnp_TransactionStatus", ""))
        minor = parse_amount(response.get("vnp_Amount"))
        return RemoteStatus(
            reference=reference,
            outcome=VNPAY_QUERY_OUTCOMES.get(transaction_status),
            amount=minor / 100 if minor is not None else None,
            transaction_id=response.get("vnp_TransactionNo"),
            provider_code=transaction_status,
            raw=response,
        )

    async def refund(self, request: RefundRequest) -> RefundResult:
        body = self._merchant_request(
            "refund",
            request.reference,
            request.paid_at or provider_now(),
            request_id=request.request_id,
        )
        body.update(
            {
                "vnp_TransactionType": "02",  # full refund
                "vnp_Amount": self.minor_amount(request.amount),
                "vnp_OrderInfo": request.reason,
                "vnp_TransactionNo": request.transaction_id or "",
                "vnp_CreateBy": request.actor,
            }
        )
        body["vnp_SecureHash"] = self.signer.sign(Provider.VNPAY, Operation.REFUND, body)

        response = await self.http.post("refund", self.settings.vnpay_api_url, json=body)
        response_code = str(response.get("vnp_ResponseCode", ""))
        if response_code != VNPAY_SUCCESS:
            raise ProviderRejected(
                response.get("vnp_Message") or "VNPay refund declined",
                provider_code=response_code,
                reference=request.reference,
            )

        return RefundResult(
            reference=request.reference,
            amount=request.amount,
            refund_id=response.get("vnp_TransactionNo"),
            provider_code=response_code,
            message=response.get("vnp_Message"),
            raw=response,
        )

    def acknowledge(self, kind: AckKind, reason: Optional[str] = None) -> Acknowledgment:
        if kind is AckKind.SUCCESS:
            return Acknowledgment(200, {"RspCode": "00", "Message": "Confirm Success"})
        if kind is AckKind.REJECT:
            code, message = VNPAY_ACK_CODES.get(reason or "", ("99", "Unknown error"))
            return Acknowledgment(200, {"RspCode": code, "Message": message})
        # VNPay redelivers on 99
        return Acknowledgment(500, {"RspCode": "99", "Message": "Unknown error"})

    async def aclose(self) -> None:
        await self.http.aclose()
