"""
Gateway adapter contract.

Every payment method exposes the same four capabilities over a different
wire protocol: create a payment request, verify a callback, query status
and refund. Adapters also own the provider's acknowledgment shape, since
providers keep redelivering until they see their own success answer.
"""
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from paygate.config import Settings, get_settings
from paygate.enums import PaymentMethod, PaymentStatus

# Providers stamp request times in Vietnam local time
PROVIDER_TZ = timezone(timedelta(hours=7))


def provider_now() -> datetime:
    return datetime.now(PROVIDER_TZ)


def parse_amount(value: Any) -> Optional[Decimal]:
    """Amount from a provider payload, or None when it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


@dataclass(frozen=True)
class PaymentContext:
    """What an adapter needs to build an outbound payment request."""

    order_id: str
    reference: str
    amount: Decimal
    order_info: str = ""
    user_id: Optional[str] = None
    client_ip: str = "127.0.0.1"
    bank_code: Optional[str] = None
    locale: str = "vn"
    created_at: datetime = field(default_factory=provider_now)


@dataclass(frozen=True)
class PaymentArtifact:
    """Client-facing result of an initiation (redirect URL, QR, deeplink or message)."""

    method: PaymentMethod
    reference: str
    redirect_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    deeplink: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "reference": self.reference,
            "redirect_url": self.redirect_url,
            "qr_code_url": self.qr_code_url,
            "deeplink": self.deeplink,
            "message": self.message,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PaymentArtifact":
        return cls(
            method=PaymentMethod(data["method"]),
            reference=data["reference"],
            redirect_url=data.get("redirect_url"),
            qr_code_url=data.get("qr_code_url"),
            deeplink=data.get("deeplink"),
            message=data.get("message"),
            raw=dict(data.get("raw") or {}),
        )


@dataclass(frozen=True)
class CallbackVerification:
    """
    A verified (or rejected) callback, mapped to local terms.

    ``outcome`` is PAID or FAILED for a valid callback and None otherwise.
    """

    valid: bool
    reference: Optional[str] = None
    outcome: Optional[PaymentStatus] = None
    amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    provider_code: Optional[str] = None
    normalized_fields: Dict[str, str] = field(default_factory=dict)
    reason: Optional[str] = None


@dataclass(frozen=True)
class RemoteStatus:
    """Provider's view of a payment. ``outcome`` is None while still in progress."""

    reference: str
    outcome: Optional[PaymentStatus]
    amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    provider_code: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundRequest:
    """Full refund of a confirmed payment."""

    reference: str
    amount: Decimal
    reason: str
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    actor: str = "system"
    # Merchant refund id; the same id on a retry lets the provider deduplicate
    request_id: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    """Provider-confirmed refund."""

    reference: str
    amount: Decimal
    refund_id: Optional[str] = None
    provider_code: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class AckKind(str, Enum):
    """What a callback answer asks the provider to do next."""

    SUCCESS = "success"  # Stop, processed (or duplicate)
    REJECT = "reject"  # Stop, will never be accepted
    RETRY = "retry"  # Redeliver later


@dataclass(frozen=True)
class Acknowledgment:
    """HTTP status and body to return to the provider."""

    status_code: int
    body: Dict[str, Any]


class GatewayAdapter(ABC):
    """Uniform contract over one payment method's wire protocol."""

    method: PaymentMethod
    # Artifacts built locally (no provider call) are rebuilt on every initiation
    reissue_artifacts = False

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def new_reference(self, order_id: str, now: Optional[datetime] = None) -> str:
        """Provider-facing reference for a new payment attempt."""
        return uuid.uuid4().hex[:20].upper()

    @staticmethod
    def whole_amount(amount: Decimal) -> int:
        """Amount as an integer number of VND."""
        return int(amount.to_integral_value())

    @abstractmethod
    async def create_payment_request(self, context: PaymentContext) -> PaymentArtifact:
        """
        Build, sign and submit a payment request.

        Raises:
            GatewayUnavailable: On timeout or network failure
            ProviderRejected: If the provider refuses the request
        """

    @abstractmethod
    def verify_callback(self, raw_payload: Mapping[str, Any]) -> CallbackVerification:
        """Verify a callback's signature and map the provider's result code."""

    @abstractmethod
    async def query_status(
        self, reference: str, created_at: Optional[datetime] = None
    ) -> RemoteStatus:
        """Pull the provider's current view of a payment."""

    @abstractmethod
    async def refund(self, request: RefundRequest) -> RefundResult:
        """
        Refund a confirmed payment.

        Raises:
            ProviderRejected: If the provider declines the refund
            GatewayUnavailable: On timeout or network failure
        """

    @abstractmethod
    def acknowledge(self, kind: AckKind, reason: Optional[str] = None) -> Acknowledgment:
        """
        Callback answer in the provider's shape.

        Args:
            kind: Whether the provider should stop or redeliver
            reason: Error code that caused a rejection, if any
        """

    async def aclose(self) -> None:
        """Release transport resources."""
