"""Payment provider integrations."""
from .base import (
    Acknowledgment,
    AckKind,
    CallbackVerification,
    GatewayAdapter,
    PaymentArtifact,
    PaymentContext,
    RefundRequest,
    RefundResult,
    RemoteStatus,
)
from .cod import CODAdapter
from .http import CircuitBreaker, ProviderHttpClient
from .momo import MoMoAdapter
from .registry import GatewayRegistry
from .vnpay import VNPayAdapter
from .zalopay import ZaloPayAdapter

__all__ = [
    "Acknowledgment",
    "AckKind",
    "CallbackVerification",
    "CircuitBreaker",
    "CODAdapter",
    "GatewayAdapter",
    "GatewayRegistry",
    "MoMoAdapter",
    "PaymentArtifact",
    "PaymentContext",
    "ProviderHttpClient",
    "RefundRequest",
    "RefundResult",
    "RemoteStatus",
    "VNPayAdapter",
    "ZaloPayAdapter",
]
