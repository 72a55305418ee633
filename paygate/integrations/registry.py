"""Lookup of gateway adapters by payment method."""
from typing import Dict, Iterable, Optional

import httpx
from tenacity.wait import wait_base

from paygate.config import Settings, get_settings
from paygate.enums import PaymentMethod
from paygate.errors import UnsupportedMethod
from paygate.integrations.base import GatewayAdapter
from paygate.integrations.cod import CODAdapter
from paygate.integrations.http import CircuitBreaker, ProviderHttpClient
from paygate.integrations.momo import MoMoAdapter
from paygate.integrations.vnpay import VNPayAdapter
from paygate.integrations.zalopay import ZaloPayAdapter
from paygate.signing import SignatureEngine, SigningKeys


class GatewayRegistry:
    """Maps each supported payment method to its adapter."""

    def __init__(self, adapters: Iterable[GatewayAdapter]):
        self._adapters: Dict[PaymentMethod, GatewayAdapter] = {
            adapter.method: adapter for adapter in adapters
        }

    def get(self, method: PaymentMethod | str) -> GatewayAdapter:
        """
        Adapter for a payment method.

        Raises:
            UnsupportedMethod: If the method is unknown or not configured
        """
        try:
            return self._adapters[PaymentMethod(method)]
        except (KeyError, ValueError):
            raise UnsupportedMethod(f"Unsupported payment method: {method}", method=str(method))

    @property
    def methods(self) -> list[PaymentMethod]:
        return list(self._adapters)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        signer: Optional[SignatureEngine] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        query_wait: Optional[wait_base] = None,
    ) -> "GatewayRegistry":
        """
        Build every adapter with a shared signature engine.

        Args:
            settings: Application settings
            signer: Signature engine (built from settings when omitted)
            transport: httpx transport override for all provider clients
            query_wait: tenacity wait strategy for status queries
        """
        settings = settings or get_settings()
        signer = signer or SignatureEngine(SigningKeys.from_settings(settings))

        def client(provider: str) -> ProviderHttpClient:
            return ProviderHttpClient(
                provider,
                timeout_seconds=settings.gateway_timeout_seconds,
                circuit_breaker=CircuitBreaker(
                    provider,
                    failure_threshold=settings.circuit_breaker_failure_threshold,
                    timeout=settings.circuit_breaker_reset_seconds,
                ),
                transport=transport,
                query_max_attempts=settings.gateway_query_max_attempts,
                query_wait=query_wait,
            )

        return cls(
            [
                VNPayAdapter(settings, signer, client("vnpay")),
                MoMoAdapter(settings, signer, client("momo")),
                ZaloPayAdapter(settings, signer, client("zalopay")),
                CODAdapter(settings),
            ]
        )
