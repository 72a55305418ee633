"""
Outbound HTTP transport for provider APIs.

Implements:
- Bounded timeout on every call
- Circuit breaker per provider
- Mapping of transport failures to GatewayUnavailable
- Retry with exponential backoff for read-only calls
"""
import time
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from paygate.errors import GatewayUnavailable, ProviderRejected
from paygate.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when a provider keeps failing.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Provider name used in logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Gate a call.

        Raises:
            GatewayUnavailable: If circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.monotonic() - self.last_failure_time > self.timeout:
            self._set_state("half_open")
            self.success_count = 0
            logger.info("circuit_breaker_half_open", provider=self.name)
            return
        raise GatewayUnavailable("Circuit breaker is open", provider=self.name)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", provider=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.name,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)


class ProviderHttpClient:
    """
    JSON/form client for one provider.

    Every failure that leaves the outcome unknown (timeout, connection
    error, 5xx, unparseable body) surfaces as ``GatewayUnavailable``.
    """

    def __init__(
        self,
        provider: str,
        timeout_seconds: float = 10.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        query_max_attempts: int = 3,
        query_wait: Optional[wait_base] = None,
    ):
        self.provider = provider
        self.circuit_breaker = circuit_breaker or CircuitBreaker(provider)
        self.query_max_attempts = query_max_attempts
        self.query_wait = query_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def post(
        self,
        operation: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        POST to a provider and decode its JSON answer.

        Args:
            operation: Operation name for logs and metrics
            url: Endpoint
            json: JSON body
            data: Form body (sent instead of ``json``)

        Returns:
            Dict[str, Any]: Decoded response body

        Raises:
            GatewayUnavailable: On timeout, network error, 5xx or open circuit
            ProviderRejected: On a 4xx answer
        """
        self.circuit_breaker.before_call()
        start_time = time.time()
        status = "error"

        try:
            if data is not None:
                response = await self._client.post(
                    url, data={k: str(v) for k, v in data.items()}
                )
            else:
                response = await self._client.post(url, json=json)
            status = str(response.status_code)

            if response.status_code >= 500:
                raise GatewayUnavailable(
                    f"{self.provider} returned HTTP {response.status_code}",
                    provider=self.provider,
                    operation=operation,
                )
            if response.status_code >= 400:
                self.circuit_breaker.on_success()
                raise ProviderRejected(
                    f"{self.provider} rejected {operation} with HTTP {response.status_code}",
                    provider_code=str(response.status_code),
                    provider=self.provider,
                )

            try:
                body = response.json()
            except ValueError:
                raise GatewayUnavailable(
                    f"{self.provider} returned a non-JSON body",
                    provider=self.provider,
                    operation=operation,
                )
            if not isinstance(body, dict):
                raise GatewayUnavailable(
                    f"{self.provider} returned an unexpected body",
                    provider=self.provider,
                    operation=operation,
                )

            self.circuit_breaker.on_success()
            return body

        except httpx.TimeoutException as e:
            status = "timeout"
            self.circuit_breaker.on_failure()
            logger.error(
                "gateway_timeout", provider=self.provider, operation=operation, error=str(e)
            )
            raise GatewayUnavailable(
                f"{self.provider} timed out", provider=self.provider, operation=operation
            )

        except httpx.HTTPError as e:
            self.circuit_breaker.on_failure()
            logger.error(
                "gateway_transport_error",
                provider=self.provider,
                operation=operation,
                error=str(e),
            )
            raise GatewayUnavailable(
                f"{self.provider} unreachable", provider=self.provider, operation=operation
            )

        except GatewayUnavailable:
            self.circuit_breaker.on_failure()
            raise

        finally:
            metrics.record_gateway_call(
                self.provider, operation, status, time.time() - start_time
            )

    async def query(
        self,
        operation: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """POST a read-only request, retrying while the provider is unavailable."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(GatewayUnavailable),
            stop=stop_after_attempt(self.query_max_attempts),
            wait=self.query_wait,
            reraise=True,
        ):
            with attempt:
                return await self.post(operation, url, json=json, data=data)
        raise GatewayUnavailable(f"{self.provider} query exhausted", provider=self.provider)

    async def aclose(self) -> None:
        await self._client.aclose()
