"""
Health check endpoints for readiness/liveness probes.

Checks:
- Database connectivity
- Provider circuit breaker state
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

if TYPE_CHECKING:
    from paygate.integrations.registry import GatewayRegistry

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Provider circuit breaker report
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: Optional["GatewayRegistry"] = None,
    ):
        self.session_factory = session_factory
        self.gateways = gateways

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    def check_gateways(self) -> Dict[str, Any]:
        """
        Report circuit breaker state per provider.

        An open circuit degrades the service but does not make it unready:
        callbacks and COD keep working.
        """
        circuits: Dict[str, str] = {}
        if self.gateways is not None:
            for method in self.gateways.methods:
                http = getattr(self.gateways.get(method), "http", None)
                if http is not None:
                    circuits[method.value] = http.circuit_breaker.state

        degraded = any(state == "open" for state in circuits.values())
        return {
            "status": "degraded" if degraded else "healthy",
            "service": "gateways",
            "circuits": circuits,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        checks["gateways"] = self.check_gateways()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe endpoint."""
        return await self.check_all()
