"""
Service wiring for the API.

``build_services`` is the composition root: it creates the engine, the
adapter registry and every service once per application and hands them
to the routes through ``app.state``.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from paygate.config import Settings
from paygate.core.reconciliation import ReconciliationService
from paygate.core.refunds import RefundOrchestrator
from paygate.core.router import PaymentRequestRouter
from paygate.core.stores import AuditSink
from paygate.database.connection import build_session_factory, create_engine_from_settings
from paygate.integrations.registry import GatewayRegistry
from paygate.monitoring.health import HealthCheck


@dataclass
class Services:
    """Per-application service objects."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    gateways: GatewayRegistry
    reconciliation: ReconciliationService
    refunds: RefundOrchestrator
    router: PaymentRequestRouter
    health: HealthCheck
    engine: Optional[AsyncEngine] = None

    async def aclose(self) -> None:
        await self.gateways.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_services(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateways: Optional[GatewayRegistry] = None,
    audit: Optional[AuditSink] = None,
) -> Services:
    """
    Create every service for one application instance.

    Args:
        settings: Application settings
        session_factory: Session factory (a new engine is created when omitted)
        gateways: Adapter registry (built from settings when omitted)
        audit: Audit sink (SQL audit log when omitted)
    """
    engine: Optional[AsyncEngine] = None
    if session_factory is None:
        engine = create_engine_from_settings(settings)
        session_factory = build_session_factory(engine)
    gateways = gateways or GatewayRegistry.from_settings(settings)

    reconciliation = ReconciliationService(
        session_factory, gateways, audit=audit, settings=settings
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        gateways=gateways,
        reconciliation=reconciliation,
        refunds=RefundOrchestrator(reconciliation),
        router=PaymentRequestRouter(reconciliation, settings=settings),
        health=HealthCheck(session_factory, gateways),
        engine=engine,
    )


def get_services(request: Request) -> Services:
    """Dependency returning the application's services."""
    return request.app.state.services


def audit_context(request: Request) -> Dict[str, Any]:
    """Request details recorded with audit entries."""
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "request_id": getattr(request.state, "request_id", None),
    }


def get_actor(request: Request) -> Optional[str]:
    """Caller identity from ``X-Actor-Id``; authentication happens upstream."""
    return request.headers.get("x-actor-id")
