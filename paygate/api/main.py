"""
Main FastAPI application.

Payment gateway reconciliation API with:
- CORS configuration
- Error mapping for the payment error hierarchy
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from paygate import __version__
from paygate.config import Settings, get_settings
from paygate.database.connection import init_db
from paygate.errors import PaymentGatewayError
from paygate.monitoring.logging import setup_logging

from .dependencies import Services, build_services
from .routes import monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)

STATUS_BY_ERROR_CODE: Dict[str, int] = {
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "signature_invalid": status.HTTP_400_BAD_REQUEST,
    "amount_mismatch": status.HTTP_409_CONFLICT,
    "order_not_found": status.HTTP_404_NOT_FOUND,
    "payment_not_found": status.HTTP_404_NOT_FOUND,
    "gateway_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "unsupported_method": status.HTTP_400_BAD_REQUEST,
    "refund_not_allowed": status.HTTP_409_CONFLICT,
    "provider_rejected": status.HTTP_502_BAD_GATEWAY,
    "illegal_transition": status.HTTP_409_CONFLICT,
    "payment_already_terminal": status.HTTP_409_CONFLICT,
    "reconciliation_integrity_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Application settings
        services: Pre-built services (tests inject their own database and transports)

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            methods=[m.value for m in services.gateways.methods],
        )

        if services.engine is not None:
            try:
                await init_db(services.engine)
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise

        yield

        logger.info("application_shutdown")
        try:
            await services.aclose()
            logger.info("connections_closed")
        except Exception as e:
            logger.error("shutdown_error", error=str(e))

    app = FastAPI(
        title="Payment Gateway Reconciliation",
        description=(
            "Payment initiation and callback reconciliation for VNPay, MoMo, ZaloPay "
            "and cash on delivery. Callbacks are verified, amount-checked and applied "
            "exactly once."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = services

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentGatewayError)
    async def payment_error_handler(request: Request, exc: PaymentGatewayError) -> JSONResponse:
        """Map payment errors to HTTP status codes."""
        status_code = STATUS_BY_ERROR_CODE.get(
            exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "api_payment_error",
            error_code=exc.code,
            error=exc.message,
            status_code=status_code,
            path=request.url.path,
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    # Include routers
    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "payment_methods": [m.value for m in services.gateways.methods],
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "paygate.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
