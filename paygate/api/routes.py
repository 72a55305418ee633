"""
API routes for payment initiation, refunds and provider callbacks.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from paygate.core.router import InitiationRequest
from paygate.enums import PaymentMethod
from paygate.errors import ValidationError

from .dependencies import Services, audit_context, get_actor, get_services
from .schemas import (
    ArtifactResponse,
    CodConfirmationRequest,
    CodConfirmationResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    ErrorResponse,
    HealthCheckResponse,
    PaymentResponse,
    ReconcileResponse,
    RefundRequest,
    RefundResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@payment_router.post(
    "",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Initiate a payment",
    description=(
        "Validate against the order, record a PENDING payment "
        "and return the checkout artifact"
    ),
)
async def create_payment(
    body: CreatePaymentRequest,
    request: Request,
    services: Services = Depends(get_services),
) -> CreatePaymentResponse:
    """
    Initiate a payment.

    Repeating the request while the payment is PENDING returns the same payment.
    """
    logger.info(
        "api_create_payment_request",
        order_id=body.order_id,
        payment_method=body.payment_method,
    )

    result = await services.router.initiate(
        InitiationRequest(
            order_id=body.order_id,
            amount=body.amount,
            payment_method=body.payment_method,
            order_info=body.order_info,
            bank_code=body.bank_code,
            locale=body.locale,
            client_ip=request.client.host if request.client else "127.0.0.1",
        ),
        actor=get_actor(request),
        context=audit_context(request),
    )

    artifact = result.artifact
    return CreatePaymentResponse(
        payment=PaymentResponse.from_payment(result.payment),
        artifact=ArtifactResponse(
            method=artifact.method.value,
            reference=artifact.reference,
            redirect_url=artifact.redirect_url,
            qr_code_url=artifact.qr_code_url,
            deeplink=artifact.deeplink,
            message=artifact.message,
        ),
        reused=result.reused,
    )


@payment_router.post(
    "/cod/confirm",
    response_model=CodConfirmationResponse,
    responses=ERROR_RESPONSES,
    summary="Confirm cash collection",
    description="Staff confirmation that settles a COD payment",
)
async def confirm_cod(
    body: CodConfirmationRequest,
    request: Request,
    services: Services = Depends(get_services),
) -> CodConfirmationResponse:
    """Confirm (or deny) collection of a COD payment."""
    confirmed_by = body.confirmed_by or get_actor(request)
    if not confirmed_by:
        raise ValidationError(["confirmed_by or X-Actor-Id is required"])

    result = await services.reconciliation.confirm_cod(
        reference=body.reference,
        collected=body.collected,
        amount=body.amount,
        confirmed_by=confirmed_by,
        context=audit_context(request),
    )
    return CodConfirmationResponse(
        payment=PaymentResponse.from_payment(result.payment), applied=result.applied
    )


@payment_router.get(
    "/order/{order_id}",
    response_model=list[PaymentResponse],
    summary="List payments for an order",
)
async def list_order_payments(
    order_id: str,
    services: Services = Depends(get_services),
) -> list[PaymentResponse]:
    """All payment attempts for an order, oldest first."""
    payments = await services.reconciliation.list_payments_for_order(order_id)
    return [PaymentResponse.from_payment(p) for p in payments]


@payment_router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    responses=ERROR_RESPONSES,
    summary="Get payment",
)
async def get_payment(
    payment_id: str,
    services: Services = Depends(get_services),
) -> PaymentResponse:
    """Get payment by ID."""
    payment = await services.reconciliation.get_payment(payment_id)
    return PaymentResponse.from_payment(payment)


@payment_router.post(
    "/{payment_id}/refund",
    response_model=RefundResponse,
    responses=ERROR_RESPONSES,
    summary="Refund a payment",
    description="Full refund of a PAID electronic payment",
)
async def refund_payment(
    payment_id: str,
    request: Request,
    body: Optional[RefundRequest] = None,
    services: Services = Depends(get_services),
) -> RefundResponse:
    """Refund a payment through its provider."""
    body = body or RefundRequest()
    outcome = await services.refunds.refund(
        payment_id,
        reason=body.reason,
        actor=get_actor(request) or "system",
        context=audit_context(request),
    )
    return RefundResponse(
        payment=PaymentResponse.from_payment(outcome.payment),
        refund_id=outcome.result.refund_id,
        provider_code=outcome.result.provider_code,
    )


@payment_router.post(
    "/{payment_id}/reconcile",
    response_model=ReconcileResponse,
    responses=ERROR_RESPONSES,
    summary="Pull status from the provider",
    description="Manual reconciliation of one payment against the provider's status API",
)
async def reconcile_payment(
    payment_id: str,
    request: Request,
    services: Services = Depends(get_services),
) -> ReconcileResponse:
    """Query the provider and apply a definitive outcome."""
    result = await services.reconciliation.reconcile_with_provider(
        payment_id,
        actor=get_actor(request),
        context=audit_context(request),
    )
    return ReconcileResponse(
        payment=PaymentResponse.from_payment(result.payment),
        remote_outcome=result.remote.outcome.value if result.remote.outcome else None,
        provider_code=result.remote.provider_code,
        applied=result.applied,
    )


async def _json_payload(request: Request) -> Dict[str, Any]:
    """JSON body as a dict; anything else becomes an empty payload that fails verification."""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("webhook_body_not_json", path=request.url.path)
        return {}
    return payload if isinstance(payload, dict) else {}


def _ack_response(ack: Any) -> JSONResponse:
    return JSONResponse(status_code=ack.status_code, content=ack.body)


@webhook_router.api_route(
    "/vnpay",
    methods=["GET", "POST"],
    summary="VNPay IPN",
    description="VNPay delivers the IPN as query parameters",
)
async def vnpay_ipn(
    request: Request,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Handle VNPay IPN."""
    ack = await services.reconciliation.acknowledge_callback(
        PaymentMethod.VNPAY, dict(request.query_params), context=audit_context(request)
    )
    return _ack_response(ack)


@webhook_router.post("/momo", summary="MoMo IPN")
async def momo_ipn(
    request: Request,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Handle MoMo IPN."""
    ack = await services.reconciliation.acknowledge_callback(
        PaymentMethod.MOMO, await _json_payload(request), context=audit_context(request)
    )
    return _ack_response(ack)


@webhook_router.post("/zalopay", summary="ZaloPay callback")
async def zalopay_callback(
    request: Request,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Handle ZaloPay callback."""
    ack = await services.reconciliation.acknowledge_callback(
        PaymentMethod.ZALOPAY, await _json_payload(request), context=audit_context(request)
    )
    return _ack_response(ack)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check health of all system dependencies",
)
async def health(services: Services = Depends(get_services)) -> JSONResponse:
    """Health check endpoint."""
    result = await services.health.check_all()
    status_code = status.HTTP_200_OK
    if result["status"] != "healthy":
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=result)


@monitoring_router.get("/health/live", summary="Liveness probe")
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe."""
    return await services.health.liveness()


@monitoring_router.get("/health/ready", summary="Readiness probe")
async def readiness(services: Services = Depends(get_services)) -> JSONResponse:
    """Readiness probe."""
    result = await services.health.readiness()
    status_code = status.HTTP_200_OK
    if result["status"] != "healthy":
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=result)


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose metrics for Prometheus scraping",
)
async def prometheus_metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
