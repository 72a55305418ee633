"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, StrictBool, field_serializer


class CreatePaymentRequest(BaseModel):
    """
    Request schema for initiating a payment.

    Fields are deliberately loose; the router validates them together and
    reports every violation at once.
    """

    order_id: Optional[str] = Field(default=None, description="Order to pay for")
    amount: Any = Field(default=None, description="Amount in VND, must equal the order total")
    payment_method: Optional[str] = Field(
        default=None, description="VNPAY, MOMO, ZALOPAY or COD"
    )
    order_info: str = Field(default="", max_length=255, description="Shown on the provider page")
    bank_code: Optional[str] = Field(default=None, description="VNPay bank preselection")
    locale: str = Field(default="vn", description="Provider page language (vn/en)")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_id": "O1",
                    "amount": 100000,
                    "payment_method": "VNPAY",
                    "order_info": "Payment for order O1",
                }
            ]
        }
    }


class PaymentResponse(BaseModel):
    """Payment record."""

    id: str = Field(..., description="Payment ID")
    order_id: str = Field(..., description="Order ID")
    payment_method: str = Field(..., description="Payment method")
    amount: Decimal = Field(..., description="Amount in VND")
    status: str = Field(..., description="PENDING, PAID, FAILED or REFUNDED")
    reference_number: str = Field(..., description="Provider-facing reference")
    transaction_id: Optional[str] = Field(default=None, description="Provider transaction id")
    paid_at: Optional[datetime] = Field(default=None, description="Confirmation time")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")

    @classmethod
    def from_payment(cls, payment: Any) -> "PaymentResponse":
        return cls(
            id=str(payment.id),
            order_id=payment.order_id,
            payment_method=payment.payment_method,
            amount=payment.amount,
            status=payment.status,
            reference_number=payment.reference_number,
            transaction_id=payment.transaction_id,
            paid_at=payment.paid_at,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )

    @field_serializer("amount")
    def serialize_amount(self, amount: Decimal) -> str:
        return str(amount)


class ArtifactResponse(BaseModel):
    """What the client needs to complete the payment."""

    method: str
    reference: str
    redirect_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    deeplink: Optional[str] = None
    message: Optional[str] = None


class CreatePaymentResponse(BaseModel):
    """Response schema for payment initiation."""

    payment: PaymentResponse
    artifact: ArtifactResponse
    reused: bool = Field(..., description="True if an open PENDING payment was reused")


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    reason: str = Field(default="Customer refund", max_length=255, description="Refund reason")


class RefundResponse(BaseModel):
    """Response schema for refund."""

    payment: PaymentResponse
    refund_id: Optional[str] = Field(default=None, description="Provider refund id")
    provider_code: Optional[str] = Field(default=None, description="Provider result code")


class ReconcileResponse(BaseModel):
    """Response schema for a manual provider status pull."""

    payment: PaymentResponse
    remote_outcome: Optional[str] = Field(
        default=None, description="PAID/FAILED, or null while the provider is still processing"
    )
    provider_code: Optional[str] = None
    applied: bool = Field(..., description="True if the pull changed the payment")


class CodConfirmationRequest(BaseModel):
    """Staff confirmation of cash collected on delivery."""

    reference: str = Field(..., min_length=1, description="COD payment reference")
    collected: StrictBool = Field(..., description="Whether the cash was collected")
    amount: Decimal = Field(..., gt=0, description="Amount collected")
    confirmed_by: Optional[str] = Field(
        default=None, description="Staff id (defaults to X-Actor-Id)"
    )


class CodConfirmationResponse(BaseModel):
    """Response schema for a COD confirmation."""

    payment: PaymentResponse
    applied: bool


class ErrorResponse(BaseModel):
    """Error body for every PaymentGatewayError."""

    error: str
    message: str
    violations: Optional[List[str]] = None
    context: Optional[Dict[str, str]] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Dict[str, Any] = Field(..., description="Individual component checks")
