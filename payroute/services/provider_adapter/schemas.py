"""Uniform request/response envelopes shared by every provider.

Amounts are integers in the currency's minor unit. These shapes are the same
whichever provider handled a call; provider-specific payloads never leak past
a provider implementation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCESS = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class CaptureMethod(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class PaymentMethodType(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    VIRTUAL_ACCOUNT = "virtual_account"
    EWALLET = "ewallet"
    QR_CODE = "qr_code"
    UPI = "upi"
    NETBANKING = "netbanking"
    DIRECT_DEBIT = "direct_debit"


class NextAction(BaseModel):
    """Further user interaction needed to finish a payment (3DS, redirect)."""

    type: str
    redirect_url: str | None = None
    client_secret: str | None = None


class ChargeRequest(BaseModel):
    customer_id: str = ""
    amount: int = 0
    currency: str = ""
    payment_method: str = ""
    description: str = ""
    capture_method: CaptureMethod = CaptureMethod.AUTOMATIC
    return_url: str | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChargeResponse(BaseModel):
    id: str
    customer_id: str = ""
    amount: int
    currency: str
    status: PaymentStatus
    payment_method: str = ""
    description: str = ""
    provider_name: str = ""
    provider_charge_id: str = ""
    capture_method: CaptureMethod = CaptureMethod.AUTOMATIC
    captured_amount: int = 0
    next_action: NextAction | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class RefundRequest(BaseModel):
    payment_id: str = ""
    amount: int = 0
    currency: str = ""
    reason: str = ""
    idempotency_key: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RefundResponse(BaseModel):
    id: str
    payment_id: str
    amount: int
    currency: str = ""
    status: str = "succeeded"
    reason: str = ""
    provider_name: str = ""
    provider_refund_id: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class ThreeDSecureSession(BaseModel):
    payment_id: str
    client_secret: str | None = None
    redirect_url: str | None = None
    status: str


class Plan(BaseModel):
    id: str = ""
    name: str
    amount: int
    currency: str
    interval: str = "month"
    interval_count: int = 1
    metadata: dict[str, Any] = Field(default_factory=dict)


class Subscription(BaseModel):
    id: str
    customer_id: str
    plan_id: str
    status: str
    quantity: int = 1
    cancel_at_period_end: bool = False
    provider_name: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    canceled_at: datetime | None = None


class CreateSubscriptionRequest(BaseModel):
    customer_id: str
    plan_id: str
    quantity: int = 1
    payment_method: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateSubscriptionRequest(BaseModel):
    plan_id: str | None = None
    quantity: int | None = None
    metadata: dict[str, Any] | None = None


class CancelSubscriptionRequest(BaseModel):
    cancel_at_period_end: bool = False
    reason: str = ""


class Dispute(BaseModel):
    id: str
    transaction_id: str
    customer_id: str = ""
    amount: int
    currency: str
    reason: str = ""
    status: str = "open"
    provider_name: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class CreateDisputeRequest(BaseModel):
    transaction_id: str
    customer_id: str = ""
    amount: int
    currency: str
    reason: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateDisputeRequest(BaseModel):
    status: str | None = None
    metadata: dict[str, Any] | None = None


class SubmitEvidenceRequest(BaseModel):
    type: str
    description: str = ""
    files: list[str] = Field(default_factory=list)


class Evidence(BaseModel):
    id: str
    dispute_id: str
    type: str
    description: str = ""
    files: list[str] = Field(default_factory=list)
    submitted_at: datetime = Field(default_factory=_now)


class DisputeStats(BaseModel):
    total: int = 0
    open: int = 0
    won: int = 0
    lost: int = 0
    canceled: int = 0


class Customer(BaseModel):
    id: str
    email: str = ""
    name: str = ""
    phone: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class CreateCustomerRequest(BaseModel):
    email: str = ""
    name: str = ""
    phone: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateCustomerRequest(BaseModel):
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    metadata: dict[str, Any] | None = None


class Invoice(BaseModel):
    id: str
    customer_id: str
    amount: int
    currency: str
    status: str = "open"
    description: str = ""
    invoice_url: str | None = None
    provider_name: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class CreateInvoiceRequest(BaseModel):
    customer_id: str
    amount: int
    currency: str
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class ListInvoicesRequest(BaseModel):
    customer_id: str | None = None
    status: str | None = None
    limit: int = 50


class Payout(BaseModel):
    id: str
    amount: int
    currency: str
    destination: str
    channel: str = ""
    status: str = "pending"
    provider_name: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class CreatePayoutRequest(BaseModel):
    amount: int
    currency: str
    destination: str
    channel: str = ""
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class ListPayoutsRequest(BaseModel):
    status: str | None = None
    limit: int = 50


class PayoutChannel(BaseModel):
    code: str
    name: str
    currency: str
    minimum_amount: int = 0
    maximum_amount: int | None = None


class Balance(BaseModel):
    currency: str
    available: int
    pending: int = 0
    provider_name: str = ""


class PaymentSession(BaseModel):
    id: str
    amount: int
    currency: str
    status: PaymentStatus = PaymentStatus.PENDING
    capture_method: CaptureMethod = CaptureMethod.AUTOMATIC
    customer_id: str = ""
    payment_method_id: str | None = None
    description: str = ""
    client_secret: str | None = None
    next_action: NextAction | None = None
    captured_amount: int = 0
    provider_name: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class CreatePaymentSessionRequest(BaseModel):
    amount: int
    currency: str
    customer_id: str = ""
    payment_method_id: str | None = None
    description: str = ""
    capture_method: CaptureMethod = CaptureMethod.AUTOMATIC
    return_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdatePaymentSessionRequest(BaseModel):
    amount: int | None = None
    currency: str | None = None
    description: str | None = None
    payment_method_id: str | None = None
    metadata: dict[str, Any] | None = None


class ConfirmPaymentSessionRequest(BaseModel):
    payment_method_id: str | None = None
    return_url: str | None = None


class ListPaymentSessionsRequest(BaseModel):
    customer_id: str | None = None
    status: PaymentStatus | None = None
    limit: int = 50


class PaymentMethod(BaseModel):
    id: str
    type: PaymentMethodType
    customer_id: str | None = None
    status: str = "active"
    provider_name: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class CreatePaymentMethodRequest(BaseModel):
    type: PaymentMethodType
    customer_id: str | None = None
    provider: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
