"""API request/response schemas for orchestrator endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from payroute.services.provider_adapter.schemas import CaptureMethod


class ChargeCreateRequest(BaseModel):
    """Charge payload accepted by `POST /payments/charges`."""

    customer_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    payment_method: str = Field(min_length=1)
    description: str = ""
    capture_method: CaptureMethod = CaptureMethod.AUTOMATIC
    return_url: str | None = None
    idempotency_key: str | None = Field(default=None, min_length=5)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RefundCreateRequest(BaseModel):
    payment_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    reason: str = ""
    idempotency_key: str | None = Field(default=None, min_length=5)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentResponse(BaseModel):
    """Local view of one payment."""

    payment_id: str
    customer_id: str
    amount: int
    currency: str
    status: str
    provider_name: str
    provider_charge_id: str
    capture_method: str
    captured_amount: int
    next_action_type: str | None = None
    next_action_url: str | None = None
    idempotency_key: str
    created_at: datetime | None = None


class RefundResponse(BaseModel):
    refund_id: str
    payment_id: str
    amount: int
    currency: str
    status: str
    reason: str
    provider_name: str
    provider_refund_id: str


class ReconciliationResponse(BaseModel):
    checked: int
    restored: int
    failed: int
    restored_ids: list[str] = Field(default_factory=list)
