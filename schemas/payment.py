from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class PaymentCreate(BaseModel):
    """Checkout payment; always charges the order total in the order currency."""

    order_id: int
    payment_method: str = "card"
    payment_provider: str = "paystack"

    class Config:
        extra = "forbid"


class ManualPaymentCreate(PaymentCreate):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    transaction_id: Optional[str] = None
    user_id: Optional[int] = None


class PaymentInitRequest(BaseModel):
    order_id: int
    callback_url: Optional[str] = None


class GatewayResult(BaseModel):
    """Normalised answer from a payment gateway."""

    # success, processing, pending, failed, abandoned, reversed, ...
    status: str
    reference: Optional[str] = None
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    error: Optional[str] = None
    fee: Optional[Decimal] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class PaymentStatusUpdate(BaseModel):
    status: str
    gateway_response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class PaymentRefundRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentOut(BaseModel):
    id: int
    order_id: int
    payment_method: str
    payment_provider: str
    transaction_id: str
    amount: Decimal
    currency: str
    status: str
    gateway_response: Optional[Dict[str, Any]]
    gateway_error: Optional[str]
    refunded_amount: Decimal
    refunded_at: Optional[datetime]
    refunded_reason: Optional[str]
    processed_at: Optional[datetime]
    failed_at: Optional[datetime]
    retry_count: int
    next_retry_at: Optional[datetime]
    remaining_amount: Decimal

    class Config:
        from_attributes = True


class PaymentInitResponse(BaseModel):
    payment: PaymentOut
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
