"""
Domain models for payments, refunds and webhook audit.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from packages.billing.models.domain.enums import (
    PaymentMethod,
    PaymentStatus,
    PaymentProviderName,
    RefundStatus,
)


class PaymentRequest(BaseModel):
    """
    Inbound payment request.

    Amount bounds and supported method/currency are checked against settings
    by the gateway service, so they are not constrained here.
    """

    model_config = ConfigDict(use_enum_values=True)

    tenant_id: str
    amount: int  # cents
    method: PaymentMethod
    currency: str = "BRL"
    description: Optional[str] = None
    card_token: Optional[str] = None
    customer: Dict[str, Any] = Field(default_factory=dict)
    payment_metadata: Dict[str, Any] = Field(default_factory=dict)


class Payment(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    method: PaymentMethod
    amount: int
    currency: str
    status: PaymentStatus
    description: Optional[str] = None
    provider: PaymentProviderName
    provider_payment_id: Optional[str] = None
    provider_data: Dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    payment_metadata: Dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PaymentCreateModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    tenant_id: str
    method: PaymentMethod
    amount: int
    currency: str
    status: PaymentStatus = PaymentStatus.PENDING
    description: Optional[str] = None
    provider: PaymentProviderName
    payment_metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentUpdateModel(BaseModel):
    """Non-status fields filled in once the provider answers."""

    provider_payment_id: Optional[str] = None
    provider_data: Optional[Dict[str, Any]] = None
    expires_at: Optional[datetime] = None


class Refund(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_id: int
    amount: int
    reason: Optional[str] = None
    status: RefundStatus
    provider_refund_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime


class RefundCreateModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    payment_id: int
    amount: int
    reason: Optional[str] = None
    status: RefundStatus
    provider_refund_id: Optional[str] = None
    error_message: Optional[str] = None


class WebhookEvent(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider: str
    event_type: str
    payload: Dict[str, Any]
    processed: bool
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime


class WebhookEventCreateModel(BaseModel):
    provider: str
    event_type: str
    payload: Dict[str, Any]
    processed: bool = False
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


class PaymentStatistics(BaseModel):
    tenant_id: str
    period_days: int
    total_payments: int
    by_status: Dict[str, int]
    by_method: Dict[str, int]
    completed_amount: int
    refunded_amount: int
    success_rate: float
