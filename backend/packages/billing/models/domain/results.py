"""
Tagged operation results.

Each outcome is its own model with a ``status`` literal so callers can
branch on it (and serialize it) without guessing which fields are set.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class OperationResult(BaseModel):
    status: str
    success: bool


# Credit purchases
class PurchaseCompleted(OperationResult):
    status: Literal["completed"] = "completed"
    success: bool = True
    transaction_id: int
    payment_id: int
    base_amount: Decimal
    bonus_amount: Decimal
    total_credits: Decimal
    new_balance: Decimal


class PurchasePending(OperationResult):
    status: Literal["pending"] = "pending"
    success: bool = True
    transaction_id: int
    payment_id: int
    base_amount: Decimal
    bonus_amount: Decimal
    total_credits: Decimal
    payment_code: str
    qr_code_url: Optional[str] = None
    expires_at: datetime


PurchaseResult = Union[PurchaseCompleted, PurchasePending]


# Reservations
class ReservationResult(OperationResult):
    status: Literal["reserved"] = "reserved"
    success: bool = True
    reservation_id: int
    amount: Decimal
    expires_at: datetime
    available_after: Decimal


class ReservationSettled(OperationResult):
    """A reservation left ``active`` via consume or release."""

    status: Literal["consumed", "released"]
    success: bool = True
    reservation_id: int
    amount: Decimal
    transaction_id: Optional[int] = None


# Payments
class PaymentPendingResult(OperationResult):
    status: Literal["pending"] = "pending"
    success: bool = True
    payment_id: int
    provider_payment_id: str
    payment_code: str
    qr_code_url: Optional[str] = None
    expires_at: datetime


class PaymentCompletedResult(OperationResult):
    status: Literal["completed"] = "completed"
    success: bool = True
    payment_id: int
    provider_payment_id: str


class PaymentFailedResult(OperationResult):
    status: Literal["failed"] = "failed"
    success: bool = False
    payment_id: int
    provider_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None


PaymentResult = Union[PaymentPendingResult, PaymentCompletedResult, PaymentFailedResult]


class WebhookResult(BaseModel):
    processed: bool
    event_type: str
    payment_id: Optional[int] = None
    reason: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class RefundResult(OperationResult):
    status: Literal["refunded"] = "refunded"
    success: bool = True
    refund_id: int
    payment_id: int
    amount: int
    provider_refund_id: Optional[str] = None
    total_refunded: int


# Subscription billing
class BillingSucceeded(OperationResult):
    status: Literal["billed"] = "billed"
    success: bool = True
    subscription_id: int
    amount: Decimal
    credits_granted: Decimal
    period_start: datetime
    period_end: datetime


class BillingFailed(OperationResult):
    status: Literal["failed"] = "failed"
    success: bool = False
    subscription_id: int
    amount: Decimal
    reason: str
    dunning_id: Optional[int] = None
    next_attempt_at: Optional[datetime] = None


class BillingSkipped(OperationResult):
    status: Literal["skipped"] = "skipped"
    success: bool = True
    subscription_id: int
    reason: str


class BillingCanceled(OperationResult):
    status: Literal["canceled"] = "canceled"
    success: bool = True
    subscription_id: int
    reason: str


BillingResult = Union[BillingSucceeded, BillingFailed, BillingSkipped, BillingCanceled]


class PlanChangeResult(OperationResult):
    status: Literal["changed"] = "changed"
    success: bool = True
    subscription_id: int
    change_id: int
    from_plan_id: str
    to_plan_id: str
    change_type: str
    proration_amount: Decimal
    proration_charged: bool
    current_period_end: datetime


class BillingSweepSummary(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
