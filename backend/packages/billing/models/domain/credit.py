"""
Domain models for the credit ledger and reservations.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from packages.billing.models.domain.enums import (
    TransactionType,
    TransactionStatus,
    ReservationStatus,
)


class CreditTransaction(BaseModel):
    """Ledger entry. ``amount`` is signed: purchases positive, consumption negative."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    type: TransactionType
    amount: Decimal
    status: TransactionStatus
    description: Optional[str] = None
    reservation_id: Optional[int] = None
    payment_id: Optional[int] = None
    transaction_metadata: Dict[str, Any] = Field(default_factory=dict)
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    def is_settled(self) -> bool:
        return self.status != TransactionStatus.PENDING


class CreditTransactionCreateModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    tenant_id: str
    type: TransactionType
    amount: Decimal
    status: TransactionStatus
    description: Optional[str] = None
    reservation_id: Optional[int] = None
    payment_id: Optional[int] = None
    transaction_metadata: Dict[str, Any] = Field(default_factory=dict)
    completed_at: Optional[datetime] = None


class CreditReservation(BaseModel):
    """
    A hold against available credit.

    Counts against availability only while ``active`` and unexpired.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    amount: Decimal
    purpose: str
    status: ReservationStatus
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    release_reason: Optional[str] = None
    transaction_id: Optional[int] = None
    reservation_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    def is_holding(self, now: datetime) -> bool:
        return self.status == ReservationStatus.ACTIVE and self.expires_at > now


class CreditReservationCreateModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    tenant_id: str
    amount: Decimal = Field(gt=0)
    purpose: str
    status: ReservationStatus = ReservationStatus.ACTIVE
    expires_at: datetime
    reservation_metadata: Dict[str, Any] = Field(default_factory=dict)


class CreditBalance(BaseModel):
    """Point-in-time view of a tenant's credit."""

    tenant_id: str
    balance: Decimal
    reserved: Decimal
    available: Decimal


class BonusCalculation(BaseModel):
    base: Decimal
    bonus: Decimal
    bonus_rate: Decimal
    total: Decimal


class CreditStatistics(BaseModel):
    """Aggregates over a trailing window of days."""

    tenant_id: str
    period_days: int
    total_purchased: Decimal
    total_consumed: Decimal
    total_bonus: Decimal
    transaction_count: int
    current_balance: Decimal
    reserved: Decimal
    available: Decimal


class CreditTransactionUpdateModel(BaseModel):
    """Fields that may change while an entry is still pending."""

    payment_id: Optional[int] = None
    transaction_metadata: Optional[Dict[str, Any]] = None


class CreditReservationUpdateModel(BaseModel):
    transaction_id: Optional[int] = None
    reservation_metadata: Optional[Dict[str, Any]] = None
