"""
Domain models for subscriptions, plan changes and dunning.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from packages.billing.models.domain.enums import (
    SubscriptionStatus,
    ChangeType,
    DunningStatus,
)


class Subscription(BaseModel):
    """
    Tenant subscription domain model.

    Represents a tenant's subscription including:
    - Plan and quantity
    - Status (trialing/active/cancel_at_period_end/canceled)
    - Billing cycle dates
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    plan_id: str
    status: SubscriptionStatus
    quantity: int = 1

    # Billing cycle
    current_period_start: datetime
    current_period_end: datetime
    trial_end: Optional[datetime] = None

    # Lifecycle
    canceled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    subscription_metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime
    updated_at: datetime

    def is_billable(self) -> bool:
        """Check if subscription should be billed."""
        return self.status.is_billable()

    def is_due(self, now: datetime) -> bool:
        return now >= self.current_period_end

    def in_trial(self, now: datetime) -> bool:
        return (
            self.status == SubscriptionStatus.TRIALING
            and self.trial_end is not None
            and now < self.trial_end
        )


class SubscriptionCreateModel(BaseModel):
    """Model for creating a new subscription."""

    model_config = ConfigDict(use_enum_values=True)

    tenant_id: str
    plan_id: str
    status: SubscriptionStatus
    quantity: int = Field(default=1, ge=1)
    current_period_start: datetime
    current_period_end: datetime
    trial_end: Optional[datetime] = None
    subscription_metadata: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionUpdateModel(BaseModel):
    """
    Model for updating subscription fields.

    Status moves go through ``transition_status`` instead, so a stale read
    cannot overwrite a concurrent transition.
    """

    model_config = ConfigDict(use_enum_values=True)

    plan_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    subscription_metadata: Optional[Dict[str, Any]] = None


class SubscriptionChange(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subscription_id: int
    from_plan_id: str
    to_plan_id: str
    proration_amount: Decimal
    change_type: ChangeType
    immediate: bool
    created_at: datetime


class SubscriptionChangeCreateModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    subscription_id: int
    from_plan_id: str
    to_plan_id: str
    proration_amount: Decimal
    change_type: ChangeType
    immediate: bool = True


class DunningAttempt(BaseModel):
    """Retry state for a failed recurring charge."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    subscription_id: int
    attempt_number: int
    max_attempts: int
    amount_due: Decimal
    next_attempt_at: Optional[datetime] = None
    status: DunningStatus
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def is_final_attempt(self) -> bool:
        """True when one more failure exhausts the retries."""
        return self.attempt_number + 1 >= self.max_attempts


class DunningAttemptCreateModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    subscription_id: int
    attempt_number: int = 1
    max_attempts: int
    amount_due: Decimal
    next_attempt_at: Optional[datetime] = None
    status: DunningStatus = DunningStatus.ACTIVE
    last_error: Optional[str] = None


class SubscriptionStatistics(BaseModel):
    total: int
    by_status: Dict[str, int]
    monthly_recurring_credits: Decimal
    canceled_last_30_days: int
    churn_rate: Decimal
