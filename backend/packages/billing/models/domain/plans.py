"""
Domain models for subscription plans.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from packages.billing.models.domain.enums import BillingInterval


class SubscriptionPlan(BaseModel):
    """
    A purchasable plan. ``price`` and ``credits_included`` are in credits
    and apply per unit of subscription quantity.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    interval: BillingInterval
    credits_included: Decimal = Decimal("0")
    trial_days: int = 0
    features: List[str] = Field(default_factory=list)
    limits: Dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SubscriptionPlanCreateModel(BaseModel):
    """Upsert payload for a plan."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    interval: BillingInterval = BillingInterval.MONTHLY
    credits_included: Decimal = Field(default=Decimal("0"), ge=0)
    trial_days: int = Field(default=0, ge=0)
    features: List[str] = Field(default_factory=list)
    limits: Dict[str, Any] = Field(default_factory=dict)
    active: bool = True

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        v = v.strip().lower()
        if not v.replace("_", "").replace("-", "").isalnum():
            raise ValueError("plan id must be alphanumeric (dashes and underscores allowed)")
        return v


DEFAULT_PLANS: List[SubscriptionPlanCreateModel] = [
    SubscriptionPlanCreateModel(
        id="starter",
        name="Starter",
        description="For small shops getting started",
        price=Decimal("29.00"),
        credits_included=Decimal("500"),
        features=["basic_analytics", "email_support"],
        limits={"products": 100, "orders_per_month": 500},
    ),
    SubscriptionPlanCreateModel(
        id="growth",
        name="Growth",
        description="For growing businesses",
        price=Decimal("59.00"),
        credits_included=Decimal("1500"),
        features=["advanced_analytics", "priority_support", "custom_domain"],
        limits={"products": 1000, "orders_per_month": 2500},
    ),
    SubscriptionPlanCreateModel(
        id="professional",
        name="Professional",
        description="For established stores",
        price=Decimal("99.00"),
        credits_included=Decimal("3000"),
        features=[
            "advanced_analytics",
            "priority_support",
            "custom_domain",
            "api_access",
        ],
        limits={"products": 10000, "orders_per_month": 10000},
    ),
    SubscriptionPlanCreateModel(
        id="enterprise",
        name="Enterprise",
        description="Unlimited scale with dedicated support",
        price=Decimal("199.00"),
        credits_included=Decimal("10000"),
        features=[
            "advanced_analytics",
            "dedicated_support",
            "custom_domain",
            "api_access",
            "sla",
        ],
        limits={"unlimited": True},
    ),
]
