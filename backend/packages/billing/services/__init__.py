"""Billing services."""

from packages.billing.services.credit_service import CreditLedgerService
from packages.billing.services.payment_service import PaymentGatewayService
from packages.billing.services.plans_service import PlanService
from packages.billing.services.scheduler_service import SchedulerService
from packages.billing.services.subscription_service import SubscriptionService

__all__ = [
    "CreditLedgerService",
    "PaymentGatewayService",
    "PlanService",
    "SchedulerService",
    "SubscriptionService",
]
