"""Billing repositories."""

from packages.billing.repositories.credit_transaction_repository import (
    CreditTransactionRepository,
)
from packages.billing.repositories.credit_reservation_repository import (
    CreditReservationRepository,
)
from packages.billing.repositories.plan_repository import SubscriptionPlanRepository
from packages.billing.repositories.subscription_repository import (
    SubscriptionRepository,
    SubscriptionChangeRepository,
    DunningAttemptRepository,
)
from packages.billing.repositories.payment_repository import (
    PaymentRepository,
    RefundRepository,
    WebhookEventRepository,
)
from packages.billing.repositories.scheduled_action_repository import (
    ScheduledActionRepository,
)

__all__ = [
    "CreditTransactionRepository",
    "CreditReservationRepository",
    "SubscriptionPlanRepository",
    "SubscriptionRepository",
    "SubscriptionChangeRepository",
    "DunningAttemptRepository",
    "PaymentRepository",
    "RefundRepository",
    "WebhookEventRepository",
    "ScheduledActionRepository",
]
