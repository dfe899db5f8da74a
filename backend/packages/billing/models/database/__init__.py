"""Database models for billing."""

from packages.billing.models.database.credit import (
    CreditTransactionEntity,
    CreditReservationEntity,
)
from packages.billing.models.database.plan import SubscriptionPlanEntity
from packages.billing.models.database.subscription import (
    SubscriptionEntity,
    SubscriptionChangeEntity,
    DunningAttemptEntity,
)
from packages.billing.models.database.payment import (
    PaymentEntity,
    RefundEntity,
    WebhookEventEntity,
)
from packages.billing.models.database.scheduled_action import ScheduledActionEntity

__all__ = [
    "CreditTransactionEntity",
    "CreditReservationEntity",
    "SubscriptionPlanEntity",
    "SubscriptionEntity",
    "SubscriptionChangeEntity",
    "DunningAttemptEntity",
    "PaymentEntity",
    "RefundEntity",
    "WebhookEventEntity",
    "ScheduledActionEntity",
]
