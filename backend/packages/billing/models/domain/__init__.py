"""Domain models for billing."""

from packages.billing.models.domain.enums import (
    TransactionType,
    TransactionStatus,
    ReservationStatus,
    BillingInterval,
    SubscriptionStatus,
    ChangeType,
    DunningStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentProviderName,
    RefundStatus,
    WebhookEventKind,
    ScheduledActionType,
    ScheduledActionStatus,
    BillingEvent,
)
from packages.billing.models.domain.credit import (
    CreditTransaction,
    CreditTransactionCreateModel,
    CreditTransactionUpdateModel,
    CreditReservation,
    CreditReservationCreateModel,
    CreditReservationUpdateModel,
    CreditBalance,
    BonusCalculation,
    CreditStatistics,
)
from packages.billing.models.domain.plans import (
    SubscriptionPlan,
    SubscriptionPlanCreateModel,
    DEFAULT_PLANS,
)
from packages.billing.models.domain.subscription import (
    Subscription,
    SubscriptionCreateModel,
    SubscriptionUpdateModel,
    SubscriptionChange,
    SubscriptionChangeCreateModel,
    DunningAttempt,
    DunningAttemptCreateModel,
    SubscriptionStatistics,
)
from packages.billing.models.domain.payment import (
    PaymentRequest,
    Payment,
    PaymentCreateModel,
    PaymentUpdateModel,
    Refund,
    RefundCreateModel,
    WebhookEvent,
    WebhookEventCreateModel,
    PaymentStatistics,
)
from packages.billing.models.domain.scheduled_action import (
    ScheduledAction,
    ScheduledActionCreateModel,
)

__all__ = [
    # Enums
    "TransactionType",
    "TransactionStatus",
    "ReservationStatus",
    "BillingInterval",
    "SubscriptionStatus",
    "ChangeType",
    "DunningStatus",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentProviderName",
    "RefundStatus",
    "WebhookEventKind",
    "ScheduledActionType",
    "ScheduledActionStatus",
    "BillingEvent",
    # Credits
    "CreditTransaction",
    "CreditTransactionCreateModel",
    "CreditTransactionUpdateModel",
    "CreditReservation",
    "CreditReservationCreateModel",
    "CreditReservationUpdateModel",
    "CreditBalance",
    "BonusCalculation",
    "CreditStatistics",
    # Plans
    "SubscriptionPlan",
    "SubscriptionPlanCreateModel",
    "DEFAULT_PLANS",
    # Subscriptions
    "Subscription",
    "SubscriptionCreateModel",
    "SubscriptionUpdateModel",
    "SubscriptionChange",
    "SubscriptionChangeCreateModel",
    "DunningAttempt",
    "DunningAttemptCreateModel",
    "SubscriptionStatistics",
    # Payments
    "PaymentRequest",
    "Payment",
    "PaymentCreateModel",
    "PaymentUpdateModel",
    "Refund",
    "RefundCreateModel",
    "WebhookEvent",
    "WebhookEventCreateModel",
    "PaymentStatistics",
    # Scheduling
    "ScheduledAction",
    "ScheduledActionCreateModel",
]
