"""
Billing enums - strongly typed enumerations for ledger, subscription,
payment and scheduling states.
"""

import calendar
from datetime import datetime, timedelta
from enum import Enum


class TransactionType(str, Enum):
    """Kinds of ledger entries. Purchases and grants are positive, consumption negative."""

    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    ADJUSTMENT = "adjustment"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ReservationStatus(str, Enum):
    """
    Reservation lifecycle.

    Flow: active -> consumed | released | expired (exactly one, then frozen)
    """

    ACTIVE = "active"
    CONSUMED = "consumed"
    RELEASED = "released"
    EXPIRED = "expired"

    def is_terminal(self) -> bool:
        return self != ReservationStatus.ACTIVE


class BillingInterval(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    def add_to(self, start: datetime, periods: int = 1) -> datetime:
        """
        Advance ``start`` by whole intervals.

        Calendar intervals clamp to the last day of shorter months, so
        Jan 31 + 1 month is Feb 28/29.
        """
        if self == BillingInterval.DAILY:
            return start + timedelta(days=periods)
        if self == BillingInterval.WEEKLY:
            return start + timedelta(weeks=periods)

        months = periods if self == BillingInterval.MONTHLY else periods * 12
        month_index = start.month - 1 + months
        year = start.year + month_index // 12
        month = month_index % 12 + 1
        day = min(start.day, calendar.monthrange(year, month)[1])
        return start.replace(year=year, month=month, day=day)


class SubscriptionStatus(str, Enum):
    """
    Subscription status lifecycle.

    Flow: trialing -> active -> cancel_at_period_end -> canceled
    Any non-canceled status may be canceled immediately.
    """

    TRIALING = "trialing"
    ACTIVE = "active"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    CANCELED = "canceled"

    def is_billable(self) -> bool:
        """Check if this status is charged at period end."""
        return self in (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE)

    def can_change_plan(self) -> bool:
        return self in (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE)


class ChangeType(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class DunningStatus(str, Enum):
    """Dunning lifecycle: active -> recovered | exhausted | canceled."""

    ACTIVE = "active"
    RECOVERED = "recovered"
    EXHAUSTED = "exhausted"
    CANCELED = "canceled"


class PaymentMethod(str, Enum):
    PIX = "pix"  # instant transfer, settled asynchronously
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"

    def is_card(self) -> bool:
        return self in (PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD)


class PaymentStatus(str, Enum):
    """
    Payment lifecycle.

    Flow: pending -> completed | failed | expired (exactly once)
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    def is_terminal(self) -> bool:
        return self != PaymentStatus.PENDING


class PaymentProviderName(str, Enum):
    """Supported payment providers."""

    STRIPE = "stripe"  # card rail
    PAGARME = "pagarme"  # instant transfer rail


class RefundStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEventKind(str, Enum):
    """Provider-independent meaning of an inbound webhook."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    DISPUTE_CREATED = "dispute_created"
    IGNORED = "ignored"


class ScheduledActionType(str, Enum):
    RESERVATION_EXPIRY = "reservation_expiry"
    PAYMENT_EXPIRY = "payment_expiry"
    SUBSCRIPTION_BILLING = "subscription_billing"
    DUNNING_RETRY = "dunning_retry"


class ScheduledActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class BillingEvent(str, Enum):
    """Domain events published to the event bus (routing keys)."""

    CREDITS_PURCHASED = "credits.purchased"
    CREDITS_RESERVED = "credits.reserved"
    CREDITS_CONSUMED = "credits.consumed"
    CREDITS_RELEASED = "credits.released"
    CREDITS_RESERVATION_EXPIRED = "credits.reservation_expired"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_PLAN_CHANGED = "subscription.plan_changed"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_BILLED = "subscription.billed"
    PAYMENT_PROCESSED = "payment.processed"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_EXPIRED = "payment.expired"
