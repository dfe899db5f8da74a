"""
Service for managing subscriptions.

Billing is in arrears: a period is charged, in credits, once it has ended.
The period only advances through a compare-and-set on the old period end
inside the same transaction as the charge, so an explicit call and the
scheduled billing action can race without charging twice.
"""

from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from common.core import clock
from common.core.config import settings
from common.core.exceptions import (
    InsufficientCreditsError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from common.core.otel_axiom_exporter import trace_span, get_logger
from common.db.scoped import transaction
from common.providers.caching.decorators import cache, invalidate_cache_keys
from common.providers.messaging.event_publisher import EventPublisher
from packages.billing.cache_keys import subscription_key, subscription_by_tenant_key
from packages.billing.models.database.subscription import (
    DunningAttemptEntity,
    SubscriptionEntity,
)
from packages.billing.models.domain.enums import (
    BillingEvent,
    BillingInterval,
    ChangeType,
    DunningStatus,
    ScheduledActionType,
    SubscriptionStatus,
)
from packages.billing.models.domain.plans import SubscriptionPlan
from packages.billing.models.domain.results import (
    BillingCanceled,
    BillingFailed,
    BillingResult,
    BillingSkipped,
    BillingSucceeded,
    BillingSweepSummary,
    PlanChangeResult,
)
from packages.billing.models.domain.subscription import (
    DunningAttempt,
    DunningAttemptCreateModel,
    Subscription,
    SubscriptionChangeCreateModel,
    SubscriptionCreateModel,
    SubscriptionStatistics,
)
from packages.billing.repositories.subscription_repository import (
    DunningAttemptRepository,
    SubscriptionChangeRepository,
    SubscriptionRepository,
)
from packages.billing.services.credit_service import CreditLedgerService, to_credits
from packages.billing.services.plans_service import PlanService
from packages.billing.services.scheduler_service import SchedulerService

logger = get_logger(__name__)

OPEN_STATUSES = [
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.CANCEL_AT_PERIOD_END,
]

# Monthly equivalents for recurring revenue
MONTHLY_FACTOR = {
    BillingInterval.DAILY.value: Decimal("30"),
    BillingInterval.WEEKLY.value: Decimal("52") / Decimal("12"),
    BillingInterval.MONTHLY.value: Decimal("1"),
    BillingInterval.YEARLY.value: Decimal("1") / Decimal("12"),
}


class _PeriodAlreadyBilled(Exception):
    """The period end moved under us; another caller billed this period."""


class SubscriptionService:
    """Service for subscription lifecycle, plan changes and billing."""

    def __init__(
        self,
        ledger: Optional[CreditLedgerService] = None,
        plan_service: Optional[PlanService] = None,
        event_publisher: Optional[EventPublisher] = None,
        scheduler: Optional[SchedulerService] = None,
    ):
        self.subscription_repo = SubscriptionRepository()
        self.change_repo = SubscriptionChangeRepository()
        self.dunning_repo = DunningAttemptRepository()
        self.events = event_publisher or EventPublisher()
        self.scheduler = scheduler or SchedulerService()
        self.ledger = ledger or CreditLedgerService(
            event_publisher=self.events, scheduler=self.scheduler
        )
        self.plan_service = plan_service or PlanService()

    async def _invalidate(self, subscription: Subscription) -> None:
        await invalidate_cache_keys(
            subscription_key(subscription.id),
            subscription_by_tenant_key(subscription.tenant_id),
        )

    async def _load(self, subscription_id: int) -> Subscription:
        """Authoritative read, bypassing the cache."""
        subscription = await self.subscription_repo.get(subscription_id)
        if not subscription:
            raise NotFoundError(
                f"Subscription {subscription_id} not found",
                subscription_id=subscription_id,
            )
        return subscription

    def _event_payload(self, subscription: Subscription, **extra: Any) -> Dict:
        return {
            "subscription_id": subscription.id,
            "tenant_id": subscription.tenant_id,
            "plan_id": subscription.plan_id,
            "status": subscription.status.value,
            **extra,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @trace_span
    async def create_subscription(
        self,
        tenant_id: str,
        plan_id: str,
        quantity: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """
        Create a subscription for a tenant.

        Plans with trial days start in ``trialing`` and the first period runs
        from the end of the trial. Included credits are granted up front only
        when there is no trial.

        Raises:
            ValidationError: Bad quantity or inactive plan
            NotFoundError: Unknown plan
            StateConflictError: Tenant already has an open subscription
        """
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", quantity=quantity)

        plan = await self.plan_service.get_plan(plan_id)
        if not plan.active:
            raise ValidationError(f"Plan {plan_id} is not active", plan_id=plan_id)

        now = clock.utcnow()
        trial_end = now + timedelta(days=plan.trial_days) if plan.trial_days > 0 else None
        period_end = plan.interval.add_to(trial_end or now)
        status = SubscriptionStatus.TRIALING if trial_end else SubscriptionStatus.ACTIVE
        included = to_credits(plan.credits_included * quantity)

        async with transaction():
            existing = await self.subscription_repo.get_open_for_tenant(tenant_id)
            if existing:
                raise StateConflictError(
                    f"Tenant {tenant_id} already has subscription {existing.id}",
                    tenant_id=tenant_id,
                    subscription_id=existing.id,
                    status=existing.status.value,
                )

            subscription = await self.subscription_repo.create(
                SubscriptionCreateModel(
                    tenant_id=tenant_id,
                    plan_id=plan.id,
                    status=status,
                    quantity=quantity,
                    current_period_start=now,
                    current_period_end=period_end,
                    trial_end=trial_end,
                    subscription_metadata=metadata or {},
                )
            )

            if trial_end is None and included > 0:
                await self.ledger.grant_credits(
                    tenant_id,
                    included,
                    description=f"Included credits for plan {plan.name}",
                    metadata={"subscription_id": subscription.id, "plan_id": plan.id},
                )

            await self.scheduler.schedule(
                ScheduledActionType.SUBSCRIPTION_BILLING, subscription.id, period_end
            )

        await self._invalidate(subscription)
        await self.ledger.invalidate_balance_cache(tenant_id)
        await self.events.publish(
            BillingEvent.SUBSCRIPTION_CREATED,
            self._event_payload(
                subscription,
                quantity=quantity,
                current_period_end=period_end.isoformat(),
                trial_end=trial_end.isoformat() if trial_end else None,
            ),
        )

        logger.info(
            f"Created subscription {subscription.id} for tenant {tenant_id}",
            extra={
                "subscription_id": subscription.id,
                "tenant_id": tenant_id,
                "plan_id": plan.id,
                "status": status.value,
            },
        )
        return subscription

    def calculate_proration(
        self,
        subscription: Subscription,
        current_plan: SubscriptionPlan,
        new_plan: SubscriptionPlan,
        now: datetime,
    ) -> Decimal:
        """
        Price difference for the unused part of the current period.

        Positive for upgrades, negative for downgrades.
        """
        period = (
            subscription.current_period_end - subscription.current_period_start
        ).total_seconds()
        if period <= 0:
            return Decimal("0.00")

        remaining = (subscription.current_period_end - now).total_seconds()
        remaining = min(max(remaining, 0.0), period)
        fraction = Decimal(str(remaining)) / Decimal(str(period))

        unused = current_plan.price * fraction
        new_amount = new_plan.price * fraction
        return ((new_amount - unused) * subscription.quantity).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )

    @trace_span
    async def change_plan(
        self,
        subscription_id: int,
        new_plan_id: str,
        proration: bool = True,
        immediate: bool = True,
    ) -> PlanChangeResult:
        """
        Move a subscription to another plan.

        An upgrade's prorated difference is charged right away and the change
        fails if the tenant cannot cover it. A downgrade's credit is recorded
        on the change but not refunded. With ``immediate`` an active
        subscription starts a new period now; the period end never moves
        earlier than it already was.

        Raises:
            ValidationError: Same plan, or target plan inactive
            StateConflictError: Subscription is not active or trialing, or a
                dunning attempt is open
            InsufficientCreditsError: Upgrade proration cannot be covered
        """
        subscription = await self._load(subscription_id)
        if new_plan_id == subscription.plan_id:
            raise ValidationError(
                "Cannot change to the same plan",
                subscription_id=subscription_id,
                plan_id=new_plan_id,
            )
        if not subscription.status.can_change_plan():
            raise StateConflictError(
                f"Cannot change plan for subscription with status: {subscription.status.value}",
                subscription_id=subscription_id,
                status=subscription.status.value,
            )
        if await self.dunning_repo.get_open_for_subscription(subscription_id):
            raise StateConflictError(
                f"Cannot change plan for subscription {subscription_id} "
                "while a payment is being retried",
                subscription_id=subscription_id,
            )

        current_plan = await self.plan_service.get_plan(subscription.plan_id)
        new_plan = await self.plan_service.get_plan(new_plan_id)
        if not new_plan.active:
            raise ValidationError(f"Plan {new_plan_id} is not active", plan_id=new_plan_id)

        now = clock.utcnow()
        proration_amount = Decimal("0.00")
        if proration and subscription.status == SubscriptionStatus.ACTIVE:
            proration_amount = self.calculate_proration(
                subscription, current_plan, new_plan, now
            )

        change_type = (
            ChangeType.UPGRADE if new_plan.price > current_plan.price else ChangeType.DOWNGRADE
        )

        values: Dict[str, Any] = {"plan_id": new_plan.id, "updated_at": now}
        period_end = subscription.current_period_end
        restart_period = immediate and subscription.status == SubscriptionStatus.ACTIVE
        if restart_period:
            period_end = max(new_plan.interval.add_to(now), subscription.current_period_end)
            values["current_period_start"] = now
            values["current_period_end"] = period_end

        charged = proration_amount > 0
        async with transaction():
            if charged:
                await self.ledger.charge_credits(
                    subscription.tenant_id,
                    proration_amount,
                    description=f"Plan change proration {current_plan.id} -> {new_plan.id}",
                    metadata={
                        "subscription_id": subscription_id,
                        "from_plan_id": current_plan.id,
                        "to_plan_id": new_plan.id,
                    },
                )

            won = await self.subscription_repo.transition_status(
                subscription_id,
                [subscription.status],
                subscription.status,
                SubscriptionEntity.plan_id == subscription.plan_id,
                **values,
            )
            if not won:
                raise StateConflictError(
                    f"Subscription {subscription_id} changed concurrently",
                    subscription_id=subscription_id,
                )

            change = await self.change_repo.create(
                SubscriptionChangeCreateModel(
                    subscription_id=subscription_id,
                    from_plan_id=current_plan.id,
                    to_plan_id=new_plan.id,
                    proration_amount=proration_amount,
                    change_type=change_type,
                    immediate=immediate,
                )
            )

            if restart_period:
                await self.scheduler.replace(
                    ScheduledActionType.SUBSCRIPTION_BILLING, subscription_id, period_end
                )

        await self._invalidate(subscription)
        if charged:
            await self.ledger.invalidate_balance_cache(subscription.tenant_id)

        await self.events.publish(
            BillingEvent.SUBSCRIPTION_PLAN_CHANGED,
            self._event_payload(
                subscription,
                plan_id=new_plan.id,
                from_plan_id=current_plan.id,
                change_type=change_type.value,
                proration_amount=str(proration_amount),
                immediate=immediate,
            ),
        )

        logger.info(
            f"Changed subscription {subscription_id} from {current_plan.id} to {new_plan.id}",
            extra={
                "subscription_id": subscription_id,
                "change_type": change_type.value,
                "proration_amount": str(proration_amount),
            },
        )

        return PlanChangeResult(
            subscription_id=subscription_id,
            change_id=change.id,
            from_plan_id=current_plan.id,
            to_plan_id=new_plan.id,
            change_type=change_type.value,
            proration_amount=proration_amount,
            proration_charged=charged,
            current_period_end=period_end,
        )

    @trace_span
    async def cancel_subscription(
        self,
        subscription_id: int,
        immediate: bool = False,
        reason: Optional[str] = None,
    ) -> Subscription:
        """
        Cancel now, or at the end of the current period.

        Immediate cancellation truncates the period to now and drops pending
        billing and dunning work.

        Raises:
            StateConflictError: Already canceled, or already scheduled to cancel
        """
        subscription = await self._load(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELED:
            raise StateConflictError(
                f"Subscription {subscription_id} is already canceled",
                subscription_id=subscription_id,
                status=subscription.status.value,
            )

        now = clock.utcnow()
        if immediate:
            await self._cancel_now(subscription, now, reason)
        else:
            won = await self.subscription_repo.transition_status(
                subscription_id,
                [SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE],
                SubscriptionStatus.CANCEL_AT_PERIOD_END,
                cancellation_reason=reason,
                updated_at=now,
            )
            if not won:
                current = await self._load(subscription_id)
                raise StateConflictError(
                    f"Cannot cancel subscription {subscription_id} at period end: "
                    f"subscription is {current.status.value}",
                    subscription_id=subscription_id,
                    status=current.status.value,
                )

        canceled = await self._load(subscription_id)
        await self._invalidate(canceled)
        await self.events.publish(
            BillingEvent.SUBSCRIPTION_CANCELED,
            self._event_payload(
                canceled,
                immediate=immediate,
                reason=reason,
                effective_at=(now if immediate else canceled.current_period_end).isoformat(),
            ),
        )

        logger.info(
            f"Canceled subscription {subscription_id}",
            extra={
                "subscription_id": subscription_id,
                "immediate": immediate,
                "reason": reason,
            },
        )
        return canceled

    async def _cancel_now(
        self, subscription: Subscription, now: datetime, reason: Optional[str]
    ) -> None:
        values: Dict[str, Any] = {
            "canceled_at": now,
            "cancellation_reason": reason,
            "updated_at": now,
        }
        if subscription.current_period_end > now:
            values["current_period_end"] = now

        async with transaction():
            won = await self.subscription_repo.transition_status(
                subscription.id, OPEN_STATUSES, SubscriptionStatus.CANCELED, **values
            )
            if not won:
                raise StateConflictError(
                    f"Subscription {subscription.id} is already canceled",
                    subscription_id=subscription.id,
                )

            await self.scheduler.cancel(
                ScheduledActionType.SUBSCRIPTION_BILLING, subscription.id
            )
            dunning = await self.dunning_repo.get_open_for_subscription(subscription.id)
            if dunning:
                await self.dunning_repo.transition_status(
                    dunning.id,
                    [DunningStatus.ACTIVE],
                    DunningStatus.CANCELED,
                    updated_at=now,
                )
                await self.scheduler.cancel(ScheduledActionType.DUNNING_RETRY, dunning.id)

    async def _finalize_cancellation(
        self, subscription: Subscription, now: datetime
    ) -> BillingResult:
        """Turn a pending cancellation into a cancellation once the period ended."""
        won = await self.subscription_repo.transition_status(
            subscription.id,
            [SubscriptionStatus.CANCEL_AT_PERIOD_END],
            SubscriptionStatus.CANCELED,
            canceled_at=now,
            updated_at=now,
        )
        if not won:
            return BillingSkipped(
                subscription_id=subscription.id, reason="subscription status changed"
            )

        await self.scheduler.cancel(
            ScheduledActionType.SUBSCRIPTION_BILLING, subscription.id
        )
        await self._invalidate(subscription)
        await self.events.publish(
            BillingEvent.SUBSCRIPTION_CANCELED,
            self._event_payload(
                subscription,
                status=SubscriptionStatus.CANCELED.value,
                immediate=False,
                reason=subscription.cancellation_reason,
                effective_at=subscription.current_period_end.isoformat(),
            ),
        )
        return BillingCanceled(
            subscription_id=subscription.id,
            reason=subscription.cancellation_reason or "canceled at period end",
        )

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------

    @trace_span
    async def process_billing(self, subscription_id: int) -> BillingResult:
        """
        Charge a subscription for the period that just ended.

        Before the period end this is a no-op. On success the period advances
        by exactly one interval and the plan's credits are granted; when the
        tenant cannot cover the charge a dunning attempt is opened instead.
        """
        subscription = await self._load(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELED:
            return BillingSkipped(
                subscription_id=subscription_id, reason="subscription canceled"
            )

        now = clock.utcnow()
        if not subscription.is_due(now):
            return BillingSkipped(subscription_id=subscription_id, reason="not yet due")

        if subscription.status == SubscriptionStatus.CANCEL_AT_PERIOD_END:
            return await self._finalize_cancellation(subscription, now)

        if await self.dunning_repo.get_open_for_subscription(subscription_id):
            return BillingSkipped(
                subscription_id=subscription_id, reason="dunning in progress"
            )

        if (
            subscription.status == SubscriptionStatus.TRIALING
            and subscription.trial_end is not None
            and subscription.trial_end <= now
        ):
            await self.subscription_repo.transition_status(
                subscription_id,
                [SubscriptionStatus.TRIALING],
                SubscriptionStatus.ACTIVE,
                updated_at=now,
            )
            await self._invalidate(subscription)
            subscription = await self._load(subscription_id)

        plan = await self.plan_service.get_plan(subscription.plan_id)
        amount = to_credits(plan.price * subscription.quantity)

        try:
            return await self._bill_period(subscription, plan, amount, now)
        except InsufficientCreditsError as e:
            return await self._open_dunning(subscription, amount, now, str(e))

    async def _bill_period(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        amount: Decimal,
        now: datetime,
        dunning: Optional[DunningAttempt] = None,
    ) -> BillingResult:
        """
        Charge, advance the period and grant credits in one transaction.

        Raises:
            InsufficientCreditsError: Nothing was written
        """
        period_start = subscription.current_period_end
        period_end = plan.interval.add_to(period_start)
        credits = to_credits(plan.credits_included * subscription.quantity)

        try:
            async with transaction():
                if amount > 0:
                    await self.ledger.charge_credits(
                        subscription.tenant_id,
                        amount,
                        description=f"Subscription {plan.name} ({period_start:%Y-%m-%d})",
                        metadata={
                            "subscription_id": subscription.id,
                            "plan_id": plan.id,
                            "period_start": period_start.isoformat(),
                            "period_end": period_end.isoformat(),
                        },
                    )

                won = await self.subscription_repo.transition_status(
                    subscription.id,
                    [SubscriptionStatus.ACTIVE],
                    SubscriptionStatus.ACTIVE,
                    SubscriptionEntity.current_period_end
                    == subscription.current_period_end,
                    current_period_start=period_start,
                    current_period_end=period_end,
                    updated_at=now,
                )
                if not won:
                    raise _PeriodAlreadyBilled()

                if credits > 0:
                    await self.ledger.grant_credits(
                        subscription.tenant_id,
                        credits,
                        description=f"Included credits for plan {plan.name}",
                        metadata={
                            "subscription_id": subscription.id,
                            "plan_id": plan.id,
                            "period_start": period_start.isoformat(),
                        },
                    )

                await self.scheduler.replace(
                    ScheduledActionType.SUBSCRIPTION_BILLING, subscription.id, period_end
                )

                if dunning:
                    await self.dunning_repo.transition_status(
                        dunning.id,
                        [DunningStatus.ACTIVE],
                        DunningStatus.RECOVERED,
                        DunningAttemptEntity.attempt_number == dunning.attempt_number,
                        updated_at=now,
                    )
                    await self.scheduler.cancel(
                        ScheduledActionType.DUNNING_RETRY, dunning.id
                    )
        except _PeriodAlreadyBilled:
            return BillingSkipped(subscription_id=subscription.id, reason="already billed")

        await self._invalidate(subscription)
        await self.ledger.invalidate_balance_cache(subscription.tenant_id)
        await self.events.publish(
            BillingEvent.SUBSCRIPTION_BILLED,
            self._event_payload(
                subscription,
                status=SubscriptionStatus.ACTIVE.value,
                success=True,
                amount=str(amount),
                credits_granted=str(credits),
                period_start=period_start.isoformat(),
                period_end=period_end.isoformat(),
                dunning_id=dunning.id if dunning else None,
            ),
        )

        logger.info(
            f"Billed subscription {subscription.id}",
            extra={
                "subscription_id": subscription.id,
                "amount": str(amount),
                "period_end": period_end.isoformat(),
            },
        )

        return BillingSucceeded(
            subscription_id=subscription.id,
            amount=amount,
            credits_granted=credits,
            period_start=period_start,
            period_end=period_end,
        )

    async def _open_dunning(
        self, subscription: Subscription, amount: Decimal, now: datetime, error: str
    ) -> BillingFailed:
        next_attempt_at = now + timedelta(hours=settings.dunning_retry_delay_hours)

        async with transaction():
            dunning = await self.dunning_repo.create(
                DunningAttemptCreateModel(
                    subscription_id=subscription.id,
                    attempt_number=1,
                    max_attempts=settings.dunning_max_attempts,
                    amount_due=amount,
                    next_attempt_at=next_attempt_at,
                    last_error=error,
                )
            )
            await self.scheduler.cancel(
                ScheduledActionType.SUBSCRIPTION_BILLING, subscription.id
            )
            await self.scheduler.schedule(
                ScheduledActionType.DUNNING_RETRY, dunning.id, next_attempt_at
            )

        await self.events.publish(
            BillingEvent.SUBSCRIPTION_BILLED,
            self._event_payload(
                subscription,
                success=False,
                amount=str(amount),
                reason=error,
                dunning_id=dunning.id,
                next_attempt_at=next_attempt_at.isoformat(),
            ),
        )

        logger.warning(
            f"Billing failed for subscription {subscription.id}, dunning started",
            extra={
                "subscription_id": subscription.id,
                "dunning_id": dunning.id,
                "amount": str(amount),
            },
        )

        return BillingFailed(
            subscription_id=subscription.id,
            amount=amount,
            reason=error,
            dunning_id=dunning.id,
            next_attempt_at=next_attempt_at,
        )

    @trace_span
    async def retry_billing(self, dunning_id: int) -> BillingResult:
        """
        Retry the charge behind an open dunning attempt.

        Success recovers the subscription. Each failure schedules another try
        until ``max_attempts`` failures, then the subscription is canceled.
        """
        dunning = await self.dunning_repo.get(dunning_id)
        if not dunning:
            raise NotFoundError(
                f"Dunning attempt {dunning_id} not found", dunning_id=dunning_id
            )
        if dunning.status != DunningStatus.ACTIVE:
            return BillingSkipped(
                subscription_id=dunning.subscription_id,
                reason=f"dunning {dunning.status.value}",
            )

        subscription = await self._load(dunning.subscription_id)
        now = clock.utcnow()

        if subscription.status == SubscriptionStatus.CANCELED:
            await self.dunning_repo.transition_status(
                dunning_id, [DunningStatus.ACTIVE], DunningStatus.CANCELED, updated_at=now
            )
            return BillingSkipped(
                subscription_id=subscription.id, reason="subscription canceled"
            )

        if subscription.status == SubscriptionStatus.CANCEL_AT_PERIOD_END:
            await self._cancel_now(subscription, now, subscription.cancellation_reason)
            await self._invalidate(subscription)
            return BillingCanceled(
                subscription_id=subscription.id,
                reason=subscription.cancellation_reason or "canceled during dunning",
            )

        if dunning.next_attempt_at and now < dunning.next_attempt_at:
            await self.scheduler.schedule(
                ScheduledActionType.DUNNING_RETRY, dunning_id, dunning.next_attempt_at
            )
            return BillingSkipped(
                subscription_id=subscription.id, reason="retry not yet due"
            )

        plan = await self.plan_service.get_plan(subscription.plan_id)
        try:
            return await self._bill_period(
                subscription, plan, dunning.amount_due, now, dunning=dunning
            )
        except InsufficientCreditsError as e:
            return await self._record_failed_retry(subscription, dunning, now, str(e))

    async def _record_failed_retry(
        self,
        subscription: Subscription,
        dunning: DunningAttempt,
        now: datetime,
        error: str,
    ) -> BillingResult:
        attempt_number = dunning.attempt_number + 1

        if dunning.is_final_attempt():
            won = await self.dunning_repo.transition_status(
                dunning.id,
                [DunningStatus.ACTIVE],
                DunningStatus.EXHAUSTED,
                DunningAttemptEntity.attempt_number == dunning.attempt_number,
                attempt_number=attempt_number,
                next_attempt_at=None,
                last_error=error,
                updated_at=now,
            )
            if not won:
                return BillingSkipped(
                    subscription_id=subscription.id, reason="dunning already updated"
                )

            logger.warning(
                f"Dunning exhausted for subscription {subscription.id}, canceling",
                extra={"subscription_id": subscription.id, "dunning_id": dunning.id},
            )
            await self.cancel_subscription(
                subscription.id, immediate=True, reason="dunning_exhausted"
            )
            return BillingCanceled(
                subscription_id=subscription.id, reason="dunning_exhausted"
            )

        next_attempt_at = now + timedelta(hours=settings.dunning_retry_delay_hours)
        async with transaction():
            won = await self.dunning_repo.transition_status(
                dunning.id,
                [DunningStatus.ACTIVE],
                DunningStatus.ACTIVE,
                DunningAttemptEntity.attempt_number == dunning.attempt_number,
                attempt_number=attempt_number,
                next_attempt_at=next_attempt_at,
                last_error=error,
                updated_at=now,
            )
            if won:
                await self.scheduler.schedule(
                    ScheduledActionType.DUNNING_RETRY, dunning.id, next_attempt_at
                )

        if not won:
            return BillingSkipped(
                subscription_id=subscription.id, reason="dunning already updated"
            )

        await self.events.publish(
            BillingEvent.SUBSCRIPTION_BILLED,
            self._event_payload(
                subscription,
                success=False,
                amount=str(dunning.amount_due),
                reason=error,
                dunning_id=dunning.id,
                attempt_number=attempt_number,
                next_attempt_at=next_attempt_at.isoformat(),
            ),
        )

        return BillingFailed(
            subscription_id=subscription.id,
            amount=dunning.amount_due,
            reason=error,
            dunning_id=dunning.id,
            next_attempt_at=next_attempt_at,
        )

    @trace_span
    async def process_due_billing(self, limit: Optional[int] = None) -> BillingSweepSummary:
        """
        Bill every subscription whose period has ended.

        Safety net behind the scheduled billing actions. Each subscription is
        billed in isolation; one failure does not stop the sweep.
        """
        due = await self.subscription_repo.get_due_for_billing(
            clock.utcnow(), limit or settings.billing_sweep_batch_size
        )

        summary = BillingSweepSummary()
        for subscription in due:
            summary.processed += 1
            try:
                result = await self.process_billing(subscription.id)
            except Exception as e:
                summary.failed += 1
                summary.errors.append(f"subscription {subscription.id}: {e}")
                logger.error(
                    f"Billing sweep failed for subscription {subscription.id}: {e}",
                    extra={"subscription_id": subscription.id},
                    exc_info=True,
                )
                continue

            if isinstance(result, (BillingSucceeded, BillingCanceled)):
                summary.succeeded += 1
            elif isinstance(result, BillingFailed):
                summary.failed += 1
            else:
                summary.skipped += 1

        if summary.processed:
            logger.info(
                f"Billing sweep processed {summary.processed} subscriptions",
                extra=summary.model_dump(exclude={"errors"}),
            )
        return summary

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @trace_span
    @cache(
        Subscription,
        ttl=settings.subscription_cache_ttl_seconds,
        key_generator=lambda subscription_id: subscription_key(subscription_id),
    )
    async def get_subscription(self, subscription_id: int) -> Subscription:
        return await self._load(subscription_id)

    @trace_span
    @cache(
        Subscription,
        ttl=settings.subscription_cache_ttl_seconds,
        key_generator=lambda tenant_id: subscription_by_tenant_key(tenant_id),
    )
    async def get_active_subscription(self, tenant_id: str) -> Optional[Subscription]:
        """Get the tenant's open subscription, or None."""
        return await self.subscription_repo.get_open_for_tenant(tenant_id)

    @trace_span
    async def get_subscription_statistics(self) -> SubscriptionStatistics:
        by_status = await self.subscription_repo.count_by_status()
        canceled_recently = await self.subscription_repo.count_canceled_since(
            clock.utcnow() - timedelta(days=30)
        )

        mrr = Decimal("0")
        for price, interval, quantity in await self.subscription_repo.get_active_pricing():
            mrr += price * quantity * MONTHLY_FACTOR.get(interval, Decimal("1"))

        open_count = sum(by_status.get(status.value, 0) for status in OPEN_STATUSES)
        base = open_count + canceled_recently
        churn = (
            (Decimal(canceled_recently) / Decimal(base)).quantize(Decimal("0.0001"))
            if base
            else Decimal("0")
        )

        return SubscriptionStatistics(
            total=sum(by_status.values()),
            by_status=by_status,
            monthly_recurring_credits=to_credits(mrr),
            canceled_last_30_days=canceled_recently,
            churn_rate=churn,
        )
