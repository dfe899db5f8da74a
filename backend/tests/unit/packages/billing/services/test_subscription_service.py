"""
Unit tests for SubscriptionService.

Billing time is driven with the frozen_clock fixture.
"""

from decimal import Decimal
from unittest.mock import patch

import pytest

from common.core.exceptions import (
    InsufficientCreditsError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from packages.billing.models.domain.enums import (
    BillingInterval,
    DunningStatus,
    ScheduledActionStatus,
    ScheduledActionType,
    SubscriptionStatus,
)
from packages.billing.models.domain.plans import SubscriptionPlanCreateModel
from packages.billing.models.domain.results import (
    BillingCanceled,
    BillingFailed,
    BillingSkipped,
    BillingSucceeded,
)
from packages.billing.cache_keys import subscription_by_tenant_key
from tests.fixtures import OTHER_TENANT_ID, TENANT_ID, published_events


def halfway(subscription):
    return (
        subscription.current_period_start
        + (subscription.current_period_end - subscription.current_period_start) / 2
    )


@patch("common.core.otel_axiom_exporter.axiom_tracer.start_as_current_span")
class TestCreateSubscription:
    async def test_create_grants_included_credits(
        self,
        mock_start_span,
        subscription_service,
        ledger,
        scheduler,
        default_plans,
        frozen_clock,
        mock_message_queue,
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.current_period_start == frozen_clock.now
        assert subscription.current_period_end == BillingInterval.MONTHLY.add_to(
            frozen_clock.now
        )
        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("500.00")

        actions = await scheduler.action_repo.get_for_entity(
            ScheduledActionType.SUBSCRIPTION_BILLING, subscription.id
        )
        assert len(actions) == 1
        assert actions[0].due_at == subscription.current_period_end
        assert "subscription.created" in published_events(mock_message_queue)

    async def test_quantity_multiplies_credits(
        self, mock_start_span, subscription_service, ledger, default_plans
    ):
        await subscription_service.create_subscription(TENANT_ID, "starter", quantity=3)

        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("1500.00")

    async def test_one_open_subscription_per_tenant(
        self, mock_start_span, subscription_service, default_plans
    ):
        await subscription_service.create_subscription(TENANT_ID, "starter")

        with pytest.raises(StateConflictError):
            await subscription_service.create_subscription(TENANT_ID, "growth")

        other = await subscription_service.create_subscription(OTHER_TENANT_ID, "growth")
        assert other.tenant_id == OTHER_TENANT_ID

    async def test_trial_defers_credits_and_billing(
        self, mock_start_span, subscription_service, ledger, trial_plan, frozen_clock
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, trial_plan.id
        )

        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.in_trial(frozen_clock.now)
        trial_end = subscription.trial_end
        assert (trial_end - frozen_clock.now).days == 14
        assert subscription.current_period_end == BillingInterval.MONTHLY.add_to(
            trial_end
        )
        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("0.00")

    @pytest.mark.parametrize("quantity", [0, -1])
    async def test_invalid_quantity(
        self, mock_start_span, subscription_service, default_plans, quantity
    ):
        with pytest.raises(ValidationError):
            await subscription_service.create_subscription(
                TENANT_ID, "starter", quantity=quantity
            )

    async def test_unknown_or_inactive_plan(
        self, mock_start_span, subscription_service, plan_service, default_plans
    ):
        with pytest.raises(NotFoundError):
            await subscription_service.create_subscription(TENANT_ID, "platinum")

        await plan_service.create_plan(
            SubscriptionPlanCreateModel(
                id="legacy",
                name="Legacy",
                price=Decimal("10.00"),
                credits_included=Decimal("0"),
                active=False,
            )
        )
        with pytest.raises(ValidationError):
            await subscription_service.create_subscription(TENANT_ID, "legacy")


@patch("common.core.otel_axiom_exporter.axiom_tracer.start_as_current_span")
class TestRecurringBilling:
    async def test_billing_waits_for_period_end(
        self, mock_start_span, subscription_service, ledger, default_plans
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )

        result = await subscription_service.process_billing(subscription.id)

        assert isinstance(result, BillingSkipped)
        assert result.reason == "not yet due"
        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("500.00")

    async def test_billing_advances_one_interval_and_grants_once(
        self,
        mock_start_span,
        subscription_service,
        ledger,
        scheduler,
        default_plans,
        frozen_clock,
        mock_message_queue,
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )
        old_end = subscription.current_period_end
        frozen_clock.set(old_end)

        result = await subscription_service.process_billing(subscription.id)

        assert isinstance(result, BillingSucceeded)
        assert result.amount == Decimal("29.00")
        assert result.credits_granted == Decimal("500.00")
        assert result.period_start == old_end
        assert result.period_end == BillingInterval.MONTHLY.add_to(old_end)
        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("971.00")

        again = await subscription_service.process_billing(subscription.id)
        assert isinstance(again, BillingSkipped)
        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("971.00")

        actions = await scheduler.action_repo.get_for_entity(
            ScheduledActionType.SUBSCRIPTION_BILLING, subscription.id
        )
        pending = [a for a in actions if a.status == ScheduledActionStatus.PENDING]
        assert [a.due_at for a in pending] == [result.period_end]
        assert published_events(mock_message_queue).count("subscription.billed") == 1

    async def test_late_billing_is_anchored_to_old_period_end(
        self, mock_start_span, subscription_service, default_plans, frozen_clock
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )
        old_end = subscription.current_period_end
        frozen_clock.set(old_end)
        frozen_clock.advance(days=45)

        first = await subscription_service.process_billing(subscription.id)
        second = await subscription_service.process_billing(subscription.id)

        assert first.period_start == old_end
        assert second.period_start == first.period_end
        assert second.period_end == BillingInterval.MONTHLY.add_to(old_end, periods=2)

    async def test_trial_converts_to_active_when_billed(
        self,
        mock_start_span,
        subscription_service,
        ledger,
        trial_plan,
        frozen_clock,
        fund_tenant,
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, trial_plan.id
        )
        await fund_tenant(50)
        frozen_clock.set(subscription.current_period_end)

        result = await subscription_service.process_billing(subscription.id)

        assert isinstance(result, BillingSucceeded)
        refreshed = await subscription_service.get_subscription(subscription.id)
        assert refreshed.status == SubscriptionStatus.ACTIVE
        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("130.00")

    async def test_failed_first_charge_after_trial_refreshes_cache(
        self, mock_start_span, subscription_service, trial_plan, frozen_clock
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, trial_plan.id
        )
        cached = await subscription_service.get_subscription(subscription.id)
        active = await subscription_service.get_active_subscription(TENANT_ID)
        assert cached.status == active.status == SubscriptionStatus.TRIALING

        frozen_clock.set(subscription.current_period_end)
        result = await subscription_service.process_billing(subscription.id)

        assert isinstance(result, BillingFailed)
        refreshed = await subscription_service.get_subscription(subscription.id)
        assert refreshed.status == SubscriptionStatus.ACTIVE
        active = await subscription_service.get_active_subscription(TENANT_ID)
        assert active.status == SubscriptionStatus.ACTIVE

    async def test_process_due_billing_isolates_failures(
        self,
        mock_start_span,
        subscription_service,
        ledger,
        default_plans,
        frozen_clock,
    ):
        paying = await subscription_service.create_subscription(TENANT_ID, "starter")
        broke = await subscription_service.create_subscription(OTHER_TENANT_ID, "starter")
        await ledger.charge_credits(OTHER_TENANT_ID, 490, "usage")
        frozen_clock.set(paying.current_period_end)

        summary = await subscription_service.process_due_billing()

        assert summary.processed == 2
        assert summary.succeeded == 1
        assert summary.failed == 1
        assert summary.errors == []
        assert await subscription_service.dunning_repo.get_open_for_subscription(
            broke.id
        )

        # Subscriptions in dunning are left to their retry schedule
        rerun = await subscription_service.process_due_billing()
        assert rerun.processed == 0

    async def test_process_due_billing_records_errors(
        self, mock_start_span, subscription_service, default_plans, frozen_clock
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )
        frozen_clock.set(subscription.current_period_end)

        with patch.object(
            subscription_service.plan_service,
            "get_plan",
            side_effect=RuntimeError("catalog offline"),
        ):
            summary = await subscription_service.process_due_billing()

        assert summary.failed == 1
        assert "catalog offline" in summary.errors[0]


@patch("common.core.otel_axiom_exporter.axiom_tracer.start_as_current_span")
class TestPlanChanges:
    async def test_upgrade_charges_prorated_difference(
        self, mock_start_span, subscription_service, ledger, default_plans, frozen_clock
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )
        frozen_clock.set(halfway(subscription))

        result = await subscription_service.change_plan(subscription.id, "professional")

        assert result.change_type == "upgrade"
        assert result.proration_amount == Decimal("35.00")
        assert result.proration_charged is True
        assert result.current_period_end == BillingInterval.MONTHLY.add_to(
            frozen_clock.now
        )
        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("465.00")

        changed = await subscription_service.get_subscription(subscription.id)
        assert changed.plan_id == "professional"
        assert changed.current_period_start == frozen_clock.now

        history = await subscription_service.change_repo.get_by_subscription(
            subscription.id
        )
        assert len(history) == 1
        assert history[0].proration_amount == Decimal("35.00")

    async def test_downgrade_credit_is_not_refunded(
        self, mock_start_span, subscription_service, ledger, default_plans, frozen_clock
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "growth"
        )
        frozen_clock.set(halfway(subscription))

        result = await subscription_service.change_plan(subscription.id, "starter")

        assert result.change_type == "downgrade"
        assert result.proration_amount == Decimal("-15.00")
        assert result.proration_charged is False
        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("1500.00")

    async def test_deferred_change_keeps_period(
        self, mock_start_span, subscription_service, default_plans, frozen_clock
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )
        frozen_clock.set(halfway(subscription))

        result = await subscription_service.change_plan(
            subscription.id, "growth", proration=False, immediate=False
        )

        assert result.proration_amount == Decimal("0.00")
        assert result.current_period_end == subscription.current_period_end

    async def test_upgrade_fails_without_credit(
        self, mock_start_span, subscription_service, ledger, default_plans, frozen_clock
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )
        await ledger.charge_credits(TENANT_ID, 480, "usage")
        frozen_clock.set(halfway(subscription))

        with pytest.raises(InsufficientCreditsError):
            await subscription_service.change_plan(subscription.id, "enterprise")

        unchanged = await subscription_service.get_subscription(subscription.id)
        assert unchanged.plan_id == "starter"
        assert (
            await subscription_service.change_repo.get_by_subscription(subscription.id)
            == []
        )

    async def test_same_plan_is_rejected(
        self, mock_start_span, subscription_service, default_plans
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )

        with pytest.raises(ValidationError):
            await subscription_service.change_plan(subscription.id, "starter")

    async def test_trial_change_has_no_proration(
        self, mock_start_span, subscription_service, ledger, trial_plan, default_plans
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, trial_plan.id
        )

        result = await subscription_service.change_plan(subscription.id, "growth")

        assert result.proration_amount == Decimal("0.00")
        assert result.current_period_end == subscription.current_period_end

    async def test_canceled_subscription_cannot_change(
        self, mock_start_span, subscription_service, default_plans
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )
        await subscription_service.cancel_subscription(subscription.id, immediate=True)

        with pytest.raises(StateConflictError):
            await subscription_service.change_plan(subscription.id, "growth")

        with pytest.raises(ValidationError):
            await subscription_service.change_plan(subscription.id, "starter")


@patch("common.core.otel_axiom_exporter.axiom_tracer.start_as_current_span")
class TestCancellation:
    async def test_deferred_cancel_finalizes_at_period_end(
        self, mock_start_span, subscription_service, ledger, default_plans, frozen_clock
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )

        pending = await subscription_service.cancel_subscription(
            subscription.id, reason="too expensive"
        )
        assert pending.status == SubscriptionStatus.CANCEL_AT_PERIOD_END
        assert pending.current_period_end == subscription.current_period_end

        with pytest.raises(StateConflictError):
            await subscription_service.cancel_subscription(subscription.id)

        frozen_clock.set(subscription.current_period_end)
        result = await subscription_service.process_billing(subscription.id)

        assert isinstance(result, BillingCanceled)
        assert result.reason == "too expensive"
        canceled = await subscription_service.get_subscription(subscription.id)
        assert canceled.status == SubscriptionStatus.CANCELED
        # No charge for the period that ended
        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("500.00")

    async def test_immediate_cancel_truncates_period(
        self,
        mock_start_span,
        subscription_service,
        scheduler,
        default_plans,
        frozen_clock,
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )
        frozen_clock.advance(days=3)

        canceled = await subscription_service.cancel_subscription(
            subscription.id, immediate=True
        )

        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.canceled_at == frozen_clock.now
        assert canceled.current_period_end == frozen_clock.now
        actions = await scheduler.action_repo.get_for_entity(
            ScheduledActionType.SUBSCRIPTION_BILLING, subscription.id
        )
        assert all(a.status == ScheduledActionStatus.CANCELED for a in actions)

        with pytest.raises(StateConflictError):
            await subscription_service.cancel_subscription(subscription.id)

        skipped = await subscription_service.process_billing(subscription.id)
        assert skipped.reason == "subscription canceled"

    async def test_cancel_frees_tenant_for_new_subscription(
        self, mock_start_span, subscription_service, default_plans
    ):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )
        assert (await subscription_service.get_active_subscription(TENANT_ID)).id == (
            subscription.id
        )

        await subscription_service.cancel_subscription(subscription.id, immediate=True)

        assert await subscription_service.get_active_subscription(TENANT_ID) is None
        replacement = await subscription_service.create_subscription(TENANT_ID, "growth")
        assert replacement.id != subscription.id


@patch("common.core.otel_axiom_exporter.axiom_tracer.start_as_current_span")
class TestDunning:
    async def _failed_renewal(self, subscription_service, ledger, frozen_clock):
        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )
        await ledger.charge_credits(TENANT_ID, 490, "usage")
        frozen_clock.set(subscription.current_period_end)
        result = await subscription_service.process_billing(subscription.id)
        return subscription, result

    async def test_failed_charge_opens_dunning(
        self,
        mock_start_span,
        subscription_service,
        ledger,
        scheduler,
        default_plans,
        frozen_clock,
    ):
        subscription, result = await self._failed_renewal(
            subscription_service, ledger, frozen_clock
        )

        assert isinstance(result, BillingFailed)
        assert result.amount == Decimal("29.00")
        assert result.dunning_id is not None
        assert (result.next_attempt_at - frozen_clock.now).total_seconds() == 24 * 3600

        dunning = await subscription_service.dunning_repo.get(result.dunning_id)
        assert dunning.status == DunningStatus.ACTIVE
        assert dunning.attempt_number == 1
        assert dunning.max_attempts == 3

        retries = await scheduler.action_repo.get_for_entity(
            ScheduledActionType.DUNNING_RETRY, dunning.id
        )
        assert [a.due_at for a in retries] == [result.next_attempt_at]

        # Balance untouched, period not advanced
        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("10.00")
        current = await subscription_service.get_subscription(subscription.id)
        assert current.current_period_end == subscription.current_period_end

        again = await subscription_service.process_billing(subscription.id)
        assert again.reason == "dunning in progress"

    async def test_retry_recovers_after_top_up(
        self,
        mock_start_span,
        subscription_service,
        ledger,
        default_plans,
        frozen_clock,
        fund_tenant,
    ):
        subscription, failed = await self._failed_renewal(
            subscription_service, ledger, frozen_clock
        )

        early = await subscription_service.retry_billing(failed.dunning_id)
        assert early.reason == "retry not yet due"

        await fund_tenant(100)
        frozen_clock.advance(hours=24)
        result = await subscription_service.retry_billing(failed.dunning_id)

        assert isinstance(result, BillingSucceeded)
        assert result.period_start == subscription.current_period_end
        dunning = await subscription_service.dunning_repo.get(failed.dunning_id)
        assert dunning.status == DunningStatus.RECOVERED
        # 10 + 100 - 29 + 500
        assert (await ledger.get_balance(TENANT_ID)).balance == Decimal("581.00")

        done = await subscription_service.retry_billing(failed.dunning_id)
        assert done.reason == "dunning recovered"

    async def test_plan_change_blocked_until_dunning_resolves(
        self,
        mock_start_span,
        subscription_service,
        ledger,
        default_plans,
        frozen_clock,
        fund_tenant,
    ):
        subscription, failed = await self._failed_renewal(
            subscription_service, ledger, frozen_clock
        )
        await fund_tenant(1000)

        with pytest.raises(StateConflictError):
            await subscription_service.change_plan(
                subscription.id, "growth", immediate=True
            )

        unchanged = await subscription_service.get_subscription(subscription.id)
        assert unchanged.plan_id == "starter"
        assert unchanged.current_period_end == subscription.current_period_end

        frozen_clock.advance(hours=24)
        recovered = await subscription_service.retry_billing(failed.dunning_id)
        assert isinstance(recovered, BillingSucceeded)
        assert recovered.period_start == subscription.current_period_end

        result = await subscription_service.change_plan(
            subscription.id, "growth", immediate=True
        )
        assert result.to_plan_id == "growth"

    async def test_exhausted_dunning_cancels_subscription(
        self,
        mock_start_span,
        subscription_service,
        ledger,
        default_plans,
        frozen_clock,
    ):
        subscription, failed = await self._failed_renewal(
            subscription_service, ledger, frozen_clock
        )

        frozen_clock.advance(hours=24)
        second = await subscription_service.retry_billing(failed.dunning_id)
        assert isinstance(second, BillingFailed)
        assert (
            await subscription_service.dunning_repo.get(failed.dunning_id)
        ).attempt_number == 2

        frozen_clock.advance(hours=24)
        final = await subscription_service.retry_billing(failed.dunning_id)

        assert isinstance(final, BillingCanceled)
        assert final.reason == "dunning_exhausted"
        canceled = await subscription_service.get_subscription(subscription.id)
        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.cancellation_reason == "dunning_exhausted"
        dunning = await subscription_service.dunning_repo.get(failed.dunning_id)
        assert dunning.status == DunningStatus.EXHAUSTED

    async def test_pending_cancel_during_dunning_cancels_now(
        self,
        mock_start_span,
        subscription_service,
        ledger,
        default_plans,
        frozen_clock,
    ):
        subscription, failed = await self._failed_renewal(
            subscription_service, ledger, frozen_clock
        )
        await subscription_service.cancel_subscription(subscription.id)

        frozen_clock.advance(hours=24)
        result = await subscription_service.retry_billing(failed.dunning_id)

        assert isinstance(result, BillingCanceled)
        dunning = await subscription_service.dunning_repo.get(failed.dunning_id)
        assert dunning.status == DunningStatus.CANCELED

    async def test_unknown_dunning_attempt(self, mock_start_span, subscription_service):
        with pytest.raises(NotFoundError):
            await subscription_service.retry_billing(31337)


@patch("common.core.otel_axiom_exporter.axiom_tracer.start_as_current_span")
class TestSubscriptionStatistics:
    async def test_recurring_credits_and_churn(
        self, mock_start_span, subscription_service, default_plans
    ):
        await subscription_service.create_subscription(TENANT_ID, "starter", quantity=2)
        churned = await subscription_service.create_subscription(
            OTHER_TENANT_ID, "growth"
        )
        await subscription_service.cancel_subscription(churned.id, immediate=True)

        stats = await subscription_service.get_subscription_statistics()

        assert stats.total == 2
        assert stats.by_status == {"active": 1, "canceled": 1}
        assert stats.monthly_recurring_credits == Decimal("58.00")
        assert stats.canceled_last_30_days == 1
        assert stats.churn_rate == Decimal("0.5000")


@patch("common.core.otel_axiom_exporter.axiom_tracer.start_as_current_span")
class TestLookups:
    async def test_active_subscription_cached_until_canceled(
        self, mock_start_span, subscription_service, default_plans, memory_cache
    ):
        assert await subscription_service.get_active_subscription(TENANT_ID) is None

        subscription = await subscription_service.create_subscription(
            TENANT_ID, "starter"
        )
        found = await subscription_service.get_active_subscription(TENANT_ID)

        assert found.id == subscription.id
        assert await memory_cache.get(subscription_by_tenant_key(TENANT_ID)) is not None

        await subscription_service.cancel_subscription(subscription.id, immediate=True)

        assert await memory_cache.get(subscription_by_tenant_key(TENANT_ID)) is None
        assert await subscription_service.get_active_subscription(TENANT_ID) is None

    async def test_get_subscription_unknown(self, mock_start_span, subscription_service):
        with pytest.raises(NotFoundError):
            await subscription_service.get_subscription(999)

    async def test_list_plans_hides_inactive(
        self, mock_start_span, plan_service, default_plans
    ):
        await plan_service.create_plan(
            SubscriptionPlanCreateModel(
                id="legacy",
                name="Legacy",
                price=Decimal("10.00"),
                credits_included=Decimal("0"),
                active=False,
            )
        )

        active = {plan.id for plan in await plan_service.list_plans()}
        everything = {plan.id for plan in await plan_service.list_plans(active_only=False)}

        assert active == {"starter", "growth", "professional", "enterprise"}
        assert everything == active | {"legacy"}

    async def test_default_plans_are_idempotent(
        self, mock_start_span, plan_service, default_plans
    ):
        again = await plan_service.ensure_default_plans()

        assert [plan.id for plan in again] == [plan.id for plan in default_plans]
        assert len(await plan_service.list_plans(active_only=False)) == 4
