from datetime import datetime, timedelta
from typing import Optional

from common.core import clock
from common.core.config import settings
from common.core.otel_axiom_exporter import trace_span, get_logger
from common.providers.messaging.event_publisher import EventPublisher
from common.workers.base_worker import BaseWorker
from packages.billing.models.domain.enums import ScheduledActionType
from packages.billing.models.domain.scheduled_action import ScheduledAction
from packages.billing.services.credit_service import CreditLedgerService
from packages.billing.services.payment_service import PaymentGatewayService
from packages.billing.services.scheduler_service import SchedulerService
from packages.billing.services.subscription_service import SubscriptionService

logger = get_logger(__name__)


class DueActionWorker(BaseWorker):
    """
    Runs scheduled billing actions once they fall due.

    Every handler is idempotent, so an action that runs twice after a lease
    expired does no harm. Besides the queue, the worker periodically sweeps
    for overdue subscriptions and lapsed reservations in case an action row
    was lost.
    """

    def __init__(
        self,
        subscriptions: Optional[SubscriptionService] = None,
        worker_id: Optional[str] = None,
    ):
        super().__init__(
            "billing_scheduler",
            settings.scheduler_poll_interval_seconds,
            worker_id=worker_id,
        )
        if subscriptions is None:
            events = EventPublisher()
            scheduler = SchedulerService()
            gateway = PaymentGatewayService(event_publisher=events, scheduler=scheduler)
            ledger = CreditLedgerService(
                payment_gateway=gateway, event_publisher=events, scheduler=scheduler
            )
            subscriptions = SubscriptionService(
                ledger=ledger, event_publisher=events, scheduler=scheduler
            )
        self.subscriptions = subscriptions
        self.ledger = subscriptions.ledger
        self.scheduler = subscriptions.scheduler
        self.payments = self.ledger.payment_gateway
        self._last_sweep: Optional[datetime] = None

    async def _dispatch(self, action: ScheduledAction) -> None:
        if action.action_type == ScheduledActionType.RESERVATION_EXPIRY:
            await self.ledger.expire_reservation(action.entity_id)
        elif action.action_type == ScheduledActionType.PAYMENT_EXPIRY:
            await self.payments.expire_payment(action.entity_id)
        elif action.action_type == ScheduledActionType.SUBSCRIPTION_BILLING:
            await self.subscriptions.process_billing(action.entity_id)
        elif action.action_type == ScheduledActionType.DUNNING_RETRY:
            await self.subscriptions.retry_billing(action.entity_id)
        else:
            raise ValueError(f"Unknown scheduled action type: {action.action_type}")

    @trace_span
    async def run_action(self, action: ScheduledAction) -> bool:
        """Run one claimed action. Returns True when it completed."""
        try:
            await self._dispatch(action)
        except Exception as e:
            if action.attempts < settings.scheduler_max_attempts:
                retry_at = clock.utcnow() + timedelta(
                    seconds=settings.scheduler_retry_backoff_seconds * action.attempts
                )
                await self.scheduler.reschedule(action.id, retry_at, error=str(e))
                logger.warning(
                    f"Scheduled action {action.id} failed, retrying at {retry_at.isoformat()}: {e}",
                    extra={
                        "action_id": action.id,
                        "action_type": action.action_type.value,
                        "attempts": action.attempts,
                    },
                )
            else:
                await self.scheduler.fail(action.id, str(e))
                logger.error(
                    f"Scheduled action {action.id} failed permanently: {e}",
                    extra={
                        "action_id": action.id,
                        "action_type": action.action_type.value,
                        "entity_id": action.entity_id,
                    },
                    exc_info=True,
                )
            return False

        await self.scheduler.complete(action.id)
        return True

    async def _sweep_if_due(self) -> None:
        now = clock.utcnow()
        interval = timedelta(seconds=settings.billing_sweep_interval_seconds)
        if self._last_sweep is not None and now - self._last_sweep < interval:
            return
        self._last_sweep = now

        summary = await self.subscriptions.process_due_billing()
        expired = await self.ledger.cleanup_expired_reservations()
        if summary.processed or expired:
            logger.info(
                "Billing sweep finished",
                extra={
                    "subscriptions_processed": summary.processed,
                    "subscriptions_failed": summary.failed,
                    "reservations_expired": expired,
                },
            )

    async def poll_once(self) -> int:
        await self.scheduler.release_stale()

        actions = await self.scheduler.claim_due()
        for action in actions:
            await self.run_action(action)

        try:
            await self._sweep_if_due()
        except Exception as e:
            logger.error(f"Billing sweep failed: {e}", exc_info=True)

        return len(actions)
