"""
Repository for subscription management.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, func, exists

from common.core.otel_axiom_exporter import trace_span
from common.repositories.base import BaseRepository
from packages.billing.models.database.plan import SubscriptionPlanEntity
from packages.billing.models.database.subscription import (
    SubscriptionEntity,
    SubscriptionChangeEntity,
    DunningAttemptEntity,
)
from packages.billing.models.domain.enums import DunningStatus, SubscriptionStatus
from packages.billing.models.domain.subscription import (
    Subscription,
    SubscriptionChange,
    DunningAttempt,
)


class SubscriptionRepository(BaseRepository[SubscriptionEntity, Subscription]):
    """Repository for managing tenant subscriptions."""

    def __init__(self):
        super().__init__(SubscriptionEntity, Subscription)

    @trace_span
    async def get_open_for_tenant(self, tenant_id: str) -> Optional[Subscription]:
        """Get the tenant's non-canceled subscription, if any."""
        async with self._get_session() as session:
            result = await session.execute(
                select(SubscriptionEntity)
                .where(
                    SubscriptionEntity.tenant_id == tenant_id,
                    SubscriptionEntity.status != SubscriptionStatus.CANCELED.value,
                )
                .order_by(SubscriptionEntity.id.desc())
                .execution_options(populate_existing=True)
            )
            entity = result.scalars().first()
            return self._entity_to_domain(entity) if entity else None

    @trace_span
    async def get_due_for_billing(
        self, now: datetime, limit: int = 100
    ) -> List[Subscription]:
        """
        Billable subscriptions whose period has elapsed.

        Subscriptions with an open dunning attempt are left to the retry
        schedule. Pending cancellations are included so they get finalized.
        """
        open_dunning = exists().where(
            DunningAttemptEntity.subscription_id == SubscriptionEntity.id,
            DunningAttemptEntity.status == DunningStatus.ACTIVE.value,
        )
        async with self._get_session() as session:
            result = await session.execute(
                select(SubscriptionEntity)
                .where(
                    SubscriptionEntity.status.in_(
                        [
                            SubscriptionStatus.TRIALING.value,
                            SubscriptionStatus.ACTIVE.value,
                            SubscriptionStatus.CANCEL_AT_PERIOD_END.value,
                        ]
                    ),
                    SubscriptionEntity.current_period_end <= now,
                    ~open_dunning,
                )
                .order_by(SubscriptionEntity.current_period_end)
                .limit(limit)
            )
            return self._entities_to_domain(result.scalars().all())

    @trace_span
    async def count_by_status(self) -> Dict[str, int]:
        async with self._get_session() as session:
            result = await session.execute(
                select(
                    SubscriptionEntity.status,
                    func.count(SubscriptionEntity.id).label("total"),
                ).group_by(SubscriptionEntity.status)
            )
            return {row.status: row.total for row in result}

    @trace_span
    async def count_canceled_since(self, since: datetime) -> int:
        async with self._get_session() as session:
            result = await session.execute(
                select(func.count(SubscriptionEntity.id)).where(
                    SubscriptionEntity.status == SubscriptionStatus.CANCELED.value,
                    SubscriptionEntity.canceled_at >= since,
                )
            )
            return result.scalar_one() or 0

    @trace_span
    async def get_active_pricing(self) -> List[Tuple[Decimal, str, int]]:
        """(plan price, plan interval, quantity) for every active subscription."""
        async with self._get_session() as session:
            result = await session.execute(
                select(
                    SubscriptionPlanEntity.price,
                    SubscriptionPlanEntity.interval,
                    SubscriptionEntity.quantity,
                )
                .join(
                    SubscriptionPlanEntity,
                    SubscriptionPlanEntity.id == SubscriptionEntity.plan_id,
                )
                .where(SubscriptionEntity.status == SubscriptionStatus.ACTIVE.value)
            )
            return [
                (Decimal(row.price), row.interval, row.quantity) for row in result
            ]


class SubscriptionChangeRepository(
    BaseRepository[SubscriptionChangeEntity, SubscriptionChange]
):
    def __init__(self):
        super().__init__(SubscriptionChangeEntity, SubscriptionChange)

    @trace_span
    async def get_by_subscription(self, subscription_id: int) -> List[SubscriptionChange]:
        async with self._get_session() as session:
            result = await session.execute(
                select(SubscriptionChangeEntity)
                .where(SubscriptionChangeEntity.subscription_id == subscription_id)
                .order_by(SubscriptionChangeEntity.id)
            )
            return self._entities_to_domain(result.scalars().all())


class DunningAttemptRepository(BaseRepository[DunningAttemptEntity, DunningAttempt]):
    def __init__(self):
        super().__init__(DunningAttemptEntity, DunningAttempt)

    @trace_span
    async def get_open_for_subscription(
        self, subscription_id: int
    ) -> Optional[DunningAttempt]:
        async with self._get_session() as session:
            result = await session.execute(
                select(DunningAttemptEntity)
                .where(
                    DunningAttemptEntity.subscription_id == subscription_id,
                    DunningAttemptEntity.status == DunningStatus.ACTIVE.value,
                )
                .order_by(DunningAttemptEntity.id.desc())
                .execution_options(populate_existing=True)
            )
            entity = result.scalars().first()
            return self._entity_to_domain(entity) if entity else None
