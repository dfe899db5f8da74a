"""
Repository for the plan catalog.
"""

from typing import List

from sqlalchemy import select

from common.core.otel_axiom_exporter import trace_span
from common.repositories.base import BaseRepository
from packages.billing.models.database.plan import SubscriptionPlanEntity
from packages.billing.models.domain.plans import (
    SubscriptionPlan,
    SubscriptionPlanCreateModel,
)


class SubscriptionPlanRepository(
    BaseRepository[SubscriptionPlanEntity, SubscriptionPlan]
):
    def __init__(self):
        super().__init__(SubscriptionPlanEntity, SubscriptionPlan)

    @trace_span
    async def list_plans(self, active_only: bool = True) -> List[SubscriptionPlan]:
        query = select(SubscriptionPlanEntity).order_by(
            SubscriptionPlanEntity.price, SubscriptionPlanEntity.id
        )
        if active_only:
            query = query.where(SubscriptionPlanEntity.active.is_(True))

        async with self._get_session() as session:
            result = await session.execute(query)
            return self._entities_to_domain(result.scalars().all())

    @trace_span
    async def upsert(self, create_model: SubscriptionPlanCreateModel) -> SubscriptionPlan:
        """Insert the plan, or overwrite every given field of an existing one."""
        data = create_model.model_dump()
        async with self._get_session() as session:
            entity = await session.merge(SubscriptionPlanEntity(**data))
            await session.flush()
            await session.refresh(entity)
            return self._entity_to_domain(entity)
