"""
Repository for the durable due-queue.
"""

from datetime import datetime
from typing import List

from sqlalchemy import select, update

from common.core.otel_axiom_exporter import trace_span
from common.repositories.base import BaseRepository
from packages.billing.models.database.scheduled_action import ScheduledActionEntity
from packages.billing.models.domain.enums import (
    ScheduledActionStatus,
    ScheduledActionType,
)
from packages.billing.models.domain.scheduled_action import ScheduledAction


class ScheduledActionRepository(
    BaseRepository[ScheduledActionEntity, ScheduledAction]
):
    def __init__(self):
        super().__init__(ScheduledActionEntity, ScheduledAction)

    @trace_span
    async def get_due(self, now: datetime, limit: int) -> List[ScheduledAction]:
        async with self._get_session() as session:
            result = await session.execute(
                select(ScheduledActionEntity)
                .where(
                    ScheduledActionEntity.status
                    == ScheduledActionStatus.PENDING.value,
                    ScheduledActionEntity.due_at <= now,
                )
                .order_by(ScheduledActionEntity.due_at, ScheduledActionEntity.id)
                .limit(limit)
            )
            return self._entities_to_domain(result.scalars().all())

    @trace_span
    async def get_for_entity(
        self, action_type: ScheduledActionType, entity_id: int
    ) -> List[ScheduledAction]:
        async with self._get_session() as session:
            result = await session.execute(
                select(ScheduledActionEntity)
                .where(
                    ScheduledActionEntity.action_type == action_type.value,
                    ScheduledActionEntity.entity_id == entity_id,
                )
                .order_by(ScheduledActionEntity.id)
                .execution_options(populate_existing=True)
            )
            return self._entities_to_domain(result.scalars().all())

    @trace_span
    async def cancel_pending(
        self, action_type: ScheduledActionType, entity_id: int
    ) -> int:
        """Cancel every pending action of this type for the entity."""
        async with self._get_session() as session:
            result = await session.execute(
                update(ScheduledActionEntity)
                .where(
                    ScheduledActionEntity.action_type == action_type.value,
                    ScheduledActionEntity.entity_id == entity_id,
                    ScheduledActionEntity.status
                    == ScheduledActionStatus.PENDING.value,
                )
                .values(status=ScheduledActionStatus.CANCELED.value)
                .execution_options(synchronize_session=False)
            )
            await session.flush()
            return result.rowcount

    @trace_span
    async def release_stale(self, started_before: datetime) -> int:
        """Return running actions whose lease ran out to pending."""
        async with self._get_session() as session:
            result = await session.execute(
                update(ScheduledActionEntity)
                .where(
                    ScheduledActionEntity.status
                    == ScheduledActionStatus.RUNNING.value,
                    ScheduledActionEntity.updated_at < started_before,
                )
                .values(status=ScheduledActionStatus.PENDING.value)
                .execution_options(synchronize_session=False)
            )
            await session.flush()
            return result.rowcount
