"""
Durable due-queue for time-triggered billing transitions.

Actions are plain rows written in the caller's transaction, so an action
exists exactly when the change that needs it has committed. The scheduler
worker claims due rows with a status compare-and-set, which makes a claim
exclusive even with several workers polling the same table.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from common.core import clock
from common.core.config import settings
from common.core.otel_axiom_exporter import trace_span, get_logger
from packages.billing.models.domain.enums import (
    ScheduledActionStatus,
    ScheduledActionType,
)
from packages.billing.models.domain.scheduled_action import (
    ScheduledAction,
    ScheduledActionCreateModel,
)
from packages.billing.repositories.scheduled_action_repository import (
    ScheduledActionRepository,
)

logger = get_logger(__name__)


class SchedulerService:
    def __init__(self):
        self.action_repo = ScheduledActionRepository()

    @trace_span
    async def schedule(
        self, action_type: ScheduledActionType, entity_id: int, due_at: datetime
    ) -> ScheduledAction:
        action = await self.action_repo.create(
            ScheduledActionCreateModel(
                action_type=action_type, entity_id=entity_id, due_at=due_at
            )
        )
        logger.debug(
            f"Scheduled {action.action_type.value} for entity {entity_id}",
            extra={"action_id": action.id, "due_at": due_at.isoformat()},
        )
        return action

    @trace_span
    async def cancel(self, action_type: ScheduledActionType, entity_id: int) -> int:
        """Cancel pending actions of this type for the entity. Returns how many."""
        return await self.action_repo.cancel_pending(action_type, entity_id)

    @trace_span
    async def replace(
        self, action_type: ScheduledActionType, entity_id: int, due_at: datetime
    ) -> ScheduledAction:
        """Cancel pending actions for the entity and schedule a new one."""
        await self.cancel(action_type, entity_id)
        return await self.schedule(action_type, entity_id, due_at)

    @trace_span
    async def claim_due(self, limit: Optional[int] = None) -> List[ScheduledAction]:
        """
        Claim pending actions whose time has come.

        Each row is moved pending -> running with a compare-and-set; rows
        another worker claimed first are skipped.
        """
        now = clock.utcnow()
        candidates = await self.action_repo.get_due(
            now, limit or settings.scheduler_batch_size
        )

        claimed = []
        for action in candidates:
            won = await self.action_repo.transition_status(
                action.id,
                [ScheduledActionStatus.PENDING],
                ScheduledActionStatus.RUNNING,
                attempts=action.attempts + 1,
                updated_at=now,
            )
            if won:
                claimed.append(
                    action.model_copy(
                        update={
                            "status": ScheduledActionStatus.RUNNING,
                            "attempts": action.attempts + 1,
                        }
                    )
                )
        return claimed

    @trace_span
    async def release_stale(self, lease_seconds: Optional[int] = None) -> int:
        """Put running actions whose worker went away back in the queue."""
        lease = lease_seconds or settings.scheduler_lease_seconds
        released = await self.action_repo.release_stale(
            clock.utcnow() - timedelta(seconds=lease)
        )
        if released:
            logger.warning(f"Released {released} stale scheduled actions")
        return released

    @trace_span
    async def complete(self, action_id: int) -> bool:
        return await self.action_repo.transition_status(
            action_id,
            [ScheduledActionStatus.RUNNING],
            ScheduledActionStatus.COMPLETED,
            updated_at=clock.utcnow(),
        )

    @trace_span
    async def fail(self, action_id: int, error: str) -> bool:
        return await self.action_repo.transition_status(
            action_id,
            [ScheduledActionStatus.RUNNING],
            ScheduledActionStatus.FAILED,
            last_error=error[:2000],
            updated_at=clock.utcnow(),
        )

    @trace_span
    async def reschedule(
        self, action_id: int, due_at: datetime, error: Optional[str] = None
    ) -> bool:
        """Return a running action to pending with a new due time."""
        values = {"due_at": due_at, "updated_at": clock.utcnow()}
        if error is not None:
            values["last_error"] = error[:2000]
        return await self.action_repo.transition_status(
            action_id,
            [ScheduledActionStatus.RUNNING],
            ScheduledActionStatus.PENDING,
            **values,
        )
