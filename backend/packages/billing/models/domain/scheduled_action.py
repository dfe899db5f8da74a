"""
Domain models for the durable due-queue.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from packages.billing.models.domain.enums import (
    ScheduledActionType,
    ScheduledActionStatus,
)


class ScheduledAction(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action_type: ScheduledActionType
    entity_id: int
    due_at: datetime
    status: ScheduledActionStatus
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ScheduledActionCreateModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    action_type: ScheduledActionType
    entity_id: int
    due_at: datetime
    status: ScheduledActionStatus = ScheduledActionStatus.PENDING
