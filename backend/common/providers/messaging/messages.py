from datetime import datetime
from typing import Any, Dict
from uuid import uuid4

from pydantic import BaseModel, Field

from common.core import clock


class DomainEventMessage(BaseModel):
    """Envelope for a billing domain event on the bus.

    The routing key is the event name (e.g. ``credits.purchased``), so
    consumers can bind with topic patterns such as ``payment.*``.
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_name: str
    occurred_at: datetime = Field(default_factory=clock.utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)
