"""
Database entity for the durable due-queue.
"""

from sqlalchemy import Column, String, Integer, Index, Text
from sqlalchemy.sql import func

from common.db.base import Base, BigIntegerType, UTCDateTime


class ScheduledActionEntity(Base):
    """
    A deferred state transition anchored to wall-clock time.

    Rows are written in the same transaction as the change that needs them,
    and drained by the scheduler worker, so pending work survives restarts.
    """

    __tablename__ = "scheduled_actions"

    id = Column(BigIntegerType, primary_key=True, index=True, autoincrement=True)
    action_type = Column(String(64), nullable=False)
    entity_id = Column(BigIntegerType, nullable=False)
    due_at = Column(UTCDateTime(), nullable=False)
    status = Column(String(32), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at = Column(
        UTCDateTime(), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_scheduled_action_due", "status", "due_at"),
        Index("idx_scheduled_action_entity", "action_type", "entity_id", "status"),
    )
