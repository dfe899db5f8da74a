"""
Database entities for subscriptions, plan changes and dunning.
"""

from sqlalchemy import (
    Column,
    String,
    Integer,
    Numeric,
    Boolean,
    ForeignKey,
    Index,
    JSON,
    Text,
)
from sqlalchemy.sql import func, text

from common.db.base import Base, BigIntegerType, UTCDateTime


class SubscriptionEntity(Base):
    """
    Tenant subscription database entity.

    A tenant holds at most one non-canceled subscription at a time.
    """

    __tablename__ = "subscriptions"

    id = Column(BigIntegerType, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(
        String(64), ForeignKey("subscription_plans.id"), nullable=False, index=True
    )

    status = Column(
        String(32), nullable=False, index=True
    )  # trialing, active, cancel_at_period_end, canceled
    quantity = Column(Integer, nullable=False, default=1)

    # Billing cycle
    current_period_start = Column(UTCDateTime(), nullable=False)
    current_period_end = Column(UTCDateTime(), nullable=False)
    trial_end = Column(UTCDateTime(), nullable=True)

    # Lifecycle
    canceled_at = Column(UTCDateTime(), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    subscription_metadata = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at = Column(
        UTCDateTime(), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_subscription_tenant_status", "tenant_id", "status"),
        Index("idx_subscription_status_period_end", "status", "current_period_end"),
        Index(
            "uq_subscription_tenant_open",
            "tenant_id",
            unique=True,
            postgresql_where=text("status <> 'canceled'"),
            sqlite_where=text("status <> 'canceled'"),
        ),
    )


class SubscriptionChangeEntity(Base):
    """Audit record of a plan change."""

    __tablename__ = "subscription_changes"

    id = Column(BigIntegerType, primary_key=True, index=True, autoincrement=True)
    subscription_id = Column(
        BigIntegerType,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_plan_id = Column(String(64), nullable=False)
    to_plan_id = Column(String(64), nullable=False)
    proration_amount = Column(Numeric(14, 2), nullable=False, default=0)
    change_type = Column(String(32), nullable=False)  # upgrade, downgrade
    immediate = Column(Boolean, nullable=False, default=True)

    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())


class DunningAttemptEntity(Base):
    """Retry state after a failed recurring charge."""

    __tablename__ = "subscription_dunning"

    id = Column(BigIntegerType, primary_key=True, index=True, autoincrement=True)
    subscription_id = Column(
        BigIntegerType,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_number = Column(Integer, nullable=False, default=1)
    max_attempts = Column(Integer, nullable=False)
    amount_due = Column(Numeric(14, 2), nullable=False)
    next_attempt_at = Column(UTCDateTime(), nullable=True)
    status = Column(
        String(32), nullable=False, index=True
    )  # active, recovered, exhausted, canceled
    last_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at = Column(
        UTCDateTime(), nullable=False, server_default=func.now(), onupdate=func.now()
    )
