"""
Database entity for subscription plans.
"""

from sqlalchemy import Column, String, Numeric, Integer, Boolean, JSON, Text
from sqlalchemy.sql import func

from common.db.base import Base, UTCDateTime


class SubscriptionPlanEntity(Base):
    """Plan catalog entry, keyed by a stable plan code (e.g. ``growth``)."""

    __tablename__ = "subscription_plans"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    price = Column(Numeric(14, 2), nullable=False)  # in credits
    interval = Column(String(32), nullable=False)  # daily, weekly, monthly, yearly
    credits_included = Column(Numeric(14, 2), nullable=False, default=0)
    trial_days = Column(Integer, nullable=False, default=0)

    features = Column(JSON, nullable=False, default=list)
    limits = Column(JSON, nullable=False, default=dict)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at = Column(
        UTCDateTime(), nullable=False, server_default=func.now(), onupdate=func.now()
    )
