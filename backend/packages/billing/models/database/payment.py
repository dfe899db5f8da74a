"""
Database entities for payments, refunds and webhook audit.
"""

from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    ForeignKey,
    Index,
    JSON,
    Text,
)
from sqlalchemy.sql import func

from common.db.base import Base, BigIntegerType, UTCDateTime


class PaymentEntity(Base):
    """
    Outbound payment through a provider rail.

    Leaves ``pending`` exactly once. ``provider_payment_id`` is unique and is
    the lookup key for webhook idempotency.
    """

    __tablename__ = "payments"

    id = Column(BigIntegerType, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    method = Column(String(32), nullable=False)  # pix, credit_card, debit_card
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String(3), nullable=False)
    status = Column(String(32), nullable=False, index=True)
    description = Column(Text, nullable=True)

    provider = Column(String(32), nullable=False)
    provider_payment_id = Column(String(255), nullable=True, unique=True, index=True)
    provider_data = Column(JSON, nullable=False, default=dict)
    failure_reason = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=False, default=dict)

    expires_at = Column(UTCDateTime(), nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)
    failed_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at = Column(
        UTCDateTime(), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_payment_tenant_created", "tenant_id", "created_at"),
    )


class RefundEntity(Base):
    """Refund attempt against a completed payment, kept whether or not it succeeded."""

    __tablename__ = "payment_refunds"

    id = Column(BigIntegerType, primary_key=True, index=True, autoincrement=True)
    payment_id = Column(
        BigIntegerType,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount = Column(Integer, nullable=False)  # cents
    reason = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False)  # completed, failed
    provider_refund_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())


class WebhookEventEntity(Base):
    """Audit trail of every inbound provider webhook that passed verification."""

    __tablename__ = "payment_webhooks"

    id = Column(BigIntegerType, primary_key=True, index=True, autoincrement=True)
    provider = Column(String(32), nullable=False, index=True)
    event_type = Column(String(128), nullable=False)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())
