"""
Database entities for the credit ledger.
"""

from sqlalchemy import Column, String, Numeric, Index, JSON, ForeignKey, Text
from sqlalchemy.sql import func

from common.db.base import Base, BigIntegerType, UTCDateTime


class CreditTransactionEntity(Base):
    """
    Append-only ledger entry.

    Balance for a tenant is the sum of ``amount`` over completed rows.
    Only status and metadata change, and only until the row is terminal.
    """

    __tablename__ = "credit_transactions"

    id = Column(BigIntegerType, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    type = Column(String(32), nullable=False)  # purchase, consumption, adjustment
    amount = Column(Numeric(14, 2), nullable=False)  # signed
    status = Column(String(32), nullable=False, index=True)
    description = Column(Text, nullable=True)

    reservation_id = Column(
        BigIntegerType,
        ForeignKey("credit_reservations.id", ondelete="SET NULL"),
        nullable=True,
    )
    payment_id = Column(
        BigIntegerType,
        ForeignKey("payments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    transaction_metadata = Column("metadata", JSON, nullable=False, default=dict)

    completed_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at = Column(
        UTCDateTime(), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_credit_tx_tenant_status", "tenant_id", "status"),
        Index("idx_credit_tx_tenant_created", "tenant_id", "created_at"),
    )


class CreditReservationEntity(Base):
    """
    Time-bounded hold against a tenant's available credit.

    Leaves ``active`` exactly once (consumed, released or expired).
    """

    __tablename__ = "credit_reservations"

    id = Column(BigIntegerType, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    amount = Column(Numeric(14, 2), nullable=False)
    purpose = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False, index=True)
    expires_at = Column(UTCDateTime(), nullable=False)

    consumed_at = Column(UTCDateTime(), nullable=True)
    released_at = Column(UTCDateTime(), nullable=True)
    release_reason = Column(String(255), nullable=True)
    transaction_id = Column(BigIntegerType, nullable=True)  # consumption entry
    reservation_metadata = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at = Column(
        UTCDateTime(), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_credit_reservation_tenant_status", "tenant_id", "status"),
        Index("idx_credit_reservation_expiry", "status", "expires_at"),
    )
