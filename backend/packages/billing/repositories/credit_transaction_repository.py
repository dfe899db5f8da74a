"""
Repository for the credit ledger.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, func, text, case

from common.core.otel_axiom_exporter import trace_span
from common.repositories.base import BaseRepository
from packages.billing.models.database.credit import CreditTransactionEntity
from packages.billing.models.domain.credit import CreditTransaction
from packages.billing.models.domain.enums import TransactionStatus, TransactionType


class CreditTransactionRepository(
    BaseRepository[CreditTransactionEntity, CreditTransaction]
):
    """Repository for ledger entries."""

    def __init__(self):
        super().__init__(CreditTransactionEntity, CreditTransaction)

    @trace_span
    async def get_balance(self, tenant_id: str) -> Decimal:
        """Sum of completed entries for a tenant."""
        async with self._get_session() as session:
            result = await session.execute(
                select(
                    func.coalesce(func.sum(CreditTransactionEntity.amount), 0)
                ).where(
                    CreditTransactionEntity.tenant_id == tenant_id,
                    CreditTransactionEntity.status == TransactionStatus.COMPLETED.value,
                )
            )
            return Decimal(result.scalar_one() or 0).quantize(Decimal("0.01"))

    @trace_span
    async def acquire_tenant_ledger_lock(self, tenant_id: str) -> None:
        """
        Serialize check-then-write ledger operations for one tenant.

        Uses pg_advisory_xact_lock, so the lock is released when the enclosing
        transaction commits or rolls back. Only meaningful inside transaction().
        Other dialects serialize writers on their own and skip the lock.
        """
        async with self._get_session() as session:
            if session.get_bind().dialect.name != "postgresql":
                return
            await session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:tenant_id))"),
                {"tenant_id": f"credit_ledger:{tenant_id}"},
            )

    @trace_span
    async def get_history(
        self,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[CreditTransaction]:
        """Ledger entries for a tenant, newest first."""
        query = select(CreditTransactionEntity).where(
            CreditTransactionEntity.tenant_id == tenant_id
        )
        if type is not None:
            query = query.where(CreditTransactionEntity.type == type.value)
        if start_date is not None:
            query = query.where(CreditTransactionEntity.created_at >= start_date)
        if end_date is not None:
            query = query.where(CreditTransactionEntity.created_at < end_date)

        query = (
            query.order_by(
                CreditTransactionEntity.created_at.desc(),
                CreditTransactionEntity.id.desc(),
            )
            .offset(offset)
            .limit(limit)
        )

        async with self._get_session() as session:
            result = await session.execute(query)
            return self._entities_to_domain(result.scalars().all())

    @trace_span
    async def get_pending_for_payment(
        self, payment_id: int
    ) -> Optional[CreditTransaction]:
        async with self._get_session() as session:
            result = await session.execute(
                select(CreditTransactionEntity).where(
                    CreditTransactionEntity.payment_id == payment_id,
                    CreditTransactionEntity.status == TransactionStatus.PENDING.value,
                )
            )
            entity = result.scalars().first()
            return self._entity_to_domain(entity) if entity else None

    @trace_span
    async def get_window_totals(self, tenant_id: str, since: datetime) -> dict:
        """
        Completed purchase/consumption totals and entry count since ``since``.

        Bonus is read back from each purchase's metadata by the caller, since
        it is not a separate ledger entry.
        """
        completed = CreditTransactionEntity.status == TransactionStatus.COMPLETED.value
        async with self._get_session() as session:
            result = await session.execute(
                select(
                    func.coalesce(
                        func.sum(
                            case(
                                (
                                    CreditTransactionEntity.type
                                    == TransactionType.PURCHASE.value,
                                    CreditTransactionEntity.amount,
                                ),
                                else_=0,
                            )
                        ),
                        0,
                    ).label("purchased"),
                    func.coalesce(
                        func.sum(
                            case(
                                (
                                    CreditTransactionEntity.type
                                    == TransactionType.CONSUMPTION.value,
                                    CreditTransactionEntity.amount,
                                ),
                                else_=0,
                            )
                        ),
                        0,
                    ).label("consumed"),
                    func.count(CreditTransactionEntity.id).label("entries"),
                ).where(
                    CreditTransactionEntity.tenant_id == tenant_id,
                    CreditTransactionEntity.created_at >= since,
                    completed,
                )
            )
            row = result.one()
            return {
                "purchased": Decimal(row.purchased or 0),
                "consumed": abs(Decimal(row.consumed or 0)),
                "count": row.entries or 0,
            }

    @trace_span
    async def get_completed_purchases(
        self, tenant_id: str, since: datetime
    ) -> List[CreditTransaction]:
        async with self._get_session() as session:
            result = await session.execute(
                select(CreditTransactionEntity).where(
                    CreditTransactionEntity.tenant_id == tenant_id,
                    CreditTransactionEntity.type == TransactionType.PURCHASE.value,
                    CreditTransactionEntity.status == TransactionStatus.COMPLETED.value,
                    CreditTransactionEntity.created_at >= since,
                )
            )
            return self._entities_to_domain(result.scalars().all())
