"""
Repository for credit reservations.
"""

from datetime import datetime
from decimal import Decimal
from typing import List

from sqlalchemy import select, func

from common.core.otel_axiom_exporter import trace_span
from common.repositories.base import BaseRepository
from packages.billing.models.database.credit import CreditReservationEntity
from packages.billing.models.domain.credit import CreditReservation
from packages.billing.models.domain.enums import ReservationStatus


class CreditReservationRepository(
    BaseRepository[CreditReservationEntity, CreditReservation]
):
    def __init__(self):
        super().__init__(CreditReservationEntity, CreditReservation)

    @trace_span
    async def get_reserved_total(self, tenant_id: str, now: datetime) -> Decimal:
        """Sum of active, unexpired holds. Expired-but-unswept rows don't count."""
        async with self._get_session() as session:
            result = await session.execute(
                select(
                    func.coalesce(func.sum(CreditReservationEntity.amount), 0)
                ).where(
                    CreditReservationEntity.tenant_id == tenant_id,
                    CreditReservationEntity.status == ReservationStatus.ACTIVE.value,
                    CreditReservationEntity.expires_at > now,
                )
            )
            return Decimal(result.scalar_one() or 0).quantize(Decimal("0.01"))

    @trace_span
    async def get_expired_active(
        self, now: datetime, limit: int = 100
    ) -> List[CreditReservation]:
        async with self._get_session() as session:
            result = await session.execute(
                select(CreditReservationEntity)
                .where(
                    CreditReservationEntity.status == ReservationStatus.ACTIVE.value,
                    CreditReservationEntity.expires_at <= now,
                )
                .order_by(CreditReservationEntity.expires_at)
                .limit(limit)
            )
            return self._entities_to_domain(result.scalars().all())
