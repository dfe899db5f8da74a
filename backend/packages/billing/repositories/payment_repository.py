"""
Repositories for payments, refunds and webhook audit.
"""

from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, func, update

from common.core.otel_axiom_exporter import trace_span
from common.repositories.base import BaseRepository
from packages.billing.models.database.payment import (
    PaymentEntity,
    RefundEntity,
    WebhookEventEntity,
)
from packages.billing.models.domain.enums import RefundStatus
from packages.billing.models.domain.payment import Payment, Refund, WebhookEvent


class PaymentRepository(BaseRepository[PaymentEntity, Payment]):
    def __init__(self):
        super().__init__(PaymentEntity, Payment)

    @trace_span
    async def get_by_provider_payment_id(
        self, provider_payment_id: str
    ) -> Optional[Payment]:
        """Lookup used for webhook correlation."""
        async with self._get_session() as session:
            result = await session.execute(
                select(PaymentEntity)
                .where(PaymentEntity.provider_payment_id == provider_payment_id)
                .execution_options(populate_existing=True)
            )
            entity = result.scalar_one_or_none()
            return self._entity_to_domain(entity) if entity else None

    @trace_span
    async def get_stats(self, tenant_id: str, since: datetime) -> Dict[str, Dict]:
        """Counts by status and by method, plus completed amount, since ``since``."""
        async with self._get_session() as session:
            result = await session.execute(
                select(
                    PaymentEntity.status,
                    PaymentEntity.method,
                    func.count(PaymentEntity.id).label("total"),
                    func.coalesce(func.sum(PaymentEntity.amount), 0).label("amount"),
                )
                .where(
                    PaymentEntity.tenant_id == tenant_id,
                    PaymentEntity.created_at >= since,
                )
                .group_by(PaymentEntity.status, PaymentEntity.method)
            )

            by_status: Dict[str, int] = {}
            by_method: Dict[str, int] = {}
            amount_by_status: Dict[str, int] = {}
            for row in result:
                by_status[row.status] = by_status.get(row.status, 0) + row.total
                by_method[row.method] = by_method.get(row.method, 0) + row.total
                amount_by_status[row.status] = amount_by_status.get(
                    row.status, 0
                ) + int(row.amount)

            return {
                "by_status": by_status,
                "by_method": by_method,
                "amount_by_status": amount_by_status,
            }


class RefundRepository(BaseRepository[RefundEntity, Refund]):
    def __init__(self):
        super().__init__(RefundEntity, Refund)

    @trace_span
    async def get_refunded_total(self, payment_id: int) -> int:
        """Sum of successful refunds for a payment, in cents."""
        async with self._get_session() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(RefundEntity.amount), 0)).where(
                    RefundEntity.payment_id == payment_id,
                    RefundEntity.status == RefundStatus.COMPLETED.value,
                )
            )
            return int(result.scalar_one() or 0)

    @trace_span
    async def get_refunded_total_for_tenant(self, tenant_id: str, since: datetime) -> int:
        async with self._get_session() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(RefundEntity.amount), 0))
                .join(PaymentEntity, PaymentEntity.id == RefundEntity.payment_id)
                .where(
                    PaymentEntity.tenant_id == tenant_id,
                    RefundEntity.status == RefundStatus.COMPLETED.value,
                    RefundEntity.created_at >= since,
                )
            )
            return int(result.scalar_one() or 0)


class WebhookEventRepository(BaseRepository[WebhookEventEntity, WebhookEvent]):
    def __init__(self):
        super().__init__(WebhookEventEntity, WebhookEvent)

    @trace_span
    async def mark_processed(
        self,
        webhook_id: int,
        processed: bool,
        result: Optional[dict] = None,
        error_message: Optional[str] = None,
    ) -> None:
        async with self._get_session() as session:
            await session.execute(
                update(WebhookEventEntity)
                .where(WebhookEventEntity.id == webhook_id)
                .values(processed=processed, result=result, error_message=error_message)
            )
            await session.flush()
