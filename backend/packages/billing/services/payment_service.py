"""
Payment gateway: the single entry point to the payment rails.

Card payments settle synchronously; instant transfers (pix) stay pending
until a provider webhook or the expiry action moves them. Every move out of
``pending`` is a compare-and-set, so a webhook, a repeated webhook and the
expiry action can race without a payment settling twice.
"""

import asyncio
import json
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional

from common.core import clock
from common.core.config import settings
from common.core.exceptions import (
    AppException,
    ExternalServiceError,
    NotFoundError,
    RefundWindowError,
    SignatureError,
    StateConflictError,
    ValidationError,
)
from common.core.otel_axiom_exporter import trace_span, get_logger
from common.db.scoped import transaction
from common.providers.messaging.event_publisher import EventPublisher
from packages.billing.models.domain.enums import (
    BillingEvent,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    ScheduledActionType,
    WebhookEventKind,
)
from packages.billing.models.domain.payment import (
    Payment,
    PaymentCreateModel,
    PaymentRequest,
    PaymentStatistics,
    PaymentUpdateModel,
    RefundCreateModel,
    WebhookEventCreateModel,
)
from packages.billing.models.domain.provider import (
    ProviderRefund,
    ProviderWebhookEvent,
)
from packages.billing.models.domain.results import (
    PaymentCompletedResult,
    PaymentFailedResult,
    PaymentPendingResult,
    PaymentResult,
    RefundResult,
    WebhookResult,
)
from packages.billing.providers.payment.factory import (
    get_payment_provider,
    get_webhook_provider,
)
from packages.billing.providers.payment.interface import PaymentProviderInterface
from packages.billing.repositories.payment_repository import (
    PaymentRepository,
    RefundRepository,
    WebhookEventRepository,
)
from packages.billing.services.scheduler_service import SchedulerService

logger = get_logger(__name__)

SettlementListener = Callable[[Payment], Awaitable[None]]


class PaymentGatewayService:
    """Service for payment processing, webhooks and refunds."""

    def __init__(
        self,
        event_publisher: Optional[EventPublisher] = None,
        scheduler: Optional[SchedulerService] = None,
    ):
        self.payment_repo = PaymentRepository()
        self.refund_repo = RefundRepository()
        self.webhook_repo = WebhookEventRepository()
        self.events = event_publisher or EventPublisher()
        self.scheduler = scheduler or SchedulerService()
        self._settlement_listeners: List[SettlementListener] = []

    def add_settlement_listener(self, listener: SettlementListener) -> None:
        """Register a callback run after a payment reaches a terminal status."""
        if listener not in self._settlement_listeners:
            self._settlement_listeners.append(listener)

    async def _notify_settled(self, payment: Payment) -> None:
        for listener in self._settlement_listeners:
            try:
                await listener(payment)
            except Exception as e:
                logger.error(
                    f"Settlement listener failed for payment {payment.id}: {e}",
                    extra={"payment_id": payment.id, "status": payment.status.value},
                    exc_info=True,
                )

    async def _call_provider(self, call: Awaitable):
        return await asyncio.wait_for(
            call, timeout=settings.payment_provider_timeout_seconds
        )

    def _validate_request(self, request: PaymentRequest) -> None:
        if not request.tenant_id:
            raise ValidationError("Tenant ID is required")
        if not (
            settings.payment_min_amount_cents
            <= request.amount
            <= settings.payment_max_amount_cents
        ):
            raise ValidationError(
                f"Amount must be between {settings.payment_min_amount_cents} and "
                f"{settings.payment_max_amount_cents} cents",
                amount=request.amount,
            )
        if request.method not in settings.payment_supported_methods:
            raise ValidationError(
                f"Unsupported payment method: {request.method}", method=request.method
            )
        if request.currency.upper() not in settings.payment_supported_currencies:
            raise ValidationError(
                f"Unsupported currency: {request.currency}", currency=request.currency
            )
        if PaymentMethod(request.method).is_card() and not request.card_token:
            raise ValidationError("Card token is required for card payments")

    @trace_span
    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        """
        Create a payment and hand it to the provider for its method.

        Raises:
            ValidationError: Request failed validation, nothing was persisted
            ExternalServiceError: Provider call failed or timed out; the
                payment is left failed
        """
        self._validate_request(request)
        provider = get_payment_provider(request.method)

        payment = await self.payment_repo.create(
            PaymentCreateModel(
                tenant_id=request.tenant_id,
                method=request.method,
                amount=request.amount,
                currency=request.currency.upper(),
                description=request.description,
                provider=provider.name,
                payment_metadata=request.payment_metadata,
            )
        )

        logger.info(
            f"Processing {payment.method.value} payment {payment.id}",
            extra={
                "payment_id": payment.id,
                "tenant_id": payment.tenant_id,
                "amount": payment.amount,
            },
        )

        try:
            if payment.method == PaymentMethod.PIX:
                result = await self._authorize(payment, provider, request)
            else:
                result = await self._charge(payment, provider, request)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                reason = "Payment provider timed out"
            else:
                reason = str(e) or type(e).__name__
            logger.error(
                f"Payment {payment.id} failed: {reason}",
                extra={"payment_id": payment.id, "error": reason},
            )
            await self._settle(payment.id, PaymentStatus.FAILED, failure_reason=reason)
            if isinstance(e, AppException):
                raise
            raise ExternalServiceError(
                f"Payment processing failed: {reason}", payment_id=payment.id
            ) from e

        await self.events.publish(
            BillingEvent.PAYMENT_PROCESSED,
            {
                "payment_id": payment.id,
                "tenant_id": payment.tenant_id,
                "amount": payment.amount,
                "method": payment.method.value,
                "status": result.status,
            },
        )
        return result

    async def _authorize(
        self,
        payment: Payment,
        provider: PaymentProviderInterface,
        request: PaymentRequest,
    ) -> PaymentPendingResult:
        expires_at = clock.utcnow() + timedelta(
            minutes=settings.pix_payment_timeout_minutes
        )
        authorization = await self._call_provider(
            provider.authorize(
                payment.id,
                payment.amount,
                payment.currency,
                expires_at,
                description=payment.description,
                customer=request.customer,
            )
        )

        async with transaction():
            await self.payment_repo.update(
                payment.id,
                PaymentUpdateModel(
                    provider_payment_id=authorization.provider_payment_id,
                    provider_data={
                        "payment_code": authorization.payment_code,
                        "qr_code_url": authorization.qr_code_url,
                        **authorization.raw,
                    },
                    expires_at=authorization.expires_at,
                ),
            )
            await self.scheduler.schedule(
                ScheduledActionType.PAYMENT_EXPIRY, payment.id, authorization.expires_at
            )

        return PaymentPendingResult(
            payment_id=payment.id,
            provider_payment_id=authorization.provider_payment_id,
            payment_code=authorization.payment_code,
            qr_code_url=authorization.qr_code_url,
            expires_at=authorization.expires_at,
        )

    async def _charge(
        self,
        payment: Payment,
        provider: PaymentProviderInterface,
        request: PaymentRequest,
    ) -> PaymentResult:
        charge = await self._call_provider(
            provider.charge(
                payment.id,
                payment.amount,
                payment.currency,
                request.card_token,
                description=payment.description,
            )
        )

        await self.payment_repo.update(
            payment.id,
            PaymentUpdateModel(
                provider_payment_id=charge.provider_payment_id,
                provider_data=charge.raw,
            ),
        )

        if charge.succeeded:
            await self._settle(payment.id, PaymentStatus.COMPLETED)
            return PaymentCompletedResult(
                payment_id=payment.id, provider_payment_id=charge.provider_payment_id
            )

        await self._settle(
            payment.id, PaymentStatus.FAILED, failure_reason=charge.failure_reason
        )
        return PaymentFailedResult(
            payment_id=payment.id,
            provider_payment_id=charge.provider_payment_id,
            failure_reason=charge.failure_reason,
        )

    async def _settle(
        self,
        payment_id: int,
        new_status: PaymentStatus,
        failure_reason: Optional[str] = None,
    ) -> Optional[Payment]:
        """
        Move a pending payment to a terminal status.

        Returns the settled payment when this call won the transition, None
        when the payment had already left ``pending``. Only the winner
        publishes and notifies listeners.
        """
        now = clock.utcnow()
        values = {"updated_at": now}
        if new_status == PaymentStatus.COMPLETED:
            values["completed_at"] = now
        else:
            values["failed_at"] = now
            values["failure_reason"] = failure_reason

        async with transaction():
            won = await self.payment_repo.transition_status(
                payment_id, [PaymentStatus.PENDING], new_status, **values
            )
            if won:
                await self.scheduler.cancel(
                    ScheduledActionType.PAYMENT_EXPIRY, payment_id
                )

        if not won:
            return None

        payment = await self.payment_repo.get(payment_id)
        event = {
            PaymentStatus.COMPLETED: BillingEvent.PAYMENT_COMPLETED,
            PaymentStatus.FAILED: BillingEvent.PAYMENT_FAILED,
            PaymentStatus.EXPIRED: BillingEvent.PAYMENT_EXPIRED,
        }[new_status]
        await self.events.publish(
            event,
            {
                "payment_id": payment.id,
                "tenant_id": payment.tenant_id,
                "amount": payment.amount,
                "method": payment.method.value,
                "provider": payment.provider.value,
                "failure_reason": payment.failure_reason,
            },
        )
        await self._notify_settled(payment)
        return payment

    @trace_span
    async def handle_webhook(
        self, provider: str, payload: bytes, signature: Optional[str]
    ) -> WebhookResult:
        """
        Verify, record and apply an inbound provider webhook.

        Safe under at-least-once delivery: a payment that already left
        ``pending`` is reported as processed without any further change.

        Raises:
            SignatureError: Signature missing or invalid, nothing was recorded
            ValidationError: Unknown provider or malformed payload
        """
        provider_impl = get_webhook_provider(provider)
        if not provider_impl.verify_webhook_signature(payload, signature):
            logger.warning(f"Rejected {provider} webhook with invalid signature")
            raise SignatureError("Invalid webhook signature", provider=provider)

        try:
            body = json.loads(payload)
        except ValueError:
            raise ValidationError("Malformed webhook payload", provider=provider)
        if not isinstance(body, dict):
            raise ValidationError("Malformed webhook payload", provider=provider)

        event = provider_impl.parse_webhook_event(body)
        record = await self.webhook_repo.create(
            WebhookEventCreateModel(
                provider=provider_impl.name.value,
                event_type=event.event_type,
                payload=body,
            )
        )

        logger.info(
            f"Received {provider_impl.name.value} webhook: {event.event_type}",
            extra={
                "webhook_id": record.id,
                "event_type": event.event_type,
                "provider_payment_id": event.provider_payment_id,
            },
        )

        try:
            if event.kind == WebhookEventKind.PAYMENT_SUCCEEDED:
                result = await self._apply_webhook_settlement(
                    event, PaymentStatus.COMPLETED
                )
            elif event.kind == WebhookEventKind.PAYMENT_FAILED:
                result = await self._apply_webhook_settlement(
                    event, PaymentStatus.FAILED
                )
            elif event.kind == WebhookEventKind.DISPUTE_CREATED:
                result = await self._handle_dispute(event)
            else:
                logger.debug(f"Unhandled webhook event type: {event.event_type}")
                result = WebhookResult(
                    processed=False,
                    event_type=event.event_type,
                    reason="event type not handled",
                )
        except Exception as e:
            await self.webhook_repo.mark_processed(
                record.id, False, error_message=str(e)
            )
            raise

        await self.webhook_repo.mark_processed(
            record.id, result.processed, result=result.model_dump(mode="json")
        )
        return result

    async def _apply_webhook_settlement(
        self, event: ProviderWebhookEvent, new_status: PaymentStatus
    ) -> WebhookResult:
        payment = None
        if event.provider_payment_id:
            payment = await self.payment_repo.get_by_provider_payment_id(
                event.provider_payment_id
            )
        if not payment:
            logger.warning(
                "Payment not found for webhook",
                extra={"provider_payment_id": event.provider_payment_id},
            )
            return WebhookResult(
                processed=False, event_type=event.event_type, reason="payment not found"
            )

        if payment.status.is_terminal():
            return WebhookResult(
                processed=True,
                event_type=event.event_type,
                payment_id=payment.id,
                reason=f"already {payment.status.value}",
            )

        settled = await self._settle(
            payment.id, new_status, failure_reason=event.details.get("failure_reason")
        )
        if settled is None:
            current = await self.payment_repo.get(payment.id)
            return WebhookResult(
                processed=True,
                event_type=event.event_type,
                payment_id=payment.id,
                reason=f"already {current.status.value}",
            )

        logger.info(
            f"Payment {payment.id} {new_status.value} via webhook",
            extra={"payment_id": payment.id, "amount": payment.amount},
        )
        return WebhookResult(
            processed=True, event_type=event.event_type, payment_id=payment.id
        )

    async def _handle_dispute(self, event: ProviderWebhookEvent) -> WebhookResult:
        """Attach the dispute to the payment for follow-up. Status is unchanged."""
        payment = None
        if event.provider_payment_id:
            payment = await self.payment_repo.get_by_provider_payment_id(
                event.provider_payment_id
            )
        if not payment:
            return WebhookResult(
                processed=False, event_type=event.event_type, reason="payment not found"
            )

        disputes = list(payment.provider_data.get("disputes", []))
        disputes.append(event.details)
        await self.payment_repo.update(
            payment.id,
            PaymentUpdateModel(provider_data={**payment.provider_data, "disputes": disputes}),
        )

        logger.warning(
            f"Dispute opened for payment {payment.id}",
            extra={"payment_id": payment.id, **event.details},
        )
        return WebhookResult(
            processed=True,
            event_type=event.event_type,
            payment_id=payment.id,
            details=event.details,
        )

    @trace_span
    async def process_refund(
        self,
        payment_id: int,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund part or all of a completed payment.

        Refunds are cumulative: earlier successful refunds count against the
        original amount. The attempt is persisted whatever the provider says.
        """
        payment = await self.get_payment(payment_id)
        if payment.status != PaymentStatus.COMPLETED:
            raise StateConflictError(
                f"Only completed payments can be refunded, payment is {payment.status.value}",
                payment_id=payment_id,
                status=payment.status.value,
            )

        completed_at = payment.completed_at or payment.created_at
        age = clock.utcnow() - completed_at
        if age > timedelta(days=settings.payment_max_refund_days):
            raise RefundWindowError(
                f"Refund window of {settings.payment_max_refund_days} days has closed",
                payment_id=payment_id,
                days_since_completion=age.days,
            )

        already_refunded = await self.refund_repo.get_refunded_total(payment_id)
        if amount is None:
            amount = payment.amount - already_refunded
        if amount <= 0:
            raise ValidationError(
                "Refund amount must be positive", payment_id=payment_id, amount=amount
            )
        if amount + already_refunded > payment.amount:
            raise ValidationError(
                "Refund amount exceeds the refundable balance",
                payment_id=payment_id,
                amount=amount,
                refundable=payment.amount - already_refunded,
            )

        provider = get_payment_provider(payment.method)
        try:
            outcome = await self._call_provider(
                provider.refund(payment.provider_payment_id, amount, reason)
            )
        except Exception as e:
            message = (
                "Payment provider timed out"
                if isinstance(e, asyncio.TimeoutError)
                else str(e) or type(e).__name__
            )
            outcome = ProviderRefund(succeeded=False, error_message=message)

        refund = await self.refund_repo.create(
            RefundCreateModel(
                payment_id=payment_id,
                amount=amount,
                reason=reason,
                status=RefundStatus.COMPLETED if outcome.succeeded else RefundStatus.FAILED,
                provider_refund_id=outcome.provider_refund_id,
                error_message=outcome.error_message,
            )
        )

        if not outcome.succeeded:
            logger.error(
                f"Refund for payment {payment_id} failed: {outcome.error_message}",
                extra={"payment_id": payment_id, "refund_id": refund.id},
            )
            raise ExternalServiceError(
                f"Refund failed: {outcome.error_message}",
                payment_id=payment_id,
                refund_id=refund.id,
            )

        await self.events.publish(
            BillingEvent.PAYMENT_REFUNDED,
            {
                "payment_id": payment_id,
                "tenant_id": payment.tenant_id,
                "refund_id": refund.id,
                "amount": amount,
                "reason": reason,
            },
        )

        return RefundResult(
            refund_id=refund.id,
            payment_id=payment_id,
            amount=amount,
            provider_refund_id=outcome.provider_refund_id,
            total_refunded=already_refunded + amount,
        )

    @trace_span
    async def expire_payment(self, payment_id: int) -> bool:
        """
        Expire an unpaid instant-transfer payment.

        Returns True when the payment was expired by this call. A payment that
        settled in the meantime is left alone; one that is not due yet gets a
        fresh expiry action.
        """
        payment = await self.payment_repo.get(payment_id)
        if not payment or payment.status.is_terminal():
            return False

        if payment.expires_at and payment.expires_at > clock.utcnow():
            await self.scheduler.schedule(
                ScheduledActionType.PAYMENT_EXPIRY, payment_id, payment.expires_at
            )
            return False

        settled = await self._settle(
            payment_id, PaymentStatus.EXPIRED, failure_reason="payment expired"
        )
        if settled:
            logger.info(f"Expired payment {payment_id}", extra={"payment_id": payment_id})
        return settled is not None

    @trace_span
    async def get_payment(self, payment_id: int) -> Payment:
        payment = await self.payment_repo.get(payment_id)
        if not payment:
            raise NotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
        return payment

    @trace_span
    async def get_payment_statistics(
        self, tenant_id: str, days: int = 30
    ) -> PaymentStatistics:
        since = clock.utcnow() - timedelta(days=days)
        stats = await self.payment_repo.get_stats(tenant_id, since)
        refunded = await self.refund_repo.get_refunded_total_for_tenant(tenant_id, since)

        total = sum(stats["by_status"].values())
        completed = stats["by_status"].get(PaymentStatus.COMPLETED.value, 0)
        return PaymentStatistics(
            tenant_id=tenant_id,
            period_days=days,
            total_payments=total,
            by_status=stats["by_status"],
            by_method=stats["by_method"],
            completed_amount=stats["amount_by_status"].get(
                PaymentStatus.COMPLETED.value, 0
            ),
            refunded_amount=refunded,
            success_rate=round(completed / total, 4) if total else 0.0,
        )
