"""
Unit tests for PaymentGatewayService.

Providers run in simulated mode; only the message queue is mocked.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from common.core.config import settings
from common.core.exceptions import (
    ExternalServiceError,
    NotFoundError,
    RefundWindowError,
    SignatureError,
    StateConflictError,
    ValidationError,
)
from packages.billing.models.domain.enums import (
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    ScheduledActionStatus,
    ScheduledActionType,
)
from packages.billing.models.domain.payment import PaymentRequest
from packages.billing.models.domain.results import (
    PaymentCompletedResult,
    PaymentFailedResult,
    PaymentPendingResult,
)
from packages.billing.providers.payment.simulated_card import (
    SimulatedCardProvider,
    build_event,
)
from packages.billing.providers.payment.simulated_pix import SimulatedPixProvider
from tests.fixtures import (
    DECLINED_CARD_TOKEN,
    TENANT_ID,
    VALID_CARD_TOKEN,
    pagarme_paid_body,
    published_events,
)


def card_request(amount=5000, token=VALID_CARD_TOKEN, **kwargs):
    return PaymentRequest(
        tenant_id=TENANT_ID,
        amount=amount,
        method=PaymentMethod.CREDIT_CARD,
        card_token=token,
        **kwargs,
    )


def pix_request(amount=5000):
    return PaymentRequest(tenant_id=TENANT_ID, amount=amount, method=PaymentMethod.PIX)


@patch("common.core.otel_axiom_exporter.axiom_tracer.start_as_current_span")
class TestProcessPayment:
    """Payment creation and synchronous settlement."""

    @pytest.mark.parametrize(
        "request_kwargs",
        [
            {"amount": 999},
            {"amount": 10_000_001},
            {"currency": "USD"},
            {"token": None},
        ],
    )
    async def test_invalid_request_persists_nothing(
        self, mock_start_span, payment_gateway, request_kwargs
    ):
        with pytest.raises(ValidationError):
            await payment_gateway.process_payment(card_request(**request_kwargs))

        assert await payment_gateway.payment_repo.get_multi() == []

    async def test_missing_tenant(self, mock_start_span, payment_gateway):
        with pytest.raises(ValidationError):
            await payment_gateway.process_payment(
                PaymentRequest(
                    tenant_id="",
                    amount=5000,
                    method=PaymentMethod.CREDIT_CARD,
                    card_token=VALID_CARD_TOKEN,
                )
            )

    async def test_card_payment_completes(
        self, mock_start_span, payment_gateway, mock_message_queue
    ):
        result = await payment_gateway.process_payment(card_request())

        assert isinstance(result, PaymentCompletedResult)
        payment = await payment_gateway.get_payment(result.payment_id)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.completed_at is not None
        assert payment.provider_payment_id == result.provider_payment_id

        events = published_events(mock_message_queue)
        assert events.count("payment.completed") == 1
        assert "payment.processed" in events

    async def test_declined_card_fails(
        self, mock_start_span, payment_gateway, mock_message_queue
    ):
        result = await payment_gateway.process_payment(
            card_request(token=DECLINED_CARD_TOKEN)
        )

        assert isinstance(result, PaymentFailedResult)
        assert result.failure_reason == "Your card was declined."
        payment = await payment_gateway.get_payment(result.payment_id)
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "Your card was declined."
        assert "payment.failed" in published_events(mock_message_queue)

    async def test_pix_payment_stays_pending(
        self, mock_start_span, payment_gateway, scheduler, frozen_clock
    ):
        result = await payment_gateway.process_payment(pix_request())

        assert isinstance(result, PaymentPendingResult)
        assert result.payment_code.startswith("000201")
        assert result.expires_at == frozen_clock.now + timedelta(minutes=30)

        payment = await payment_gateway.get_payment(result.payment_id)
        assert payment.status == PaymentStatus.PENDING
        assert payment.provider_data["payment_code"] == result.payment_code

        actions = await scheduler.action_repo.get_for_entity(
            ScheduledActionType.PAYMENT_EXPIRY, result.payment_id
        )
        assert [a.status for a in actions] == [ScheduledActionStatus.PENDING]

    async def test_provider_timeout_fails_payment(
        self, mock_start_span, payment_gateway, mock_provider, monkeypatch
    ):
        async def never_returns(*args, **kwargs):
            await asyncio.sleep(10)

        mock_provider.charge = never_returns
        monkeypatch.setattr(
            "packages.billing.services.payment_service.get_payment_provider",
            lambda method: mock_provider,
        )
        monkeypatch.setattr(settings, "payment_provider_timeout_seconds", 0.01)

        with pytest.raises(ExternalServiceError) as exc_info:
            await payment_gateway.process_payment(card_request())

        payment = await payment_gateway.get_payment(exc_info.value.context["payment_id"])
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "Payment provider timed out"

    async def test_provider_error_is_wrapped(
        self, mock_start_span, payment_gateway, mock_provider, monkeypatch
    ):
        mock_provider.charge = AsyncMock(side_effect=ConnectionError("reset by peer"))
        monkeypatch.setattr(
            "packages.billing.services.payment_service.get_payment_provider",
            lambda method: mock_provider,
        )

        with pytest.raises(ExternalServiceError, match="reset by peer"):
            await payment_gateway.process_payment(card_request())

    async def test_get_payment_not_found(self, mock_start_span, payment_gateway):
        with pytest.raises(NotFoundError):
            await payment_gateway.get_payment(424242)


@patch("common.core.otel_axiom_exporter.axiom_tracer.start_as_current_span")
class TestWebhooks:
    """Inbound webhook verification and idempotent settlement."""

    async def _pending_pix(self, payment_gateway):
        result = await payment_gateway.process_payment(pix_request())
        return await payment_gateway.get_payment(result.payment_id)

    async def test_duplicate_webhook_settles_once(
        self, mock_start_span, payment_gateway, mock_message_queue
    ):
        payment = await self._pending_pix(payment_gateway)
        body = pagarme_paid_body(payment.provider_payment_id)
        signature = SimulatedPixProvider().sign(body)

        first = await payment_gateway.handle_webhook("pagarme", body, signature)
        second = await payment_gateway.handle_webhook("pagarme", body, signature)

        assert first.processed is True
        assert first.payment_id == payment.id
        assert second.processed is True
        assert second.reason == "already completed"
        assert published_events(mock_message_queue).count("payment.completed") == 1

        settled = await payment_gateway.get_payment(payment.id)
        assert settled.status == PaymentStatus.COMPLETED

    async def test_webhook_cancels_expiry_action(
        self, mock_start_span, payment_gateway, scheduler
    ):
        payment = await self._pending_pix(payment_gateway)
        body = pagarme_paid_body(payment.provider_payment_id)

        await payment_gateway.handle_webhook(
            "pagarme", body, SimulatedPixProvider().sign(body)
        )

        actions = await scheduler.action_repo.get_for_entity(
            ScheduledActionType.PAYMENT_EXPIRY, payment.id
        )
        assert [a.status for a in actions] == [ScheduledActionStatus.CANCELED]

    async def test_bad_signature_is_rejected(
        self, mock_start_span, payment_gateway, mock_message_queue
    ):
        payment = await self._pending_pix(payment_gateway)
        body = pagarme_paid_body(payment.provider_payment_id)

        with pytest.raises(SignatureError):
            await payment_gateway.handle_webhook("pagarme", body, "sha256=deadbeef")
        with pytest.raises(SignatureError):
            await payment_gateway.handle_webhook("pagarme", body, None)

        assert (await payment_gateway.get_payment(payment.id)).status == (
            PaymentStatus.PENDING
        )
        assert await payment_gateway.webhook_repo.get_multi() == []

    async def test_unknown_provider(self, mock_start_span, payment_gateway):
        with pytest.raises(ValidationError):
            await payment_gateway.handle_webhook("paypal", b"{}", "sig")

    async def test_malformed_payload(self, mock_start_span, payment_gateway):
        body = b"not json"
        with pytest.raises(ValidationError):
            await payment_gateway.handle_webhook(
                "pagarme", body, SimulatedPixProvider().sign(body)
            )

    async def test_unknown_payment_is_not_processed(
        self, mock_start_span, payment_gateway
    ):
        body = pagarme_paid_body("pix_does_not_exist")
        result = await payment_gateway.handle_webhook(
            "pagarme", body, SimulatedPixProvider().sign(body)
        )

        assert result.processed is False
        assert result.reason == "payment not found"

    async def test_stripe_event_is_recorded(self, mock_start_span, payment_gateway):
        card = SimulatedCardProvider()
        body = build_event("customer.created", {"id": "cus_123"})

        result = await payment_gateway.handle_webhook("stripe", body, card.sign(body))

        assert result.processed is False
        assert result.reason == "event type not handled"
        records = await payment_gateway.webhook_repo.get_multi()
        assert len(records) == 1
        assert records[0].provider == "stripe"
        assert records[0].event_type == "customer.created"

    async def test_dispute_is_attached_to_payment(
        self, mock_start_span, payment_gateway, mock_message_queue
    ):
        completed = await payment_gateway.process_payment(card_request())
        payment = await payment_gateway.get_payment(completed.payment_id)
        card = SimulatedCardProvider()
        body = build_event(
            "charge.dispute.created",
            {
                "id": "dp_123",
                "payment_intent": payment.provider_payment_id,
                "amount": 5000,
                "reason": "fraudulent",
            },
        )

        result = await payment_gateway.handle_webhook("stripe", body, card.sign(body))

        assert result.processed is True
        assert result.details["reason"] == "fraudulent"
        disputed = await payment_gateway.get_payment(payment.id)
        assert disputed.status == PaymentStatus.COMPLETED
        assert disputed.provider_data["disputes"][0]["dispute_id"] == "dp_123"

    async def test_stale_stripe_signature_is_rejected(
        self, mock_start_span, payment_gateway
    ):
        card = SimulatedCardProvider()
        body = build_event("payment_intent.succeeded", {"id": "pi_x"})

        with pytest.raises(SignatureError):
            await payment_gateway.handle_webhook(
                "stripe", body, card.sign(body, timestamp=1_000_000)
            )


@patch("common.core.otel_axiom_exporter.axiom_tracer.start_as_current_span")
class TestRefundsAndExpiry:
    async def test_partial_refunds_accumulate(
        self, mock_start_span, payment_gateway, mock_message_queue
    ):
        completed = await payment_gateway.process_payment(card_request(amount=5000))

        first = await payment_gateway.process_refund(
            completed.payment_id, 2000, reason="requested_by_customer"
        )
        assert first.amount == 2000
        assert first.total_refunded == 2000

        with pytest.raises(ValidationError):
            await payment_gateway.process_refund(completed.payment_id, 3001)

        rest = await payment_gateway.process_refund(completed.payment_id)
        assert rest.amount == 3000
        assert rest.total_refunded == 5000

        refunds = await payment_gateway.refund_repo.get_multi()
        assert all(r.status == RefundStatus.COMPLETED for r in refunds)
        assert published_events(mock_message_queue).count("payment.refunded") == 2

        with pytest.raises(ValidationError):
            await payment_gateway.process_refund(completed.payment_id)

    async def test_refund_window_closes(
        self, mock_start_span, payment_gateway, frozen_clock
    ):
        completed = await payment_gateway.process_payment(card_request())

        frozen_clock.advance(days=91)

        with pytest.raises(RefundWindowError):
            await payment_gateway.process_refund(completed.payment_id, 1000)

    async def test_refund_requires_completed_payment(
        self, mock_start_span, payment_gateway
    ):
        pending = await payment_gateway.process_payment(pix_request())

        with pytest.raises(StateConflictError):
            await payment_gateway.process_refund(pending.payment_id)

    async def test_failed_provider_refund_is_recorded(
        self, mock_start_span, payment_gateway, mock_provider, monkeypatch
    ):
        completed = await payment_gateway.process_payment(card_request())
        mock_provider.refund = AsyncMock(side_effect=RuntimeError("gateway down"))
        monkeypatch.setattr(
            "packages.billing.services.payment_service.get_payment_provider",
            lambda method: mock_provider,
        )

        with pytest.raises(ExternalServiceError):
            await payment_gateway.process_refund(completed.payment_id, 1000)

        refunds = await payment_gateway.refund_repo.get_multi()
        assert len(refunds) == 1
        assert refunds[0].status == RefundStatus.FAILED
        assert refunds[0].error_message == "gateway down"

    async def test_pix_expires_after_timeout(
        self, mock_start_span, payment_gateway, frozen_clock, mock_message_queue
    ):
        pending = await payment_gateway.process_payment(pix_request())

        assert await payment_gateway.expire_payment(pending.payment_id) is False

        frozen_clock.advance(minutes=31)
        assert await payment_gateway.expire_payment(pending.payment_id) is True
        assert await payment_gateway.expire_payment(pending.payment_id) is False

        payment = await payment_gateway.get_payment(pending.payment_id)
        assert payment.status == PaymentStatus.EXPIRED
        assert published_events(mock_message_queue).count("payment.expired") == 1

    async def test_webhook_after_expiry_is_ignored(
        self, mock_start_span, payment_gateway, frozen_clock
    ):
        pending = await payment_gateway.process_payment(pix_request())
        payment = await payment_gateway.get_payment(pending.payment_id)

        frozen_clock.advance(minutes=31)
        await payment_gateway.expire_payment(payment.id)

        body = pagarme_paid_body(payment.provider_payment_id)
        result = await payment_gateway.handle_webhook(
            "pagarme", body, SimulatedPixProvider().sign(body)
        )
        assert result.reason == "already expired"
        assert (await payment_gateway.get_payment(payment.id)).status == (
            PaymentStatus.EXPIRED
        )

    async def test_payment_statistics(self, mock_start_span, payment_gateway):
        ok = await payment_gateway.process_payment(card_request(amount=5000))
        await payment_gateway.process_payment(card_request(token=DECLINED_CARD_TOKEN))
        await payment_gateway.process_payment(pix_request())
        await payment_gateway.process_refund(ok.payment_id, 1500)

        stats = await payment_gateway.get_payment_statistics(TENANT_ID)

        assert stats.total_payments == 3
        assert stats.by_status == {"completed": 1, "failed": 1, "pending": 1}
        assert stats.by_method == {"credit_card": 2, "pix": 1}
        assert stats.completed_amount == 5000
        assert stats.refunded_amount == 1500
        assert stats.success_rate == round(1 / 3, 4)
