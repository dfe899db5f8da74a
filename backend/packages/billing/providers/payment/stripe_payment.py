"""
Stripe implementation of the card rail.
"""

import asyncio
from typing import Any, Dict, Optional

import stripe

from common.core.config import settings
from common.core.exceptions import ValidationError
from common.core.otel_axiom_exporter import trace_span, get_logger
from packages.billing.models.domain.enums import PaymentProviderName
from packages.billing.models.domain.provider import (
    ProviderAuthorization,
    ProviderCharge,
    ProviderRefund,
    ProviderWebhookEvent,
)
from packages.billing.providers.payment.interface import PaymentProviderInterface
from packages.billing.providers.payment.simulated_card import verify_stripe_signature
from packages.billing.webhooks.parsers import parse_stripe_event

logger = get_logger(__name__)


class StripeCardProvider(PaymentProviderInterface):
    """Stripe-based card payments via PaymentIntents."""

    name = PaymentProviderName.STRIPE

    def __init__(self):
        """Initialize Stripe with API credentials."""
        stripe.api_key = settings.stripe_secret_key

    async def authorize(self, payment_id: int, *args, **kwargs) -> ProviderAuthorization:
        raise ValidationError(
            "Card payments are charged synchronously", payment_id=payment_id
        )

    @trace_span
    async def charge(
        self,
        payment_id: int,
        amount: int,
        currency: str,
        card_token: str,
        description: Optional[str] = None,
    ) -> ProviderCharge:
        """
        Create and confirm a PaymentIntent in one call.

        Card declines come back as a failed charge. Any other Stripe error
        propagates to the caller.
        """
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency.lower(),
                payment_method_data={"type": "card", "card": {"token": card_token}},
                confirm=True,
                description=description,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata={"payment_id": str(payment_id)},
            )
        except stripe.CardError as e:
            intent_id = None
            if e.error and e.error.payment_intent:
                intent_id = e.error.payment_intent.get("id")
            logger.info(
                "Stripe declined card charge",
                extra={"payment_id": payment_id, "decline_code": e.code},
            )
            return ProviderCharge(
                provider_payment_id=intent_id or f"declined_{payment_id}",
                succeeded=False,
                failure_reason=e.user_message or str(e),
            )

        logger.info(
            "Created Stripe payment intent",
            extra={
                "payment_id": payment_id,
                "provider_payment_id": intent.id,
                "intent_status": intent.status,
            },
        )

        return ProviderCharge(
            provider_payment_id=intent.id,
            succeeded=intent.status == "succeeded",
            failure_reason=None
            if intent.status == "succeeded"
            else f"Payment intent is {intent.status}",
            raw={"id": intent.id, "status": intent.status},
        )

    @trace_span
    async def refund(
        self, provider_payment_id: str, amount: int, reason: Optional[str] = None
    ) -> ProviderRefund:
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                payment_intent=provider_payment_id,
                amount=amount,
                metadata={"reason": reason} if reason else None,
            )
        except stripe.InvalidRequestError as e:
            logger.error(
                f"Stripe refund rejected: {str(e)}",
                extra={"provider_payment_id": provider_payment_id, "error": str(e)},
            )
            return ProviderRefund(succeeded=False, error_message=str(e))

        return ProviderRefund(
            provider_refund_id=refund.id,
            succeeded=refund.status in ("succeeded", "pending"),
            error_message=None
            if refund.status in ("succeeded", "pending")
            else f"Refund is {refund.status}",
            raw={"id": refund.id, "status": refund.status},
        )

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return verify_stripe_signature(
            payload, signature, settings.stripe_webhook_secret
        )

    def parse_webhook_event(self, payload: Dict[str, Any]) -> ProviderWebhookEvent:
        return parse_stripe_event(payload)

    @trace_span
    async def health_check(self) -> bool:
        """Check Stripe health."""
        try:
            await asyncio.to_thread(stripe.Account.retrieve)
            return True
        except Exception as e:
            logger.error(f"Payment health check failed: {e}")
            return False
