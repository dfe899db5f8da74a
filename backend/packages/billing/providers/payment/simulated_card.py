"""
Simulated card provider.

Charges resolve synchronously based on the card token, and webhooks use the
Stripe signature scheme so the same verification path as the live adapter
is exercised.
"""

import hashlib
import hmac
import json
import time
import uuid
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
from packages.billing.webhooks.parsers import parse_stripe_event

logger = get_logger(__name__)

# Tokens that simulate a decline, mirroring Stripe's test tokens.
DECLINED_TOKENS = {
    "tok_chargeDeclined": "Your card was declined.",
    "tok_chargeDeclinedInsufficientFunds": "Your card has insufficient funds.",
    "tok_chargeDeclinedExpiredCard": "Your card has expired.",
}


class SimulatedCardProvider(PaymentProviderInterface):
    name = PaymentProviderName.STRIPE

    def __init__(self, webhook_secret: Optional[str] = None):
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

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
        intent_id = f"pi_sim_{uuid.uuid4().hex[:24]}"
        failure_reason = DECLINED_TOKENS.get(card_token)

        logger.info(
            f"Simulated card charge {'declined' if failure_reason else 'succeeded'}",
            extra={"payment_id": payment_id, "provider_payment_id": intent_id},
        )

        return ProviderCharge(
            provider_payment_id=intent_id,
            succeeded=failure_reason is None,
            failure_reason=failure_reason,
            raw={
                "id": intent_id,
                "object": "payment_intent",
                "amount": amount,
                "currency": currency.lower(),
                "status": "requires_payment_method" if failure_reason else "succeeded",
                "metadata": {"payment_id": str(payment_id)},
            },
        )

    @trace_span
    async def refund(
        self, provider_payment_id: str, amount: int, reason: Optional[str] = None
    ) -> ProviderRefund:
        refund_id = f"re_sim_{uuid.uuid4().hex[:24]}"
        return ProviderRefund(
            provider_refund_id=refund_id,
            succeeded=True,
            raw={
                "id": refund_id,
                "payment_intent": provider_payment_id,
                "amount": amount,
                "status": "succeeded",
            },
        )

    def sign(self, payload: bytes, timestamp: Optional[int] = None) -> str:
        """Stripe-format signature header (``t=...,v1=...``) for ``payload``."""
        timestamp = timestamp or int(time.time())
        signed = f"{timestamp}.".encode() + payload
        digest = hmac.new(self.webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return verify_stripe_signature(payload, signature, self.webhook_secret)

    def parse_webhook_event(self, payload: Dict[str, Any]) -> ProviderWebhookEvent:
        return parse_stripe_event(payload)


def verify_stripe_signature(
    payload: bytes, signature: Optional[str], secret: str
) -> bool:
    if not signature:
        return False
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), signature, secret, tolerance=300
        )
        return True
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        return False


def build_event(event_type: str, obj: Dict[str, Any]) -> bytes:
    """Serialize a Stripe-shaped event body, for local delivery."""
    return json.dumps(
        {
            "id": f"evt_sim_{uuid.uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
    ).encode()
