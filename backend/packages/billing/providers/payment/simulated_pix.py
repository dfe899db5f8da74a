"""
Simulated instant-transfer (pix) provider.

Issues payment codes locally and verifies webhooks signed the way Pagar.me
signs them (``x-hub-signature: sha256=<hex hmac of the body>``).
"""

import hashlib
import hmac
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

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
from packages.billing.webhooks.parsers import parse_pagarme_event

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


class SimulatedPixProvider(PaymentProviderInterface):
    """Pix rail: payments are authorized now and settled later by webhook."""

    name = PaymentProviderName.PAGARME

    def __init__(self, webhook_secret: Optional[str] = None):
        self.webhook_secret = webhook_secret or settings.pagarme_webhook_secret

    @trace_span
    async def authorize(
        self,
        payment_id: int,
        amount: int,
        currency: str,
        expires_at: datetime,
        description: Optional[str] = None,
        customer: Optional[Dict[str, Any]] = None,
    ) -> ProviderAuthorization:
        provider_payment_id = f"pix_{uuid.uuid4().hex}"
        payment_code = self._build_payment_code(provider_payment_id, amount)

        logger.info(
            "Issued pix payment code",
            extra={
                "payment_id": payment_id,
                "provider_payment_id": provider_payment_id,
                "amount": amount,
            },
        )

        return ProviderAuthorization(
            provider_payment_id=provider_payment_id,
            payment_code=payment_code,
            qr_code_url=f"https://pix.example.com/qr/{provider_payment_id}",
            expires_at=expires_at,
            raw={
                "id": provider_payment_id,
                "status": "waiting_payment",
                "amount": amount,
                "currency": currency,
                "metadata": {"payment_id": str(payment_id)},
            },
        )

    async def charge(
        self,
        payment_id: int,
        amount: int,
        currency: str,
        card_token: str,
        description: Optional[str] = None,
    ) -> ProviderCharge:
        raise ValidationError(
            "Pix payments settle asynchronously and cannot be charged directly",
            payment_id=payment_id,
        )

    @trace_span
    async def refund(
        self, provider_payment_id: str, amount: int, reason: Optional[str] = None
    ) -> ProviderRefund:
        refund_id = f"pix_rf_{uuid.uuid4().hex}"
        return ProviderRefund(
            provider_refund_id=refund_id,
            succeeded=True,
            raw={"id": refund_id, "amount": amount, "reason": reason},
        )

    def sign(self, payload: bytes) -> str:
        """Signature header value for ``payload``."""
        digest = hmac.new(
            self.webhook_secret.encode(), payload, hashlib.sha256
        ).hexdigest()
        return f"{SIGNATURE_PREFIX}{digest}"

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not signature or not signature.startswith(SIGNATURE_PREFIX):
            return False
        return hmac.compare_digest(self.sign(payload), signature)

    def parse_webhook_event(self, payload: Dict[str, Any]) -> ProviderWebhookEvent:
        return parse_pagarme_event(payload)

    @staticmethod
    def _build_payment_code(provider_payment_id: str, amount: int) -> str:
        # EMV-style "copia e cola" string: fixed header, amount, reference.
        value = f"{amount / 100:.2f}"
        return (
            "00020126580014br.gov.bcb.pix"
            f"0136{provider_payment_id[:36]}"
            f"5303986540{len(value)}{value}"
            "5802BR6304"
        )
