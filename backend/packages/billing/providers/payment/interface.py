"""
Interface for payment providers.

Abstracts payment rails (instant transfer, card) away from specific
platforms so the gateway service only deals in provider-neutral shapes.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from packages.billing.models.domain.enums import PaymentProviderName
from packages.billing.models.domain.provider import (
    ProviderAuthorization,
    ProviderCharge,
    ProviderRefund,
    ProviderWebhookEvent,
)


class PaymentProviderInterface(ABC):
    """Abstract interface for payment providers."""

    name: PaymentProviderName

    @abstractmethod
    async def authorize(
        self,
        payment_id: int,
        amount: int,
        currency: str,
        expires_at: datetime,
        description: Optional[str] = None,
        customer: Optional[Dict[str, Any]] = None,
    ) -> ProviderAuthorization:
        """
        Open an asynchronous payment the payer settles out of band.

        Args:
            payment_id: Internal payment ID, echoed back in provider metadata
            amount: Amount in cents
            currency: ISO currency code
            expires_at: When the payment code stops being payable
            description: Statement description
            customer: Payer details forwarded to the provider

        Returns:
            ProviderAuthorization carrying the displayable payment code
        """
        pass

    @abstractmethod
    async def charge(
        self,
        payment_id: int,
        amount: int,
        currency: str,
        card_token: str,
        description: Optional[str] = None,
    ) -> ProviderCharge:
        """
        Charge a tokenized card synchronously.

        A decline is a normal outcome (``succeeded=False``); transport or
        provider errors raise.
        """
        pass

    @abstractmethod
    async def refund(
        self, provider_payment_id: str, amount: int, reason: Optional[str] = None
    ) -> ProviderRefund:
        """Refund part or all of a settled payment."""
        pass

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """Check the signature header against the raw request body."""
        pass

    @abstractmethod
    def parse_webhook_event(self, payload: Dict[str, Any]) -> ProviderWebhookEvent:
        """Normalize a provider event into a kind and the payment it refers to."""
        pass

    async def health_check(self) -> bool:
        return True
