"""
Factory for getting payment provider instances.
"""

from common.core.config import settings
from common.core.constants import PaymentProviderMode
from common.core.exceptions import ValidationError
from packages.billing.models.domain.enums import PaymentMethod, PaymentProviderName
from packages.billing.providers.payment.interface import PaymentProviderInterface
from packages.billing.providers.payment.simulated_card import SimulatedCardProvider
from packages.billing.providers.payment.simulated_pix import SimulatedPixProvider
from packages.billing.providers.payment.stripe_payment import StripeCardProvider


def _card_provider() -> PaymentProviderInterface:
    if settings.payment_provider_mode == PaymentProviderMode.LIVE:
        return StripeCardProvider()
    return SimulatedCardProvider()


def get_payment_provider(method: PaymentMethod) -> PaymentProviderInterface:
    """
    Get the provider for a payment method.

    Pix always goes through the instant-transfer rail. The card rail is
    simulated unless ``payment_provider_mode`` is live.
    """
    method = PaymentMethod(method)
    if method == PaymentMethod.PIX:
        return SimulatedPixProvider()
    return _card_provider()


def get_webhook_provider(provider: str) -> PaymentProviderInterface:
    """Get the provider that owns an inbound webhook path segment."""
    try:
        name = PaymentProviderName(provider)
    except ValueError:
        raise ValidationError(f"Unknown payment provider: {provider}", provider=provider)

    if name == PaymentProviderName.PAGARME:
        return SimulatedPixProvider()
    return _card_provider()
