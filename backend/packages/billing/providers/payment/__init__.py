"""Payment providers - instant transfer and card rails."""

from packages.billing.providers.payment.interface import PaymentProviderInterface
from packages.billing.providers.payment.factory import (
    get_payment_provider,
    get_webhook_provider,
)

__all__ = [
    "PaymentProviderInterface",
    "get_payment_provider",
    "get_webhook_provider",
]
