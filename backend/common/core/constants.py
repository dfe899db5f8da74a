from enum import Enum


class Environment(str, Enum):
    """Environment profiles."""

    LOCAL = "local"
    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class CacheProviderType(str, Enum):
    """Cache provider backends."""

    REDIS = "redis"
    MEMORY = "memory"
    PASSTHROUGH = "passthrough"


class PaymentProviderMode(str, Enum):
    """Payment provider wiring.

    SIMULATED keeps both rails in-process; LIVE routes the card rail to Stripe.
    """

    SIMULATED = "simulated"
    LIVE = "live"


SUPPORTED_PAYMENT_METHODS = ("pix", "credit_card", "debit_card")
