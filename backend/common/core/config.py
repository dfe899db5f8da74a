from decimal import Decimal
from typing import Optional, List, Dict
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from common.core.constants import (
    Environment,
    CacheProviderType,
    PaymentProviderMode,
    SUPPORTED_PAYMENT_METHODS,
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment Profile
    environment: Environment = Environment.LOCAL

    # API Settings
    app_name: str = "billing-core"
    api_version: str = "v1"
    debug: bool = False

    # Database Components
    db_user: str = "postgres"
    db_password: str = "postgres"
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "billing"
    db_use_nullpool: bool = (
        False  # True for workers (sequential), False for API (concurrent)
    )
    db_pool_size: int = 10
    db_pool_overflow: int = 5

    @property
    def database_url(self) -> str:
        """Construct database URL from components."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # RabbitMQ
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    rabbitmq_username: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_vhost: str = "/"
    billing_events_exchange: str = "billing.events"

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    @property
    def redis_connection_url(self) -> str:
        """Construct Redis URL from components."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        else:
            return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    cache_provider: CacheProviderType = CacheProviderType.REDIS

    # OpenTelemetry
    otel_service_name: str = "billing-core"
    otel_service_version: str = "0.1.0"

    # Axiom (exporters are only attached when a token is configured)
    axiom_token: str = ""
    axiom_dataset: str = ""

    # Credits
    credit_reservation_ttl_minutes: int = 15
    credit_balance_cache_ttl_seconds: int = 300
    credit_max_balance: Decimal = Decimal("100000")
    credit_min_purchase: Decimal = Decimal("10")
    credit_unit_price: Decimal = Decimal("1")  # currency units per credit
    # Purchase amount threshold -> bonus rate. Highest qualifying tier wins.
    credit_bonus_thresholds: Dict[int, Decimal] = {
        100: Decimal("0.05"),
        500: Decimal("0.10"),
        1000: Decimal("0.15"),
        5000: Decimal("0.20"),
    }

    # Payments (amounts in cents)
    payment_min_amount_cents: int = 1000
    payment_max_amount_cents: int = 10_000_000
    payment_default_currency: str = "BRL"
    payment_supported_currencies: List[str] = ["BRL"]
    payment_supported_methods: List[str] = list(SUPPORTED_PAYMENT_METHODS)
    pix_payment_timeout_minutes: int = 30
    payment_max_refund_days: int = 90
    payment_provider_timeout_seconds: float = 10.0
    payment_provider_mode: PaymentProviderMode = PaymentProviderMode.SIMULATED

    # Billing - Stripe (card rail)
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = "whsec_simulated"

    # Billing - Pagar.me (instant transfer rail)
    pagarme_api_key: str = ""
    pagarme_webhook_secret: str = "pagarme_simulated"

    # Subscriptions
    dunning_retry_delay_hours: int = 24
    dunning_max_attempts: int = 3
    plan_cache_ttl_seconds: int = 600
    subscription_cache_ttl_seconds: int = 300

    # Scheduler worker
    scheduler_poll_interval_seconds: float = 5.0
    scheduler_batch_size: int = 50
    scheduler_lease_seconds: int = 300
    scheduler_max_attempts: int = 5
    scheduler_retry_backoff_seconds: int = 60
    billing_sweep_interval_seconds: int = 3600
    billing_sweep_batch_size: int = 100

    @field_validator("credit_bonus_thresholds")
    @classmethod
    def validate_bonus_thresholds(cls, v: Dict[int, Decimal]) -> Dict[int, Decimal]:
        for threshold, rate in v.items():
            if threshold <= 0:
                raise ValueError(f"Bonus threshold must be positive, got {threshold}")
            if rate < 0 or rate > 1:
                raise ValueError(f"Bonus rate must be within [0, 1], got {rate}")
        return v

    @field_validator("payment_supported_methods")
    @classmethod
    def validate_supported_methods(cls, v: List[str]) -> List[str]:
        unknown = set(v) - set(SUPPORTED_PAYMENT_METHODS)
        if unknown:
            raise ValueError(f"Unknown payment methods: {sorted(unknown)}")
        return v

    @field_validator("payment_supported_currencies")
    @classmethod
    def normalize_currencies(cls, v: List[str]) -> List[str]:
        return [currency.upper() for currency in v]

    @field_validator(
        "credit_reservation_ttl_minutes",
        "pix_payment_timeout_minutes",
        "payment_max_refund_days",
        "dunning_retry_delay_hours",
        "dunning_max_attempts",
        "scheduler_batch_size",
        "scheduler_max_attempts",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @model_validator(mode="after")
    def validate_ranges(self) -> "Settings":
        if self.payment_min_amount_cents > self.payment_max_amount_cents:
            raise ValueError(
                "payment_min_amount_cents cannot exceed payment_max_amount_cents"
            )
        if self.credit_min_purchase > self.credit_max_balance:
            raise ValueError("credit_min_purchase cannot exceed credit_max_balance")
        if self.payment_default_currency.upper() not in self.payment_supported_currencies:
            raise ValueError("payment_default_currency must be a supported currency")
        if self.credit_unit_price <= 0:
            raise ValueError("credit_unit_price must be greater than zero")
        if self.payment_provider_mode == PaymentProviderMode.LIVE and not (
            self.stripe_secret_key and self.stripe_webhook_secret
        ):
            raise ValueError("live payment mode requires Stripe credentials")
        return self


settings = Settings()
