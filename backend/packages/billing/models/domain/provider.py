"""
Provider-neutral shapes exchanged with payment provider implementations.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from packages.billing.models.domain.enums import WebhookEventKind


class ProviderAuthorization(BaseModel):
    """Asynchronous authorization (instant transfer): a code for the payer to settle."""

    provider_payment_id: str
    payment_code: str
    qr_code_url: Optional[str] = None
    expires_at: datetime
    raw: Dict[str, Any] = Field(default_factory=dict)


class ProviderCharge(BaseModel):
    """Synchronous charge outcome (card)."""

    provider_payment_id: str
    succeeded: bool
    failure_reason: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class ProviderRefund(BaseModel):
    provider_refund_id: Optional[str] = None
    succeeded: bool
    error_message: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class ProviderWebhookEvent(BaseModel):
    """A provider webhook normalized to a kind plus the payment it refers to."""

    kind: WebhookEventKind
    event_type: str
    provider_payment_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
