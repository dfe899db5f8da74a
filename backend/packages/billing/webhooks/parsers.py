"""
Provider webhook taxonomies.

Maps each provider's event types onto WebhookEventKind and pulls out the
provider payment id used to correlate the event with a Payment.
"""

from typing import Any, Dict

from common.core.exceptions import ValidationError
from packages.billing.models.domain.enums import WebhookEventKind
from packages.billing.models.domain.provider import ProviderWebhookEvent

STRIPE_EVENT_KINDS = {
    "payment_intent.succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": WebhookEventKind.PAYMENT_FAILED,
    "charge.dispute.created": WebhookEventKind.DISPUTE_CREATED,
}

PAGARME_STATUS_KINDS = {
    "paid": WebhookEventKind.PAYMENT_SUCCEEDED,
    "refused": WebhookEventKind.PAYMENT_FAILED,
    "failed": WebhookEventKind.PAYMENT_FAILED,
}


def parse_stripe_event(payload: Dict[str, Any]) -> ProviderWebhookEvent:
    event_type = payload.get("type")
    if not event_type:
        raise ValidationError("Webhook payload has no event type")

    obj = (payload.get("data") or {}).get("object") or {}
    kind = STRIPE_EVENT_KINDS.get(event_type, WebhookEventKind.IGNORED)

    if kind == WebhookEventKind.DISPUTE_CREATED:
        # Disputes hang off the charge; the intent id is what we store.
        provider_payment_id = obj.get("payment_intent")
        details = {
            "dispute_id": obj.get("id"),
            "amount": obj.get("amount"),
            "reason": obj.get("reason"),
        }
    else:
        provider_payment_id = obj.get("id")
        error = obj.get("last_payment_error") or {}
        details = {"failure_reason": error.get("message") or error.get("code")}

    return ProviderWebhookEvent(
        kind=kind,
        event_type=event_type,
        provider_payment_id=provider_payment_id,
        details={k: v for k, v in details.items() if v is not None},
    )


def parse_pagarme_event(payload: Dict[str, Any]) -> ProviderWebhookEvent:
    event_type = payload.get("event")
    if not event_type:
        raise ValidationError("Webhook payload has no event type")

    data = payload.get("transaction") or payload.get("data") or {}
    provider_payment_id = data.get("id") or payload.get("id")

    if event_type == "pix_payment_paid":
        kind = WebhookEventKind.PAYMENT_SUCCEEDED
    elif event_type == "transaction_status_changed":
        kind = PAGARME_STATUS_KINDS.get(
            payload.get("current_status") or data.get("status"),
            WebhookEventKind.IGNORED,
        )
    else:
        kind = WebhookEventKind.IGNORED

    details = {}
    if kind == WebhookEventKind.PAYMENT_FAILED:
        details["failure_reason"] = (
            data.get("refuse_reason")
            or payload.get("current_status")
            or "refused"
        )

    return ProviderWebhookEvent(
        kind=kind,
        event_type=event_type,
        provider_payment_id=str(provider_payment_id) if provider_payment_id else None,
        details=details,
    )
