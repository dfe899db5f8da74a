import pytest

from common.core.exceptions import ValidationError
from packages.billing.models.domain.enums import WebhookEventKind
from packages.billing.webhooks.parsers import parse_pagarme_event, parse_stripe_event


class TestStripeParser:
    def test_succeeded_intent(self):
        event = parse_stripe_event(
            {
                "type": "payment_intent.succeeded",
                "data": {"object": {"id": "pi_123", "status": "succeeded"}},
            }
        )

        assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
        assert event.provider_payment_id == "pi_123"
        assert event.details == {}

    def test_failed_intent_carries_reason(self):
        event = parse_stripe_event(
            {
                "type": "payment_intent.payment_failed",
                "data": {
                    "object": {
                        "id": "pi_123",
                        "last_payment_error": {"code": "card_declined"},
                    }
                },
            }
        )

        assert event.kind == WebhookEventKind.PAYMENT_FAILED
        assert event.details == {"failure_reason": "card_declined"}

    def test_dispute_maps_to_intent(self):
        event = parse_stripe_event(
            {
                "type": "charge.dispute.created",
                "data": {
                    "object": {
                        "id": "dp_1",
                        "payment_intent": "pi_123",
                        "amount": 5000,
                        "reason": "fraudulent",
                    }
                },
            }
        )

        assert event.kind == WebhookEventKind.DISPUTE_CREATED
        assert event.provider_payment_id == "pi_123"
        assert event.details == {
            "dispute_id": "dp_1",
            "amount": 5000,
            "reason": "fraudulent",
        }

    def test_unhandled_type_is_ignored(self):
        event = parse_stripe_event(
            {"type": "customer.created", "data": {"object": {"id": "cus_1"}}}
        )
        assert event.kind == WebhookEventKind.IGNORED

    @pytest.mark.parametrize("payload", [{}, {"type": ""}, {"data": {}}])
    def test_missing_type_rejected(self, payload):
        with pytest.raises(ValidationError, match="no event type"):
            parse_stripe_event(payload)


class TestPagarmeParser:
    def test_pix_paid(self):
        event = parse_pagarme_event(
            {"event": "pix_payment_paid", "transaction": {"id": "pix_abc"}}
        )

        assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
        assert event.provider_payment_id == "pix_abc"

    @pytest.mark.parametrize(
        "status,kind",
        [
            ("paid", WebhookEventKind.PAYMENT_SUCCEEDED),
            ("refused", WebhookEventKind.PAYMENT_FAILED),
            ("failed", WebhookEventKind.PAYMENT_FAILED),
            ("processing", WebhookEventKind.IGNORED),
        ],
    )
    def test_status_change(self, status, kind):
        event = parse_pagarme_event(
            {
                "event": "transaction_status_changed",
                "current_status": status,
                "data": {"id": 981},
            }
        )

        assert event.kind == kind
        assert event.provider_payment_id == "981"

    def test_refusal_reason(self):
        event = parse_pagarme_event(
            {
                "event": "transaction_status_changed",
                "transaction": {
                    "id": "pix_abc",
                    "status": "refused",
                    "refuse_reason": "antifraud",
                },
            }
        )

        assert event.kind == WebhookEventKind.PAYMENT_FAILED
        assert event.details == {"failure_reason": "antifraud"}

    def test_top_level_id_fallback(self):
        event = parse_pagarme_event({"event": "subscription_created", "id": "sub_1"})

        assert event.kind == WebhookEventKind.IGNORED
        assert event.provider_payment_id == "sub_1"

    def test_missing_event_rejected(self):
        with pytest.raises(ValidationError):
            parse_pagarme_event({"transaction": {"id": "pix_abc"}})
