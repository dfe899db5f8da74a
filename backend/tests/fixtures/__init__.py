# Test data and helpers
import json

TENANT_ID = "tenant-acme"
OTHER_TENANT_ID = "tenant-globex"

VALID_CARD_TOKEN = "tok_visa"
DECLINED_CARD_TOKEN = "tok_chargeDeclined"


def published_events(mock_message_queue):
    """Event names published on the mock queue so far, in order."""
    return [c.args[0] for c in mock_message_queue.publish.call_args_list]


def pagarme_paid_body(provider_payment_id: str) -> bytes:
    return json.dumps(
        {
            "event": "pix_payment_paid",
            "transaction": {"id": provider_payment_id, "status": "paid"},
        }
    ).encode()


def pagarme_refused_body(provider_payment_id: str) -> bytes:
    return json.dumps(
        {
            "event": "transaction_status_changed",
            "current_status": "refused",
            "transaction": {
                "id": provider_payment_id,
                "refuse_reason": "acquirer",
            },
        }
    ).encode()
