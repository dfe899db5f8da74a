"""
Webhook endpoint for payment providers.

Public endpoint (no auth required): every delivery is authenticated by its
provider signature before anything is recorded.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status

from common.core.exceptions import SignatureError, ValidationError
from common.core.otel_axiom_exporter import get_logger
from packages.billing.services.credit_service import CreditLedgerService
from packages.billing.services.payment_service import PaymentGatewayService

logger = get_logger(__name__)

router = APIRouter()

SIGNATURE_HEADERS = ("stripe-signature", "x-hub-signature")


def get_payment_gateway() -> PaymentGatewayService:
    """Gateway with the credit ledger listening for settled purchases."""
    gateway = PaymentGatewayService()
    CreditLedgerService(payment_gateway=gateway)
    return gateway


@router.post("/billing/webhooks/{provider}")
async def provider_webhook(
    provider: str,
    request: Request,
    gateway: PaymentGatewayService = Depends(get_payment_gateway),
) -> Dict[str, Any]:
    payload = await request.body()
    signature = next(
        (request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None
    )

    try:
        result = await gateway.handle_webhook(provider, payload, signature)
    except SignatureError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except Exception as e:
        logger.error(
            f"Webhook processing failed for {provider}: {e}",
            extra={"provider": provider},
            exc_info=True,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )

    return result.model_dump(mode="json")
