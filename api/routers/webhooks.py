"""
Webhook Handlers for Payment Processors

Handles server-to-server notifications from Paystack and Stripe when a
payment settles. These endpoints should be registered with the payment
processors; the same handlers are also mounted under /donate for
dashboards configured with the older paths.
"""

import logging

from fastapi import APIRouter, Depends, Request

from database.models import PaymentMethod
from services.container import LedgerContainer, get_container
from services.errors import GatewayError, NotFoundError

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = logging.getLogger(__name__)


async def process_webhook(provider: str, request: Request, container: LedgerContainer) -> dict:
    """
    Verify and apply one webhook delivery.

    Signature failures surface as 401 and malformed bodies as 400. A
    reference we never issued, or a payment we refuse to apply, is
    acknowledged with 200 so the provider stops redelivering; both are
    logged loudly. Store outages surface as 503 and are safe to redeliver.
    """
    payload = await request.body()
    engine = container.reconciliation
    gateway = engine.gateway(provider)
    signature = request.headers.get(gateway.signature_header)

    try:
        result = await engine.handle_webhook(provider, payload, signature)
    except NotFoundError as e:
        logger.error(f"{provider} webhook for unknown reference: {e.message}")
        return {"received": True, "status": "unknown_reference"}
    except GatewayError as e:
        logger.error(f"{provider} webhook rejected: {e.message}")
        return {"received": True, "status": "rejected"}

    return {"received": True, "status": result.outcome.value, "reference": result.reference}


@router.post("/paystack")
async def paystack_webhook(request: Request, container: LedgerContainer = Depends(get_container)):
    """
    Handle Paystack events.

    Paystack signs the raw body with HMAC-SHA512 using the secret key and
    sends it in x-paystack-signature. Only charge.success settles a donation.
    """
    return await process_webhook(PaymentMethod.PAYSTACK.value, request, container)


@router.post("/stripe")
async def stripe_webhook(request: Request, container: LedgerContainer = Depends(get_container)):
    """
    Handle Stripe Checkout events.

    Events we process:
    - checkout.session.completed: Donor paid (payment_status=paid)
    - checkout.session.async_payment_succeeded: Delayed payment cleared
    - checkout.session.expired / async_payment_failed: Donation failed
    """
    return await process_webhook(PaymentMethod.CARD.value, request, container)
