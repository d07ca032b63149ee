"""
Donation Router

Starts donations with either gateway and handles the browser redirects
that come back from them.

POST /donate/paystack - Start a Paystack donation (email required)
POST /donate/stripe - Start a card donation via Stripe Checkout
GET  /donate/paystack/callback?reference=... - Paystack redirect
GET  /donate/stripe/callback?session_id=... - Stripe success redirect
POST /donate/paystack/callback, /donate/stripe/webhook - Webhooks (older paths)
"""

import logging
import os
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, EmailStr, Field

from api.dependencies import client_ip
from api.routers.webhooks import process_webhook
from database.models import DonationStatus, PaymentMethod
from services.container import LedgerContainer, get_container
from services.errors import GatewayError, LedgerError, NotFoundError, ValidationError
from services.payment_initiator import MAX_DONATION_AMOUNT, DonationInitiation

router = APIRouter(prefix="/donate", tags=["Donations"])
logger = logging.getLogger(__name__)


# ============================================================================
# Pydantic Schemas
# ============================================================================

class DonationCreate(BaseModel):
    """Request schema for starting a donation."""
    campaign_id: int
    amount: float = Field(..., gt=0, le=float(MAX_DONATION_AMOUNT), description="Amount in KES")
    donor_email: Optional[EmailStr] = None
    donor_name: Optional[str] = Field(None, max_length=255)
    donor_phone: Optional[str] = Field(None, max_length=20)

    class Config:
        json_schema_extra = {
            "example": {
                "campaign_id": 1,
                "amount": 1000,
                "donor_email": "donor@example.com",
                "donor_name": "Achieng"
            }
        }


def app_url() -> str:
    return os.getenv("APP_URL", "http://localhost:3000").rstrip("/")


def campaigns_redirect(query: str) -> RedirectResponse:
    return RedirectResponse(url=f"{app_url()}/campaigns?{query}", status_code=302)


async def start_donation(
    payment_method: str,
    donation: DonationCreate,
    request: Request,
    container: LedgerContainer
) -> DonationInitiation:
    return await container.initiator.initiate(
        campaign_id=donation.campaign_id,
        amount=donation.amount,
        payment_method=payment_method,
        donor_email=donation.donor_email,
        donor_name=donation.donor_name,
        donor_phone=donation.donor_phone,
        ip_address=client_ip(request),
    )


async def callback_redirect(provider: str, reference: Optional[str], container: LedgerContainer) -> RedirectResponse:
    """
    Verify a redirect server-side and send the donor to the right page.

    The redirect itself proves nothing; the gateway is asked for the
    transaction status before anything is recorded.
    """
    if not reference:
        return campaigns_redirect("error=no_reference")

    try:
        result = await container.reconciliation.handle_callback(provider, reference)
    except NotFoundError:
        return campaigns_redirect("error=donation_not_found")
    except (GatewayError, ValidationError) as e:
        logger.error(f"{provider} callback verification failed for {reference}: {e.message}")
        return campaigns_redirect(f"error=verification_failed&message={quote(e.message)}")
    except LedgerError as e:
        logger.error(f"{provider} callback for {reference} failed: {e.message}")
        return campaigns_redirect("error=internal_error")

    if result.status == DonationStatus.VERIFIED:
        return RedirectResponse(
            url=f"{app_url()}/campaign/{result.campaign_slug}?donation=success",
            status_code=302
        )

    if result.status == DonationStatus.FAILED:
        message = result.message or "Payment was not completed"
        return campaigns_redirect(f"error=payment_failed&message={quote(message)}")

    return campaigns_redirect("donation=pending")


# ============================================================================
# Donation Endpoints
# ============================================================================

@router.post("/paystack", response_model=DonationInitiation, status_code=201)
async def donate_paystack(
    donation: DonationCreate,
    request: Request,
    container: LedgerContainer = Depends(get_container)
):
    """
    Start a Paystack donation.

    Returns the authorization URL to send the donor to.
    """
    return await start_donation(PaymentMethod.PAYSTACK.value, donation, request, container)


@router.post("/stripe", response_model=DonationInitiation, status_code=201)
async def donate_stripe(
    donation: DonationCreate,
    request: Request,
    container: LedgerContainer = Depends(get_container)
):
    """Start a card donation via Stripe Checkout."""
    return await start_donation(PaymentMethod.CARD.value, donation, request, container)


@router.get("/paystack/callback")
async def paystack_callback(
    reference: Optional[str] = None,
    trxref: Optional[str] = None,
    container: LedgerContainer = Depends(get_container)
):
    # Paystack sends both reference and trxref with the same value
    return await callback_redirect(PaymentMethod.PAYSTACK.value, reference or trxref, container)


@router.get("/stripe/callback")
async def stripe_callback(
    session_id: Optional[str] = None,
    container: LedgerContainer = Depends(get_container)
):
    return await callback_redirect(PaymentMethod.CARD.value, session_id, container)


@router.post("/paystack/callback")
async def paystack_callback_webhook(request: Request, container: LedgerContainer = Depends(get_container)):
    return await process_webhook(PaymentMethod.PAYSTACK.value, request, container)


@router.post("/stripe/webhook")
async def stripe_webhook(request: Request, container: LedgerContainer = Depends(get_container)):
    return await process_webhook(PaymentMethod.CARD.value, request, container)
