"""
Payment Intent Initiator

Starts a donation: validates the request, records a pending Donation and
opens a hosted payment session with the chosen gateway.

The donation row is committed before the gateway call so its reference
can travel in the gateway metadata. If the gateway call fails the row is
deleted again; no transaction spans the external call.
"""

import logging
import os
import secrets
import time
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from database.db import get_campaign_by_id
from database.models import AuditAction, CampaignStatus, Donation, DonationStatus
from services.audit_service import AuditEntry, AuditTrail
from services.errors import GatewayError, NotFoundError, ValidationError, translate_store_errors
from services.gateways import PaymentGateway, PaymentIntent

logger = logging.getLogger(__name__)

DEFAULT_MIN_DONATION_AMOUNT = "100"

# Largest value a Numeric(12, 2) amount column holds
MAX_DONATION_AMOUNT = Decimal("9999999999.99")


def generate_reference(campaign_id: int) -> str:
    """
    Reference shared with the gateway as the idempotency key.

    Format: DONATION-<campaign_id>-<unix_ms>-<8 hex chars>
    """
    return f"DONATION-{campaign_id}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class DonationInitiation(BaseModel):
    """What the donor's browser needs to continue to the gateway."""
    donation_id: int
    reference: str
    provider: str
    redirect_url: str
    session_id: Optional[str] = None
    access_code: Optional[str] = None


class PaymentIntentInitiator:
    """Creates pending donations and their hosted payment sessions."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateways: Dict[str, PaymentGateway],
        audit_trail: AuditTrail,
        minimum_amount=None
    ):
        self.session_factory = session_factory
        self.gateways = gateways
        self.audit_trail = audit_trail
        self.minimum_amount = Decimal(str(
            minimum_amount if minimum_amount is not None
            else os.getenv("MIN_DONATION_AMOUNT", DEFAULT_MIN_DONATION_AMOUNT)
        ))

    def _validate_amount(self, amount) -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError("Invalid donation amount")

        if not value.is_finite() or value < self.minimum_amount:
            raise ValidationError(f"Minimum donation amount is KES {self.minimum_amount:,.0f}")
        if value > MAX_DONATION_AMOUNT:
            raise ValidationError(f"Maximum donation amount is KES {MAX_DONATION_AMOUNT:,.2f}")

        try:
            return value.quantize(Decimal("0.01"))
        except InvalidOperation:
            raise ValidationError("Invalid donation amount")

    async def initiate(
        self,
        campaign_id: int,
        amount,
        payment_method: str,
        donor_email: Optional[str] = None,
        donor_name: Optional[str] = None,
        donor_phone: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> DonationInitiation:
        """
        Start a donation and return the gateway redirect.

        Raises:
            ValidationError: Amount below minimum, unknown method, missing email
            NotFoundError: Campaign missing or not active
            GatewayError: Gateway refused to open a session (donation removed)
        """
        gateway = self.gateways.get(payment_method)
        if gateway is None:
            raise ValidationError(f"Unsupported payment method: {payment_method}")

        value = self._validate_amount(amount)

        donor_email = (donor_email or "").strip() or None
        if gateway.requires_email and not donor_email:
            raise ValidationError("Email is required for this payment method")

        reference = generate_reference(campaign_id)

        intent = await run_in_threadpool(
            self._create_pending,
            campaign_id,
            value,
            payment_method,
            reference,
            donor_email,
            donor_name,
            donor_phone,
            ip_address,
        )

        try:
            session = await gateway.create_session(intent)
        except GatewayError as e:
            logger.error(f"Initiator: {gateway.provider} session failed for {reference}: {e.message}")
            await run_in_threadpool(self._discard_pending, intent.donation_id)
            raise
        except Exception as e:
            logger.exception(f"Initiator: Unexpected {gateway.provider} error for {reference}")
            await run_in_threadpool(self._discard_pending, intent.donation_id)
            raise GatewayError("Failed to create payment session", provider=gateway.provider) from e

        await run_in_threadpool(
            self.audit_trail.record,
            AuditEntry(
                action=AuditAction.DONATION.value,
                campaign_id=campaign_id,
                details={
                    "donation_id": intent.donation_id,
                    "reference": reference,
                    "amount": float(value),
                    "payment_method": payment_method,
                    "status": DonationStatus.PENDING.value,
                },
                ip_address=ip_address,
            ),
        )

        logger.info(f"Initiator: Donation {intent.donation_id} pending ({reference}, KES {value})")

        return DonationInitiation(
            donation_id=intent.donation_id,
            reference=reference,
            provider=gateway.provider,
            redirect_url=session.redirect_url,
            session_id=session.session_id,
            access_code=session.access_code,
        )

    def _create_pending(
        self,
        campaign_id: int,
        amount: Decimal,
        payment_method: str,
        reference: str,
        donor_email: Optional[str],
        donor_name: Optional[str],
        donor_phone: Optional[str],
        ip_address: Optional[str]
    ) -> PaymentIntent:
        with translate_store_errors("donation initiation"), self.session_factory() as db:
            campaign = get_campaign_by_id(db, campaign_id)
            if not campaign or campaign.status != CampaignStatus.ACTIVE.value:
                raise NotFoundError("Campaign not found or not accepting donations")

            donation = Donation(
                campaign_id=campaign.id,
                amount=amount,
                donor_name=donor_name,
                donor_email=donor_email,
                donor_phone=donor_phone,
                payment_method=payment_method,
                reference=reference,
                payment_id=reference,
                status=DonationStatus.PENDING.value,
                ip_address=ip_address,
            )
            db.add(donation)
            db.commit()

            return PaymentIntent(
                reference=reference,
                donation_id=donation.id,
                campaign_id=campaign.id,
                campaign_title=campaign.title,
                campaign_slug=campaign.slug,
                amount=amount,
                donor_email=donor_email,
                donor_name=donor_name,
            )

    def _discard_pending(self, donation_id: int) -> None:
        """Compensating delete for a donation whose session never opened."""
        try:
            with self.session_factory() as db:
                db.query(Donation).filter(
                    Donation.id == donation_id,
                    Donation.status == DonationStatus.PENDING.value
                ).delete(synchronize_session=False)
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Initiator: Could not remove pending donation {donation_id}: {e}")
