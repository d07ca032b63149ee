"""
Stripe Payment Integration Service

Handles credit/debit card donations via Stripe Checkout.

Stripe Flow:
1. Create a Checkout Session carrying our reference as client_reference_id
2. Donor pays on the Stripe hosted page
3. Stripe sends checkout.session.completed, signed with the endpoint's
   signing secret in the Stripe-Signature header
4. The success redirect lands on our callback with the session id, which
   is re-checked against the API before anything is trusted
"""

import json
import logging
import os
from typing import Any, Dict, Optional

import stripe
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from database.models import PaymentMethod
from services.errors import AuthenticationError, GatewayError, ValidationError
from services.gateways import (
    ConfirmationStatus,
    GatewayConfirmation,
    PaymentGateway,
    PaymentIntent,
    PaymentSession,
)

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}
# Events that close a session without payment
CHECKOUT_FAILED_EVENTS = {
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
}


class StripeCheckoutSession(BaseModel):
    """The parts of a Checkout Session the ledger relies on."""
    model_config = ConfigDict(extra="ignore")

    id: str
    client_reference_id: Optional[str] = None
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None
    status: Optional[str] = None
    amount_total: Optional[int] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def reference(self) -> Optional[str]:
        return self.client_reference_id or self.metadata.get("reference")


class StripeEvent(BaseModel):
    """Webhook envelope, discriminated by `type`."""
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    data: Dict[str, Any]


class StripeService(PaymentGateway):
    """Stripe Checkout payment service."""

    provider = PaymentMethod.CARD.value
    signature_header = "stripe-signature"

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: Optional[str] = None,
        app_url: Optional[str] = None
    ):
        """Initialize Stripe service with API key from environment."""
        self.api_key = api_key if api_key is not None else os.getenv("STRIPE_SECRET_KEY", "")
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else os.getenv("STRIPE_WEBHOOK_SECRET", "")
        )
        self.currency = (currency or os.getenv("STRIPE_CURRENCY", "kes")).lower()
        self.app_url = (app_url or os.getenv("APP_URL", "http://localhost:3000")).rstrip("/")
        self.tolerance = 300  # seconds

        # Set Stripe API key
        if self.api_key:
            stripe.api_key = self.api_key
            logger.info("Stripe: Initialized with API key")
        else:
            logger.warning("Stripe: STRIPE_SECRET_KEY not configured, card payments disabled")

    async def create_session(self, intent: PaymentIntent) -> PaymentSession:
        """
        Create a Stripe Checkout Session for a pending donation.

        The reference doubles as Stripe's idempotency key, so a retried
        initiation never opens two sessions for one donation.
        """
        if not self.api_key:
            raise GatewayError("Stripe credentials not configured", provider=self.provider)

        try:
            session = await run_in_threadpool(
                stripe.checkout.Session.create,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {
                                "name": f"Donation to {intent.campaign_title}",
                                "description": f"Supporting {intent.campaign_title}",
                            },
                            "unit_amount": intent.amount_minor,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=f"{self.app_url}/donate/stripe/callback?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.app_url}/campaign/{intent.campaign_slug}?canceled=true",
                client_reference_id=intent.reference,
                metadata=intent.metadata(),
                customer_email=intent.donor_email or None,
                idempotency_key=intent.reference,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe: Checkout Session creation failed: {str(e)}")
            message = getattr(e, "user_message", None) or "Failed to create payment session"
            raise GatewayError(message, provider=self.provider) from e

        logger.info(f"Stripe: Checkout Session created - {session.id}")

        return PaymentSession(
            provider=self.provider,
            reference=intent.reference,
            redirect_url=session.url,
            session_id=session.id,
        )

    async def verify_transaction(self, reference: str) -> GatewayConfirmation:
        """
        Retrieve a Checkout Session by id and report its payment state.

        Args:
            reference: The Checkout Session id from the success redirect
        """
        if not self.api_key:
            raise GatewayError("Stripe credentials not configured", provider=self.provider)

        try:
            session = await run_in_threadpool(
                stripe.checkout.Session.retrieve,
                reference,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe: Session retrieval failed: {str(e)}")
            raise GatewayError("Failed to verify Stripe payment", provider=self.provider) from e

        metadata_reference = getattr(getattr(session, "metadata", None), "reference", None)
        checkout = StripeCheckoutSession(
            id=session.id,
            client_reference_id=getattr(session, "client_reference_id", None),
            payment_intent=getattr(session, "payment_intent", None),
            payment_status=getattr(session, "payment_status", None),
            status=getattr(session, "status", None),
            amount_total=getattr(session, "amount_total", None),
            metadata={"reference": metadata_reference} if metadata_reference else {},
        )

        if checkout.payment_status in ("paid", "no_payment_required"):
            status = ConfirmationStatus.SUCCEEDED
        elif checkout.status == "expired":
            status = ConfirmationStatus.FAILED
        else:
            status = ConfirmationStatus.IGNORED

        return self._confirmation(checkout, status, event_type="checkout.session.retrieve")

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayConfirmation:
        """
        Verify the Stripe-Signature header, then parse the event.

        Raises:
            AuthenticationError: If signature verification fails
        """
        if not self.webhook_secret or not signature:
            logger.warning("Stripe: Webhook rejected, missing signature or signing secret")
            raise AuthenticationError("Invalid signature")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                self.tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.error(f"Stripe: Invalid webhook signature: {str(e)}")
            raise AuthenticationError("Invalid signature") from e

        try:
            event = StripeEvent.model_validate(json.loads(payload))
        except (ValueError, PydanticValidationError) as e:
            logger.error(f"Stripe: Invalid webhook payload: {str(e)}")
            raise ValidationError("Malformed webhook payload") from e

        logger.info(f"Stripe webhook received: {event.type}")

        if event.type not in CHECKOUT_COMPLETED_EVENTS and event.type not in CHECKOUT_FAILED_EVENTS:
            return GatewayConfirmation(
                provider=self.provider,
                status=ConfirmationStatus.IGNORED,
                event_type=event.type,
            )

        try:
            checkout = StripeCheckoutSession.model_validate(event.data.get("object") or {})
        except PydanticValidationError as e:
            logger.error(f"Stripe: Malformed checkout session in {event.id}: {e}")
            raise ValidationError("Malformed webhook payload") from e

        if event.type in CHECKOUT_FAILED_EVENTS:
            status = ConfirmationStatus.FAILED
        elif checkout.payment_status in ("paid", "no_payment_required"):
            status = ConfirmationStatus.SUCCEEDED
        else:
            # Delayed payment methods complete later via async_payment_succeeded
            status = ConfirmationStatus.IGNORED

        return self._confirmation(checkout, status, event_type=event.type)

    def _confirmation(
        self,
        checkout: StripeCheckoutSession,
        status: ConfirmationStatus,
        event_type: str
    ) -> GatewayConfirmation:
        return GatewayConfirmation(
            provider=self.provider,
            status=status,
            reference=checkout.reference,
            canonical_id=checkout.payment_intent or checkout.id,
            transaction_id=checkout.payment_intent,
            amount_minor=checkout.amount_total,
            message=checkout.payment_status,
            event_type=event_type,
        )
