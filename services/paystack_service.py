"""
Paystack Payment Integration Service

Handles hosted-checkout payments via the Paystack API.

Paystack Flow:
1. Initialize a transaction with our reference -> authorization_url
2. Donor pays on the Paystack hosted page
3. Paystack redirects the browser to our callback with ?reference=...
   and, separately, POSTs a charge.success webhook signed with
   HMAC-SHA512 (secret key) in the x-paystack-signature header
4. Callback verifies the transaction server-side; webhook is trusted
   only after its signature checks out
"""

import hashlib
import hmac
import json
import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError

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

PAYSTACK_BASE_URL = "https://api.paystack.co"

# Transaction statuses that mean the donor is still paying
IN_FLIGHT_STATUSES = {"ongoing", "pending", "processing", "queued"}


class PaystackTransaction(BaseModel):
    """The `data` object of a charge event or a verify response."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    reference: str
    status: Optional[str] = None
    amount: Optional[int] = None
    gateway_response: Optional[str] = None


class PaystackEvent(BaseModel):
    """Webhook envelope, discriminated by `event`."""
    model_config = ConfigDict(extra="ignore")

    event: str
    data: PaystackTransaction


class PaystackService(PaymentGateway):
    """Paystack payment service."""

    provider = PaymentMethod.PAYSTACK.value
    signature_header = "x-paystack-signature"
    requires_email = True

    def __init__(
        self,
        secret_key: Optional[str] = None,
        callback_url: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0
    ):
        """Initialize Paystack service with credentials from environment."""
        self.secret_key = secret_key if secret_key is not None else os.getenv("PAYSTACK_SECRET_KEY", "")
        app_url = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
        self.callback_url = (
            callback_url
            or os.getenv("PAYSTACK_CALLBACK_URL")
            or f"{app_url}/donate/paystack/callback"
        )
        self.base_url = (base_url or os.getenv("PAYSTACK_BASE_URL", PAYSTACK_BASE_URL)).rstrip("/")

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

        if not self.is_configured:
            logger.warning("Paystack: PAYSTACK_SECRET_KEY not configured, payments disabled")

    @property
    def is_configured(self) -> bool:
        key = self.secret_key or ""
        return "your_" not in key and (key.startswith("sk_test_") or key.startswith("sk_live_"))

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Call the Paystack API and return the decoded JSON envelope."""
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Paystack: Request to {path} failed: {e}")
            raise GatewayError("Payment provider unreachable", provider=self.provider) from e

        if response.status_code == 401:
            logger.error("Paystack: Rejected credentials (401)")
            raise GatewayError(
                "Invalid Paystack credentials. Check PAYSTACK_SECRET_KEY.",
                provider=self.provider
            )

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Paystack: Non-JSON response from {path} ({response.status_code})")
            raise GatewayError("Unexpected response from Paystack", provider=self.provider) from e

        if response.status_code >= 500:
            raise GatewayError(
                body.get("message") or "Paystack is unavailable",
                provider=self.provider
            )

        return body

    async def create_session(self, intent: PaymentIntent) -> PaymentSession:
        """
        Initialize a Paystack transaction.

        Args:
            intent: Pending donation details; amount is converted to kobo

        Returns:
            PaymentSession with the authorization_url to redirect to
        """
        if not self.is_configured:
            raise GatewayError(
                "Paystack credentials not configured. Set PAYSTACK_SECRET_KEY.",
                provider=self.provider
            )
        if not intent.donor_email:
            raise GatewayError("Email is required for Paystack payments", provider=self.provider, status_code=400)

        body = await self._request(
            "POST",
            "/transaction/initialize",
            json={
                "email": intent.donor_email,
                "amount": intent.amount_minor,
                "reference": intent.reference,
                "callback_url": self.callback_url,
                "metadata": intent.metadata(),
            },
        )

        data = body.get("data") or {}
        if not body.get("status") or not data.get("authorization_url"):
            message = body.get("message") or "Failed to initialize Paystack payment"
            logger.error(f"Paystack: Initialization declined for {intent.reference}: {message}")
            raise GatewayError(message, provider=self.provider, status_code=400)

        logger.info(f"Paystack: Transaction initialized - {intent.reference}")

        return PaymentSession(
            provider=self.provider,
            reference=data.get("reference") or intent.reference,
            redirect_url=data["authorization_url"],
            access_code=data.get("access_code"),
        )

    async def verify_transaction(self, reference: str) -> GatewayConfirmation:
        """
        Verify a transaction by reference.

        success -> SUCCEEDED; still in flight -> IGNORED; anything else
        (failed, abandoned, reversed) -> FAILED.
        """
        if not self.secret_key:
            raise GatewayError("Paystack credentials not configured", provider=self.provider)

        body = await self._request("GET", f"/transaction/verify/{quote(reference, safe='')}")

        if not body.get("status") or not body.get("data"):
            message = body.get("message") or "Verification failed"
            logger.warning(f"Paystack: Verification failed for {reference}: {message}")
            raise GatewayError(message, provider=self.provider)

        try:
            transaction = PaystackTransaction.model_validate(body["data"])
        except PydanticValidationError as e:
            raise GatewayError("Malformed Paystack verification response", provider=self.provider) from e

        if transaction.reference != reference:
            logger.error(f"Paystack: Verify for {reference} returned {transaction.reference}")
            raise GatewayError("Verification returned a different reference", provider=self.provider)

        return self._confirmation(transaction, event_type="transaction.verify")

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA512 of the raw body with the secret key, hex encoded."""
        if not self.secret_key or not signature:
            return False

        computed = hmac.new(
            self.secret_key.encode(),
            payload,
            hashlib.sha512
        ).hexdigest()
        return hmac.compare_digest(computed, signature)

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayConfirmation:
        if not self.verify_webhook_signature(payload, signature):
            logger.warning("Paystack: Webhook rejected, invalid or missing signature")
            raise AuthenticationError("Invalid signature")

        try:
            event = PaystackEvent.model_validate(json.loads(payload))
        except (ValueError, PydanticValidationError) as e:
            logger.error(f"Paystack: Malformed webhook payload: {e}")
            raise ValidationError("Malformed webhook payload") from e

        logger.info(f"Paystack webhook received: {event.event} ({event.data.reference})")

        if event.event != "charge.success":
            return GatewayConfirmation(
                provider=self.provider,
                status=ConfirmationStatus.IGNORED,
                reference=event.data.reference,
                event_type=event.event,
            )

        return self._confirmation(event.data, event_type=event.event)

    def _confirmation(self, transaction: PaystackTransaction, event_type: str) -> GatewayConfirmation:
        status = (transaction.status or "").lower()
        if status == "success":
            outcome = ConfirmationStatus.SUCCEEDED
        elif status in IN_FLIGHT_STATUSES:
            outcome = ConfirmationStatus.IGNORED
        else:
            outcome = ConfirmationStatus.FAILED

        return GatewayConfirmation(
            provider=self.provider,
            status=outcome,
            reference=transaction.reference,
            # Paystack keys transactions by our reference
            canonical_id=transaction.reference,
            transaction_id=str(transaction.id) if transaction.id is not None else None,
            amount_minor=transaction.amount,
            message=transaction.gateway_response,
            event_type=event_type,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
