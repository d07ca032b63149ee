"""
Payment Gateway Capability

Both providers sit behind the same small interface so the reconciliation
engine is written once:

1. create_session: start a hosted payment for a pending donation
2. parse_webhook: verify the signature over the raw body, then turn the
   provider payload into a GatewayConfirmation
3. verify_transaction: ask the provider, server-side, what happened to a
   reference (used by browser callbacks, which are never trusted alone)
"""

import abc
import enum
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from pydantic import BaseModel


def to_minor_units(amount) -> int:
    """Convert whole currency units to the gateway's minor unit (x100)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentIntent(BaseModel):
    """Everything a gateway needs to open a hosted payment session."""
    reference: str
    donation_id: int
    campaign_id: int
    campaign_title: str
    campaign_slug: str
    amount: Decimal
    donor_email: Optional[str] = None
    donor_name: Optional[str] = None

    @property
    def amount_minor(self) -> int:
        return to_minor_units(self.amount)

    def metadata(self) -> Dict[str, str]:
        """Metadata echoed back by the provider (string values only)."""
        return {
            "reference": self.reference,
            "donation_id": str(self.donation_id),
            "campaign_id": str(self.campaign_id),
            "campaign_title": self.campaign_title,
            "donor_name": self.donor_name or "Anonymous",
        }


class PaymentSession(BaseModel):
    """Hosted payment session returned to the donor's browser."""
    provider: str
    reference: str
    redirect_url: str
    session_id: Optional[str] = None
    access_code: Optional[str] = None


class ConfirmationStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IGNORED = "ignored"  # Event or status that settles nothing


class GatewayConfirmation(BaseModel):
    """
    Provider-agnostic outcome of a webhook or a verification call.

    canonical_id is what Donation.payment_id becomes once verified;
    transaction_id is the provider's own transaction identifier, kept for
    the audit trail.
    """
    provider: str
    status: ConfirmationStatus
    reference: Optional[str] = None
    canonical_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount_minor: Optional[int] = None
    message: Optional[str] = None
    event_type: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ConfirmationStatus.SUCCEEDED


class PaymentGateway(abc.ABC):
    """Capability interface implemented by each payment provider."""

    provider: str = ""
    signature_header: str = ""
    requires_email: bool = False

    @abc.abstractmethod
    async def create_session(self, intent: PaymentIntent) -> PaymentSession:
        """Open a hosted payment session. Raises GatewayError on failure."""

    @abc.abstractmethod
    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayConfirmation:
        """
        Verify and parse a webhook.

        Raises AuthenticationError before looking at the payload when the
        signature is missing or wrong.
        """

    @abc.abstractmethod
    async def verify_transaction(self, reference: str) -> GatewayConfirmation:
        """Confirm a transaction's status with the provider."""

    async def aclose(self) -> None:
        """Release provider resources. Most adapters hold none of their own."""
        return None
