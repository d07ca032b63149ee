"""
Process-wide ledger services.

Built once at startup, handed to routes through FastAPI dependencies and
closed at shutdown. Tests build their own container with fake gateways.
"""

import logging
from typing import Callable, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from database.models import PaymentMethod
from services.audit_service import AuditTrail
from services.email_service import EmailSender
from services.gateways import PaymentGateway
from services.payment_initiator import PaymentIntentInitiator
from services.paystack_service import PaystackService
from services.reconciliation import ReconciliationEngine
from services.stripe_service import StripeService

logger = logging.getLogger(__name__)


class LedgerContainer:
    """Holds the donation ledger and its collaborators."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateways: Dict[str, PaymentGateway],
        email_sender: Optional[EmailSender] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        minimum_amount=None
    ):
        self.session_factory = session_factory
        self.gateways = gateways
        self.email_sender = email_sender
        self.http_client = http_client
        self.audit_trail = AuditTrail(session_factory)
        self.initiator = PaymentIntentInitiator(
            session_factory,
            gateways,
            self.audit_trail,
            minimum_amount=minimum_amount,
        )
        self.reconciliation = ReconciliationEngine(
            session_factory,
            gateways,
            self.audit_trail,
            email_sender=email_sender,
        )

    @classmethod
    def from_env(cls, session_factory: Callable[[], Session]) -> "LedgerContainer":
        """Wire the real gateways from environment configuration."""
        http_client = httpx.AsyncClient(timeout=30.0)
        gateways = {
            PaymentMethod.PAYSTACK.value: PaystackService(client=http_client),
            PaymentMethod.CARD.value: StripeService(),
        }
        return cls(
            session_factory,
            gateways,
            email_sender=EmailSender(client=http_client),
            http_client=http_client,
        )

    async def aclose(self) -> None:
        for gateway in self.gateways.values():
            await gateway.aclose()
        if self.email_sender:
            await self.email_sender.aclose()
        if self.http_client:
            await self.http_client.aclose()


_container: Optional[LedgerContainer] = None


def init_container(container: LedgerContainer) -> LedgerContainer:
    global _container
    _container = container
    logger.info(f"Ledger ready with gateways: {', '.join(container.gateways)}")
    return _container


def get_container() -> LedgerContainer:
    """FastAPI dependency returning the startup-built container."""
    if _container is None:
        raise RuntimeError("Ledger container not initialized. Call init_container() at startup.")
    return _container


async def shutdown_container() -> None:
    global _container
    if _container is not None:
        await _container.aclose()
        _container = None
        logger.info("Ledger services closed")
