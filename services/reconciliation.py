"""
Donation Reconciliation Engine

Confirms what really happened to a payment attempt and applies it to the
ledger exactly once.

Two entry points feed the same transitions:
- handle_webhook: signed server-to-server notification. The gateway
  adapter checks the signature over the raw body before parsing anything.
- handle_callback: browser redirect carrying a reference. The redirect is
  never trusted; the gateway is asked server-side for the real status.

State machine:
    pending --verify--> verified   (terminal, campaign total += amount)
    pending --fail----> failed     (terminal, total untouched)
    verified --verify--> verified  (no-op)

The pending -> verified step is a conditional UPDATE whose row count gates
the campaign increment, so concurrent or duplicate deliveries for the same
reference increment the total once. The increment itself runs in SQL
(current_amount = current_amount + amount).
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from database.db import get_donation_by_reference
from database.models import AuditAction, Campaign, Donation, DonationStatus, User
from services.audit_service import AuditEntry, AuditTrail
from services.email_service import EmailSender
from services.errors import GatewayError, NotFoundError, ValidationError, translate_store_errors
from services.gateways import ConfirmationStatus, GatewayConfirmation, PaymentGateway, to_minor_units

logger = logging.getLogger(__name__)

PROGRESS_MILESTONES = (25, 50, 75, 100)

FAILED_PREFIX = "FAILED-"


class ReconciliationOutcome(str, enum.Enum):
    """What a single reconciliation call did."""
    VERIFIED = "verified"    # pending -> verified, total incremented
    DUPLICATE = "duplicate"  # donation already settled, nothing changed
    FAILED = "failed"        # pending -> failed
    IGNORED = "ignored"      # event settles nothing


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    reference: Optional[str] = None
    donation_id: Optional[int] = None
    campaign_id: Optional[int] = None
    campaign_slug: Optional[str] = None
    # Donation status after the call
    status: Optional[DonationStatus] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class DonationSnapshot:
    id: int
    campaign_id: int
    amount: Decimal
    status: str
    reference: str
    payment_method: str
    donor_email: Optional[str] = None
    donor_name: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class CampaignProgress:
    """Campaign state read back after a verification commits."""
    title: str
    slug: str
    previous_amount: Decimal
    current_amount: Decimal
    goal_amount: Decimal
    owner_email: Optional[str] = None
    owner_name: Optional[str] = None

    def percent(self, amount) -> float:
        goal = float(self.goal_amount or 0)
        if goal <= 0:
            return 0.0
        return float(amount) / goal * 100

    def crossed_milestone(self) -> Optional[int]:
        """Highest milestone passed by this donation, if any."""
        before = self.percent(self.previous_amount)
        after = self.percent(self.current_amount)
        crossed = [m for m in PROGRESS_MILESTONES if before < m <= after]
        return crossed[-1] if crossed else None


@dataclass(frozen=True)
class Verification:
    result: ReconciliationResult
    donation: Optional[DonationSnapshot] = None
    canonical_id: Optional[str] = None
    progress: Optional[CampaignProgress] = None


class ReconciliationEngine:
    """Applies gateway confirmations to donations and campaign totals."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateways: Dict[str, PaymentGateway],
        audit_trail: AuditTrail,
        email_sender: Optional[EmailSender] = None
    ):
        self.session_factory = session_factory
        self.gateways = gateways
        self.audit_trail = audit_trail
        self.email_sender = email_sender

    def gateway(self, provider: str) -> PaymentGateway:
        try:
            return self.gateways[provider]
        except KeyError:
            raise ValidationError(f"Unsupported payment provider: {provider}")

    # ============================================
    # Entry points
    # ============================================

    async def handle_webhook(
        self,
        provider: str,
        payload: bytes,
        signature: Optional[str]
    ) -> ReconciliationResult:
        """
        Process a raw webhook body.

        Raises:
            AuthenticationError: Missing or invalid signature (nothing is looked up)
            ValidationError: Signed body is not a valid event
            NotFoundError: Reference was never issued by us
        """
        gateway = self.gateway(provider)
        confirmation = gateway.parse_webhook(payload, signature)
        return await self.apply(confirmation)

    async def handle_callback(self, provider: str, reference: Optional[str]) -> ReconciliationResult:
        """Process a browser redirect by verifying the reference with the gateway."""
        if not reference:
            raise ValidationError("Missing payment reference")

        gateway = self.gateway(provider)
        confirmation = await gateway.verify_transaction(reference)
        return await self.apply(confirmation)

    async def apply(self, confirmation: GatewayConfirmation) -> ReconciliationResult:
        if confirmation.status == ConfirmationStatus.IGNORED:
            logger.info(
                f"Reconciliation: Ignoring {confirmation.provider} "
                f"{confirmation.event_type or 'status'} for {confirmation.reference}"
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                reference=confirmation.reference,
                message=confirmation.message,
            )

        if not confirmation.reference:
            logger.error(f"Reconciliation: {confirmation.provider} event without a donation reference")
            raise NotFoundError("Payment carries no donation reference")

        if confirmation.succeeded:
            return await self.verify_transition(confirmation)
        return await self.fail_transition(confirmation)

    # ============================================
    # Transitions
    # ============================================

    async def verify_transition(self, confirmation: GatewayConfirmation) -> ReconciliationResult:
        verification = await run_in_threadpool(self._commit_verification, confirmation)

        if verification.result.outcome == ReconciliationOutcome.VERIFIED:
            await self._after_verification(verification, confirmation)

        return verification.result

    async def fail_transition(self, confirmation: GatewayConfirmation) -> ReconciliationResult:
        return await run_in_threadpool(self._commit_failure, confirmation)

    def _load_snapshot(self, db: Session, reference: str) -> Optional[DonationSnapshot]:
        donation = get_donation_by_reference(db, reference)
        if donation is None:
            return None

        return DonationSnapshot(
            id=donation.id,
            campaign_id=donation.campaign_id,
            amount=Decimal(str(donation.amount)),
            status=donation.status,
            reference=donation.reference,
            payment_method=donation.payment_method,
            donor_email=donation.donor_email,
            donor_name=donation.donor_name,
            ip_address=donation.ip_address,
        )

    def _require_snapshot(self, db: Session, confirmation: GatewayConfirmation) -> DonationSnapshot:
        snapshot = self._load_snapshot(db, confirmation.reference)
        if snapshot is None:
            logger.error(
                f"Reconciliation: Unknown reference {confirmation.reference} "
                f"from {confirmation.provider}, no donation updated"
            )
            raise NotFoundError(f"Donation not found for reference {confirmation.reference}")
        return snapshot

    def _settled(self, db: Session, snapshot: DonationSnapshot, status: str) -> ReconciliationResult:
        slug = db.query(Campaign.slug).filter(Campaign.id == snapshot.campaign_id).scalar()
        return ReconciliationResult(
            outcome=ReconciliationOutcome.DUPLICATE,
            reference=snapshot.reference,
            donation_id=snapshot.id,
            campaign_id=snapshot.campaign_id,
            campaign_slug=slug,
            status=DonationStatus(status),
        )

    def _commit_verification(self, confirmation: GatewayConfirmation) -> Verification:
        with translate_store_errors("verify transition"), self.session_factory() as db:
            snapshot = self._require_snapshot(db, confirmation)

            if snapshot.status != DonationStatus.PENDING.value:
                if snapshot.status == DonationStatus.FAILED.value:
                    logger.error(
                        f"Reconciliation: {confirmation.provider} reports success for "
                        f"failed donation {snapshot.id} ({snapshot.reference})"
                    )
                else:
                    logger.info(f"Reconciliation: Donation {snapshot.id} already verified, skipping")
                return Verification(result=self._settled(db, snapshot, snapshot.status))

            expected_minor = to_minor_units(snapshot.amount)
            if confirmation.amount_minor is not None and confirmation.amount_minor != expected_minor:
                logger.error(
                    f"Reconciliation: Amount mismatch for {snapshot.reference}: "
                    f"gateway {confirmation.amount_minor}, expected {expected_minor}"
                )
                raise GatewayError("Payment amount does not match donation", provider=confirmation.provider)

            canonical_id = confirmation.canonical_id or snapshot.reference

            claimed = (
                db.query(Donation)
                .filter(
                    Donation.id == snapshot.id,
                    Donation.status == DonationStatus.PENDING.value
                )
                .update(
                    {
                        Donation.status: DonationStatus.VERIFIED.value,
                        Donation.payment_id: canonical_id,
                        Donation.verified_at: datetime.utcnow(),
                    },
                    synchronize_session=False
                )
            )

            if claimed != 1:
                # Another delivery won the transition between our read and write
                db.rollback()
                logger.info(f"Reconciliation: Donation {snapshot.id} verified concurrently, skipping")
                status = db.query(Donation.status).filter(Donation.id == snapshot.id).scalar()
                return Verification(result=self._settled(db, snapshot, status))

            db.query(Campaign).filter(Campaign.id == snapshot.campaign_id).update(
                {Campaign.current_amount: Campaign.current_amount + snapshot.amount},
                synchronize_session=False
            )
            db.commit()

            row = (
                db.query(
                    Campaign.title,
                    Campaign.slug,
                    Campaign.current_amount,
                    Campaign.goal_amount,
                    User.email,
                    User.full_name,
                )
                .outerjoin(User, Campaign.user_id == User.id)
                .filter(Campaign.id == snapshot.campaign_id)
                .one()
            )
            current_amount = Decimal(str(row.current_amount))
            progress = CampaignProgress(
                title=row.title,
                slug=row.slug,
                previous_amount=current_amount - snapshot.amount,
                current_amount=current_amount,
                goal_amount=Decimal(str(row.goal_amount)),
                owner_email=row.email,
                owner_name=row.full_name,
            )

        logger.info(
            f"Reconciliation: Donation {snapshot.id} verified via {confirmation.provider} "
            f"(KES {snapshot.amount}, campaign {snapshot.campaign_id})"
        )

        return Verification(
            result=ReconciliationResult(
                outcome=ReconciliationOutcome.VERIFIED,
                reference=snapshot.reference,
                donation_id=snapshot.id,
                campaign_id=snapshot.campaign_id,
                campaign_slug=progress.slug,
                status=DonationStatus.VERIFIED,
            ),
            donation=snapshot,
            canonical_id=canonical_id,
            progress=progress,
        )

    def _commit_failure(self, confirmation: GatewayConfirmation) -> ReconciliationResult:
        with translate_store_errors("fail transition"), self.session_factory() as db:
            snapshot = self._require_snapshot(db, confirmation)

            if snapshot.status != DonationStatus.PENDING.value:
                logger.info(f"Reconciliation: Donation {snapshot.id} already {snapshot.status}, ignoring failure")
                return self._settled(db, snapshot, snapshot.status)

            failed = (
                db.query(Donation)
                .filter(
                    Donation.id == snapshot.id,
                    Donation.status == DonationStatus.PENDING.value
                )
                .update(
                    {
                        Donation.status: DonationStatus.FAILED.value,
                        Donation.payment_id: f"{FAILED_PREFIX}{snapshot.reference}",
                    },
                    synchronize_session=False
                )
            )

            if failed != 1:
                db.rollback()
                status = db.query(Donation.status).filter(Donation.id == snapshot.id).scalar()
                return self._settled(db, snapshot, status)

            db.commit()
            slug = db.query(Campaign.slug).filter(Campaign.id == snapshot.campaign_id).scalar()

        logger.warning(
            f"Reconciliation: Donation {snapshot.id} failed via {confirmation.provider}: "
            f"{confirmation.message or confirmation.event_type}"
        )

        return ReconciliationResult(
            outcome=ReconciliationOutcome.FAILED,
            reference=snapshot.reference,
            donation_id=snapshot.id,
            campaign_id=snapshot.campaign_id,
            campaign_slug=slug,
            status=DonationStatus.FAILED,
            message=confirmation.message,
        )

    # ============================================
    # Post-commit side effects (best effort)
    # ============================================

    async def _after_verification(self, verification: Verification, confirmation: GatewayConfirmation) -> None:
        donation = verification.donation
        progress = verification.progress

        if self.email_sender and donation.donor_email:
            try:
                await self.email_sender.send_donation_confirmation(
                    donor_email=donation.donor_email,
                    donor_name=donation.donor_name or "Supporter",
                    campaign_title=progress.title,
                    campaign_slug=progress.slug,
                    amount=donation.amount,
                )
            except Exception as e:
                logger.error(f"Reconciliation: Donor email failed for donation {donation.id}: {e}")

        milestone = progress.crossed_milestone()
        if self.email_sender and milestone and progress.owner_email:
            try:
                await self.email_sender.send_progress_update(
                    owner_email=progress.owner_email,
                    owner_name=progress.owner_name or "Campaign Owner",
                    campaign_title=progress.title,
                    campaign_slug=progress.slug,
                    current_amount=progress.current_amount,
                    goal_amount=progress.goal_amount,
                    progress=milestone,
                )
            except Exception as e:
                logger.error(f"Reconciliation: Progress email failed for campaign {donation.campaign_id}: {e}")

        await run_in_threadpool(
            self.audit_trail.record,
            AuditEntry(
                action=AuditAction.DONATION.value,
                campaign_id=donation.campaign_id,
                details={
                    "donation_id": donation.id,
                    "reference": donation.reference,
                    "payment_id": verification.canonical_id,
                    "transaction_id": confirmation.transaction_id,
                    "amount": float(donation.amount),
                    "payment_method": donation.payment_method,
                    "event": confirmation.event_type,
                    "status": DonationStatus.VERIFIED.value,
                },
                ip_address=donation.ip_address,
            ),
        )
