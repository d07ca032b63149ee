"""
TuFund Database Models

This module defines all SQLAlchemy models for the TuFund platform.

Architecture:
- Users: Campaign owners who sign in to create campaigns and request withdrawals
- Campaigns: Fundraising targets with a running total of verified donations
- Donations: Individual contribution attempts, reconciled against a payment gateway
- Audit Logs: Append-only record of every state-changing event
- Withdrawal Requests: Owner requests to pay out raised funds
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, Boolean, DateTime,
    Text, ForeignKey, JSON, Index
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
import enum

Base = declarative_base()


class CampaignStatus(str, enum.Enum):
    """Campaign lifecycle. Only active campaigns accept donations."""
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


class CampaignCategory(str, enum.Enum):
    MEDICAL = "medical"
    EDUCATION = "education"
    BUSINESS = "business"
    EMERGENCY = "emergency"
    CHARITY = "charity"
    OTHER = "other"


class PaymentMethod(str, enum.Enum):
    """Supported payment gateways."""
    PAYSTACK = "paystack"  # Hosted checkout + redirect callback
    CARD = "card"          # Stripe Checkout


class DonationStatus(str, enum.Enum):
    """
    Donation reconciliation states.

    pending -> verified (terminal)
    pending -> failed   (terminal)
    """
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class AuditAction(str, enum.Enum):
    DONATION = "donation"
    CAMPAIGN_CREATED = "campaign_created"
    CAMPAIGN_UPDATED = "campaign_updated"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"


class User(Base):
    """
    Campaign owner.

    Donors never need an account; only people running campaigns sign in.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255))
    phone = Column(String(20))  # Digits only, e.g. 254712345678
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    campaigns = relationship("Campaign", back_populates="owner")


class Campaign(Base):
    """
    Individual fundraising project.

    current_amount is denormalized: it always equals the sum of verified
    donations and is only ever changed by the reconciliation engine, using a
    database-side increment.
    """
    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Basic Info
    slug = Column(String(120), unique=True, nullable=False, index=True)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(20), default=CampaignCategory.OTHER.value)
    image_url = Column(Text)

    # Money (whole currency units)
    goal_amount = Column(Numeric(12, 2), nullable=False)
    current_amount = Column(Numeric(12, 2), nullable=False, default=0)

    # Status
    status = Column(String(20), nullable=False, default=CampaignStatus.ACTIVE.value)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    owner = relationship("User", back_populates="campaigns")
    donations = relationship("Donation", back_populates="campaign")
    withdrawal_requests = relationship("WithdrawalRequest", back_populates="campaign")

    def progress_percent(self) -> int:
        """Funding progress, capped at 100."""
        goal = float(self.goal_amount or 0)
        if goal <= 0:
            return 0
        return min(round(float(self.current_amount or 0) / goal * 100), 100)


class Donation(Base):
    """
    One contribution attempt.

    reference is generated when the attempt starts and never changes; it is
    the idempotency key shared with the gateway. payment_id starts out equal
    to it, becomes the gateway's canonical transaction id once verified, and
    is prefixed with FAILED- once failed.
    """
    __tablename__ = "donations"

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)

    # Donor details (optional, not unique)
    donor_name = Column(String(255))
    donor_email = Column(String(255))
    donor_phone = Column(String(20))

    # Payment
    payment_method = Column(String(20), nullable=False)  # paystack, card
    reference = Column(String(255), unique=True, nullable=False, index=True)
    payment_id = Column(String(255), unique=True, index=True)
    status = Column(String(20), nullable=False, default=DonationStatus.PENDING.value)

    # Fraud review only
    ip_address = Column(String(64))

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    verified_at = Column(DateTime)

    # Relationships
    campaign = relationship("Campaign", back_populates="donations")

    @hybrid_property
    def verified(self):
        return self.status == DonationStatus.VERIFIED.value

    def __repr__(self):
        return f"<Donation(id={self.id}, amount={self.amount}, status={self.status})>"


class AuditLog(Base):
    """
    Append-only audit trail. Rows are never updated or deleted.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"))
    campaign_id = Column(Integer, ForeignKey("campaigns.id"))
    action = Column(String(50), nullable=False)
    details = Column(JSON, default=dict)
    ip_address = Column(String(64))
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_audit_campaign_action", "campaign_id", "action"),
        Index("idx_audit_created_at", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "campaign_id": self.campaign_id,
            "action": self.action,
            "details": self.details or {},
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class WithdrawalRequest(Base):
    """
    Owner request to pay out raised funds.

    Requests are only recorded here; payout execution happens outside the
    platform after manual review.
    """
    __tablename__ = "withdrawal_requests"

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    bank_account = Column(Text, nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(20), default="pending")  # pending, approved, rejected
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    campaign = relationship("Campaign", back_populates="withdrawal_requests")

    def __repr__(self):
        return f"<WithdrawalRequest(id={self.id}, amount={self.amount}, status={self.status})>"
