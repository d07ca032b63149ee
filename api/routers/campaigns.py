"""
Campaign Management Endpoints
Handles CRUD operations for campaigns, owner reports and audit history
"""
import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from api.dependencies import client_ip, get_current_user
from database.db import (
    get_active_campaigns,
    get_campaign_by_id,
    get_campaign_by_slug,
    get_db,
    get_verified_donations,
)
from database.models import AuditAction, Campaign, CampaignCategory, Donation, DonationStatus, User
from services.audit_service import AuditEntry
from services.container import LedgerContainer, get_container

router = APIRouter(prefix="/campaigns", tags=["Campaigns"])
logger = logging.getLogger(__name__)

RECENT_DONATIONS_LIMIT = 10
REPORT_DONATIONS_LIMIT = 1000
SLUG_MAX_LENGTH = 100

CATEGORY_PATTERN = "^(" + "|".join(c.value for c in CampaignCategory) + ")$"
STATUS_PATTERN = "^(active|paused|closed)$"


def slugify(title: str) -> str:
    """'Help Amina Walk Again!' -> 'help-amina-walk-again'"""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-") or "campaign"


def unique_slug(db: Session, title: str) -> str:
    """Slug for title, suffixed -2, -3, ... until unused."""
    base = slugify(title)
    slug = base
    suffix = 2
    while get_campaign_by_slug(db, slug):
        slug = f"{base}-{suffix}"
        suffix += 1
    return slug


# Pydantic schemas for request/response
class CampaignCreate(BaseModel):
    title: str = Field(..., min_length=3, max_length=100)
    description: str = Field(..., min_length=10)
    goal_amount: float = Field(..., gt=0)
    category: Optional[str] = Field(CampaignCategory.OTHER.value, pattern=CATEGORY_PATTERN)
    image_url: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "title": "School Fees for Otieno",
                "description": "Help Otieno finish his final year of secondary school",
                "goal_amount": 85000,
                "category": "education"
            }
        }


class CampaignUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=3, max_length=100)
    description: Optional[str] = Field(None, min_length=10)
    goal_amount: Optional[float] = Field(None, gt=0)
    category: Optional[str] = Field(None, pattern=CATEGORY_PATTERN)
    image_url: Optional[str] = None
    status: Optional[str] = Field(None, pattern=STATUS_PATTERN)


class DonationSummary(BaseModel):
    id: int
    donor_name: str
    amount: float
    payment_method: str
    created_at: datetime


class CampaignResponse(BaseModel):
    id: int
    user_id: int
    slug: str
    title: str
    description: str
    category: Optional[str] = None
    image_url: Optional[str] = None
    goal_amount: float
    current_amount: float
    progress: int
    status: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CampaignDetailResponse(CampaignResponse):
    recent_donations: List[DonationSummary] = []


class CampaignReportResponse(BaseModel):
    campaign: CampaignResponse
    donations: List[DonationSummary]
    donation_count: int
    total_raised: float
    average_donation: float
    generated_at: datetime


def campaign_response(campaign: Campaign) -> dict:
    return {
        "id": campaign.id,
        "user_id": campaign.user_id,
        "slug": campaign.slug,
        "title": campaign.title,
        "description": campaign.description,
        "category": campaign.category,
        "image_url": campaign.image_url,
        "goal_amount": float(campaign.goal_amount),
        "current_amount": float(campaign.current_amount or 0),
        "progress": campaign.progress_percent(),
        "status": campaign.status,
        "created_at": campaign.created_at,
        "updated_at": campaign.updated_at,
    }


def donation_summary(donation: Donation) -> dict:
    # Donor emails and phones stay private
    return {
        "id": donation.id,
        "donor_name": donation.donor_name or "Anonymous",
        "amount": float(donation.amount),
        "payment_method": donation.payment_method,
        "created_at": donation.created_at,
    }


def campaign_detail(db: Session, campaign: Campaign) -> dict:
    detail = campaign_response(campaign)
    detail["recent_donations"] = [
        donation_summary(d)
        for d in get_verified_donations(db, campaign.id, limit=RECENT_DONATIONS_LIMIT)
    ]
    return detail


def owned_campaign(db: Session, campaign_id: int, user: User) -> Campaign:
    campaign = get_campaign_by_id(db, campaign_id)
    if not campaign:
        raise HTTPException(status_code=404, detail=f"Campaign {campaign_id} not found")
    if campaign.user_id != user.id:
        raise HTTPException(status_code=403, detail="Only the campaign owner can do this")
    return campaign


@router.get("/", response_model=List[CampaignResponse])
def list_campaigns(
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """List active campaigns, newest first."""
    return [campaign_response(c) for c in get_active_campaigns(db, limit=limit)]


@router.post("/", response_model=CampaignResponse, status_code=201)
def create_campaign(
    campaign: CampaignCreate,
    request_ip: Optional[str] = Depends(client_ip),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    container: LedgerContainer = Depends(get_container)
):
    """Create a new fundraising campaign owned by the current user."""
    new_campaign = Campaign(
        user_id=current_user.id,
        slug=unique_slug(db, campaign.title),
        title=campaign.title.strip(),
        description=campaign.description,
        category=campaign.category or CampaignCategory.OTHER.value,
        image_url=campaign.image_url,
        goal_amount=Decimal(str(campaign.goal_amount)),
        current_amount=Decimal("0"),
    )
    db.add(new_campaign)
    db.commit()
    db.refresh(new_campaign)

    container.audit_trail.record(
        AuditEntry(
            action=AuditAction.CAMPAIGN_CREATED.value,
            campaign_id=new_campaign.id,
            user_id=current_user.id,
            details={"title": new_campaign.title, "goal_amount": float(new_campaign.goal_amount)},
            ip_address=request_ip,
        ),
    )

    logger.info(f"Campaign {new_campaign.id} created by user {current_user.id} ({new_campaign.slug})")
    return campaign_response(new_campaign)


@router.get("/mine", response_model=List[CampaignResponse])
def my_campaigns(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """All campaigns owned by the current user, any status."""
    campaigns = (
        db.query(Campaign)
        .filter(Campaign.user_id == current_user.id)
        .order_by(Campaign.created_at.desc(), Campaign.id.desc())
        .all()
    )
    return [campaign_response(c) for c in campaigns]


@router.get("/slug/{slug}", response_model=CampaignDetailResponse)
def get_campaign_by_slug_route(slug: str, db: Session = Depends(get_db)):
    campaign = get_campaign_by_slug(db, slug)
    if not campaign:
        raise HTTPException(status_code=404, detail=f"Campaign '{slug}' not found")
    return campaign_detail(db, campaign)


@router.get("/{campaign_id}", response_model=CampaignDetailResponse)
def get_campaign(campaign_id: int, db: Session = Depends(get_db)):
    """Get campaign details with recent verified donations."""
    campaign = get_campaign_by_id(db, campaign_id)
    if not campaign:
        raise HTTPException(status_code=404, detail=f"Campaign {campaign_id} not found")
    return campaign_detail(db, campaign)


@router.patch("/{campaign_id}", response_model=CampaignResponse)
def update_campaign(
    campaign_id: int,
    updates: CampaignUpdate,
    request_ip: Optional[str] = Depends(client_ip),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    container: LedgerContainer = Depends(get_container)
):
    """
    Update campaign details (owner only).

    The raised amount is never editable here; it only moves when a
    donation is verified.
    """
    changes = updates.model_dump(exclude_unset=True)

    campaign = owned_campaign(db, campaign_id, current_user)
    for field, value in changes.items():
        if field == "goal_amount":
            value = Decimal(str(value))
        setattr(campaign, field, value)
    db.commit()
    db.refresh(campaign)

    if changes:
        container.audit_trail.record(
            AuditEntry(
                action=AuditAction.CAMPAIGN_UPDATED.value,
                campaign_id=campaign.id,
                user_id=current_user.id,
                details={"fields": sorted(changes)},
                ip_address=request_ip,
            ),
        )

    return campaign_response(campaign)


@router.get("/{campaign_id}/report", response_model=CampaignReportResponse)
def campaign_report(
    campaign_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Report data for the owner: campaign, verified donations and totals."""
    campaign = owned_campaign(db, campaign_id, current_user)

    donations = get_verified_donations(db, campaign.id, limit=REPORT_DONATIONS_LIMIT)
    count, total = (
        db.query(func.count(Donation.id), func.coalesce(func.sum(Donation.amount), 0))
        .filter(
            Donation.campaign_id == campaign.id,
            Donation.status == DonationStatus.VERIFIED.value
        )
        .one()
    )
    total = float(total or 0)

    return {
        "campaign": campaign_response(campaign),
        "donations": [donation_summary(d) for d in donations],
        "donation_count": count,
        "total_raised": total,
        "average_donation": round(total / count, 2) if count else 0.0,
        "generated_at": datetime.utcnow(),
    }


@router.get("/{campaign_id}/audit")
def campaign_audit(
    campaign_id: int,
    action: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    container: LedgerContainer = Depends(get_container)
):
    """Audit history for the owner, newest first."""
    owned_campaign(db, campaign_id, current_user)
    entries = container.audit_trail.list_for_campaign(campaign_id, action=action, limit=limit)
    return {"campaign_id": campaign_id, "entries": [e.to_dict() for e in entries]}
