"""
Withdrawal Request Router

Campaign owners ask for raised funds to be paid out. Requests are only
recorded here; payouts are executed outside the platform after review.

Endpoints:
- POST /withdrawals/ - Request a withdrawal for an owned campaign
- GET /withdrawals/ - List the current user's requests
"""

from fastapi import APIRouter, HTTPException, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
import logging

from api.dependencies import client_ip, get_current_user
from api.routers.campaigns import owned_campaign
from database.db import get_db
from database.models import AuditAction, User, WithdrawalRequest
from services.audit_service import AuditEntry
from services.container import LedgerContainer, get_container

router = APIRouter(prefix="/withdrawals", tags=["Withdrawals"])
logger = logging.getLogger(__name__)

MIN_WITHDRAWAL_AMOUNT = 100


class WithdrawalCreate(BaseModel):
    """Create new withdrawal request."""
    campaign_id: int
    amount: float = Field(..., ge=MIN_WITHDRAWAL_AMOUNT, description="Minimum withdrawal is KSh 100")
    bank_account: str = Field(..., min_length=10)
    reason: str = Field(..., min_length=10)


class WithdrawalResponse(BaseModel):
    id: int
    campaign_id: int
    user_id: int
    amount: float
    bank_account: str
    reason: str
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


@router.post("/", response_model=WithdrawalResponse, status_code=201)
def create_withdrawal(
    withdrawal: WithdrawalCreate,
    request_ip: Optional[str] = Depends(client_ip),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    container: LedgerContainer = Depends(get_container)
):
    """
    Request a payout of raised funds.

    The amount cannot exceed what the campaign has raised less what is
    already requested and still pending.
    """
    campaign = owned_campaign(db, withdrawal.campaign_id, current_user)

    pending = (
        db.query(func.coalesce(func.sum(WithdrawalRequest.amount), 0))
        .filter(
            WithdrawalRequest.campaign_id == campaign.id,
            WithdrawalRequest.status == "pending"
        )
        .scalar()
    )
    available = Decimal(str(campaign.current_amount or 0)) - Decimal(str(pending or 0))

    amount = Decimal(str(withdrawal.amount))
    if amount > available:
        raise HTTPException(
            status_code=400,
            detail=f"Amount exceeds funds available for withdrawal (KES {float(available):,.0f})"
        )

    request = WithdrawalRequest(
        campaign_id=campaign.id,
        user_id=current_user.id,
        amount=amount,
        bank_account=withdrawal.bank_account,
        reason=withdrawal.reason,
        status="pending",
    )
    db.add(request)
    db.commit()
    db.refresh(request)

    container.audit_trail.record(
        AuditEntry(
            action=AuditAction.WITHDRAWAL_REQUESTED.value,
            campaign_id=campaign.id,
            user_id=current_user.id,
            details={"withdrawal_id": request.id, "amount": float(amount)},
            ip_address=request_ip,
        )
    )

    logger.info(f"Withdrawal {request.id} requested for campaign {campaign.id}: KES {amount}")
    return request


@router.get("/", response_model=List[WithdrawalResponse])
def list_withdrawals(
    campaign_id: Optional[int] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List the current user's withdrawal requests, newest first."""
    query = db.query(WithdrawalRequest).filter(WithdrawalRequest.user_id == current_user.id)
    if campaign_id is not None:
        query = query.filter(WithdrawalRequest.campaign_id == campaign_id)
    return query.order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc()).all()
