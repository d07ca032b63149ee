"""
Audit Trail

Append-only log of state-changing events (donations, campaign edits,
withdrawal requests). Recording is best effort: a failed write is logged
and never breaks the operation being audited.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database.models import AuditLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    action: str
    campaign_id: Optional[int] = None
    user_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None


class AuditTrail:
    """Writes audit entries in their own session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record(self, entry: AuditEntry) -> None:
        try:
            with self.session_factory() as db:
                db.add(AuditLog(
                    user_id=entry.user_id,
                    campaign_id=entry.campaign_id,
                    action=entry.action,
                    details=dict(entry.details),
                    ip_address=entry.ip_address,
                ))
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Audit: Failed to record {entry.action} for campaign {entry.campaign_id}: {e}")

    def list_for_campaign(
        self,
        campaign_id: int,
        action: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditLog]:
        """Entries for one campaign, newest first."""
        with self.session_factory() as db:
            query = db.query(AuditLog).filter(AuditLog.campaign_id == campaign_id)
            if action:
                query = query.filter(AuditLog.action == action)
            return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
