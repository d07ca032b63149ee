"""
Tests for the audit trail.
"""

from sqlalchemy.exc import OperationalError

from database.db import SessionLocal
from database.models import AuditAction
from services.audit_service import AuditEntry, AuditTrail


def test_record_and_list(campaign, owner):
    trail = AuditTrail(SessionLocal)

    trail.record(AuditEntry(
        action=AuditAction.CAMPAIGN_CREATED.value,
        campaign_id=campaign.id,
        user_id=owner.id,
        details={"title": campaign.title},
        ip_address="41.90.0.7",
    ))
    trail.record(AuditEntry(
        action=AuditAction.DONATION.value,
        campaign_id=campaign.id,
        details={"reference": "DONATION-1-1-00000001", "status": "pending"},
    ))

    entries = trail.list_for_campaign(campaign.id)

    assert [e.action for e in entries] == ["donation", "campaign_created"]
    assert entries[1].user_id == owner.id
    assert entries[1].ip_address == "41.90.0.7"
    assert entries[0].to_dict()["details"]["status"] == "pending"


def test_filter_and_limit(campaign, create_campaign):
    trail = AuditTrail(SessionLocal)
    other = create_campaign()
    for _ in range(3):
        trail.record(AuditEntry(action=AuditAction.DONATION.value, campaign_id=campaign.id))
    trail.record(AuditEntry(action=AuditAction.CAMPAIGN_UPDATED.value, campaign_id=campaign.id))
    trail.record(AuditEntry(action=AuditAction.DONATION.value, campaign_id=other.id))

    assert len(trail.list_for_campaign(campaign.id, action="donation")) == 3
    assert len(trail.list_for_campaign(campaign.id, limit=2)) == 2
    assert len(trail.list_for_campaign(other.id)) == 1


def test_write_failure_is_logged_not_raised(caplog):
    def broken_session():
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("database is locked"))

    trail = AuditTrail(broken_session)

    trail.record(AuditEntry(action=AuditAction.DONATION.value, campaign_id=1))

    assert "Failed to record donation" in caplog.text
