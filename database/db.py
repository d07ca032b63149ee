"""
Engine, session factory and the lookups shared by routes and services.
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Optional, Generator
import logging

from database.models import Base, Campaign, CampaignStatus, Donation, DonationStatus

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable not set!")


def build_engine(url: str):
    """
    Create an engine for the given URL.

    SQLite connections are shared across threads (routes and the ledger run
    database work in the threadpool); an in-memory database needs a single
    static connection or every checkout would see an empty schema.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, **kwargs)

    # pool_pre_ping=True: Check connection health before using
    return create_engine(
        url,
        pool_pre_ping=True,
        echo=False  # Set to True to see SQL queries (debugging)
    )


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    bind=engine,
    expire_on_commit=False,
    autoflush=False
)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session: committed when the route returns, rolled back
    and logged if it raises."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Database error: {e}")
        raise
    finally:
        db.close()


def create_tables():
    """
    Create all tables in database.

    WARNING: Only use in development!
    Production should use Alembic migrations.
    """
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def drop_tables():
    """
    Drop all tables in database.

    WARNING: DESTRUCTIVE! Only use in testing.
    """
    Base.metadata.drop_all(bind=engine)
    logger.warning("All database tables dropped")


def dispose_engine():
    """Close pooled connections on shutdown."""
    engine.dispose()
    logger.info("Database connections closed")


# ============================================
# Helper Functions for Common Queries
# ============================================

def get_campaign_by_id(db: Session, campaign_id: int) -> Optional[Campaign]:
    """Get campaign by ID."""
    return db.query(Campaign).filter(Campaign.id == campaign_id).first()


def get_campaign_by_slug(db: Session, slug: str) -> Optional[Campaign]:
    """Get campaign by slug, whatever its status."""
    return db.query(Campaign).filter(Campaign.slug == slug).first()


def get_active_campaigns(db: Session, limit: int = 50):
    """Get active campaigns, newest first."""
    return (
        db.query(Campaign)
        .filter(Campaign.status == CampaignStatus.ACTIVE.value)
        .order_by(Campaign.created_at.desc(), Campaign.id.desc())
        .limit(limit)
        .all()
    )


def get_donation_by_reference(db: Session, reference: str) -> Optional[Donation]:
    """Get donation by the reference generated at initiation."""
    return db.query(Donation).filter(Donation.reference == reference).first()


def get_verified_donations(db: Session, campaign_id: int, limit: int = 50):
    """Get verified donations for a campaign, newest first."""
    return (
        db.query(Donation)
        .filter(
            Donation.campaign_id == campaign_id,
            Donation.status == DonationStatus.VERIFIED.value
        )
        .order_by(Donation.created_at.desc(), Donation.id.desc())
        .limit(limit)
        .all()
    )
