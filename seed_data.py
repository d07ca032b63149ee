"""
Seed data script for TuFund database
Creates sample campaign owners and campaigns for local testing
"""
import os
import sys
from decimal import Decimal
from sqlalchemy.orm import Session

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database.db import SessionLocal, create_tables
from database.models import Campaign, CampaignStatus, User
from services.auth_service import hash_password
from api.routers.campaigns import unique_slug

SEED_PASSWORD = os.getenv("SEED_PASSWORD", "changeme123")


def seed_owners(db: Session):
    """Create sample campaign owners"""
    owners_data = [
        {"email": "wanjiku@example.com", "full_name": "Wanjiku Kamau", "phone": "254712345678"},
        {"email": "otieno@example.com", "full_name": "Brian Otieno", "phone": "254722111222"},
    ]

    created_owners = []
    for owner_data in owners_data:
        existing = db.query(User).filter(User.email == owner_data["email"]).first()

        if not existing:
            user = User(password_hash=hash_password(SEED_PASSWORD), is_active=True, **owner_data)
            db.add(user)
            db.commit()
            db.refresh(user)
            created_owners.append(user)
            print(f"✅ Created Owner: {user.email} (ID: {user.id})")
        else:
            created_owners.append(existing)
            print(f"⚠️  Owner already exists: {existing.email} (ID: {existing.id})")

    return created_owners


def seed_campaigns(db: Session, owners: list):
    """Create sample campaigns"""
    campaigns_data = [
        {
            "owner": owners[0],
            "title": "Surgery for Baby Amani",
            "description": "Help cover heart surgery costs for two-year-old Amani at Kenyatta National Hospital.",
            "category": "medical",
            "goal_amount": Decimal("450000"),
        },
        {
            "owner": owners[0],
            "title": "Kibera Community Library",
            "description": "Stock a reading room with books and solar lighting for 300 children in Kibera.",
            "category": "education",
            "goal_amount": Decimal("120000"),
        },
        {
            "owner": owners[1],
            "title": "Mama Mboga Market Stall",
            "description": "Restock and roof a vegetable stall destroyed in the Gikomba market fire.",
            "category": "business",
            "goal_amount": Decimal("60000"),
        },
    ]

    created_campaigns = []
    for campaign_data in campaigns_data:
        # Check if already exists
        existing = db.query(Campaign).filter(
            Campaign.title == campaign_data["title"]
        ).first()

        if not existing:
            owner = campaign_data.pop("owner")
            campaign = Campaign(
                user_id=owner.id,
                slug=unique_slug(db, campaign_data["title"]),
                current_amount=Decimal("0"),
                status=CampaignStatus.ACTIVE.value,
                **campaign_data
            )
            db.add(campaign)
            db.commit()
            db.refresh(campaign)
            created_campaigns.append(campaign)
            print(f"✅ Created Campaign: {campaign.title} (/{campaign.slug})")
        else:
            created_campaigns.append(existing)
            print(f"⚠️  Campaign already exists: {existing.title} (ID: {existing.id})")

    return created_campaigns


def main():
    """Run all seed functions"""
    print("\n🌱 Starting database seed...\n")

    create_tables()
    db = SessionLocal()
    try:
        # Seed in order (owners first, then campaigns that reference them)
        print("📦 Seeding Owners...")
        owners = seed_owners(db)

        print("\n📦 Seeding Campaigns...")
        campaigns = seed_campaigns(db, owners)

        print(f"\n✅ Seed complete!")
        print(f"   - {len(owners)} Owners (password: {SEED_PASSWORD})")
        print(f"   - {len(campaigns)} Campaigns")
        print("\nYou can now test the API with real data!\n")
    finally:
        db.close()


if __name__ == "__main__":
    main()
