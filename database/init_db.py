"""
Initialize database tables and default fee settings.

Run this script once against a new database:

    python -m database.init_db
"""

import logging

from database.db import SessionLocal, create_tables
from database.models import Base, PlatformSetting

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Percent values, as an admin would enter them ("4" = 4%)
DEFAULT_FEE_SETTINGS = {
    "platform_fee_percentage": ("4", "Platform fee charged on every creator payout"),
    "stripe_processing_fee_percentage": ("3", "Payment processing fee passed through to the creator"),
}


def seed_fee_settings(db) -> int:
    """Insert missing fee settings. Existing values are never overwritten."""
    existing = {row.key for row in db.query(PlatformSetting).filter(PlatformSetting.category == "fees")}
    added = 0
    for key, (value, description) in DEFAULT_FEE_SETTINGS.items():
        if key in existing:
            continue
        db.add(PlatformSetting(key=key, value=value, category="fees", description=description))
        added += 1
    db.commit()
    return added


if __name__ == "__main__":
    create_tables()
    logger.info(f"Tables: {', '.join(Base.metadata.tables.keys())}")

    db = SessionLocal()
    try:
        added = seed_fee_settings(db)
        logger.info(f"Seeded {added} fee setting(s)")
    finally:
        db.close()
