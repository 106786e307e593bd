#!/usr/bin/env python3
"""
Database initialization script
Creates all tables and optionally seeds demo accounts, a match and a promo code
"""

import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Load .env file
from dotenv import load_dotenv
load_dotenv()

from wagerline.models import Base, engine, SessionLocal
from wagerline.core.errors import ValidationError
from wagerline.services.accounts import create_account
from wagerline.services.bet_book import BetBook
from wagerline.services.promotions import create_promo_code
from wagerline.utils.timeutil import utcnow
from datetime import timedelta
import logging
from sqlalchemy import text, inspect

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init_database(drop_existing: bool = False):
    """
    Initialize database tables

    Args:
        drop_existing: If True, drops all tables first (DANGER: data loss!)
    """
    logger.info("Initializing Wagerline database...")

    if drop_existing:
        logger.warning("Dropping all existing tables!")
        response = input("Are you sure? This will delete all data. Type 'yes' to confirm: ")
        if response.lower() != 'yes':
            logger.info("Aborted.")
            return

        Base.metadata.drop_all(bind=engine)
        logger.info("Existing tables dropped")

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")

    inspector = inspect(engine)
    tables = inspector.get_table_names()
    logger.info("Tables: %s", ", ".join(tables))

    return True


def seed_test_data():
    """Add demo data for development"""
    logger.info("Seeding demo data...")

    try:
        for username, opening in (("alice", 500), ("bob", 250)):
            account = create_account(username, opening_balance=opening)
            logger.info("Account %s -> id %d", username, account.id)

        match = BetBook().create_match(
            "Flamengo",
            "Palmeiras",
            {"home": "2.10", "draw": "3.20", "away": "3.40"},
            utcnow() + timedelta(days=2),
        )
        logger.info("Match %d seeded", match.id)

        create_promo_code("WELCOME10", 10, max_uses=100, expires_at=utcnow() + timedelta(days=30))
        logger.info("Demo data seeded")

    except ValidationError as e:
        logger.error("Error seeding data (already seeded?): %s", e)


def check_connection():
    """Test database connection"""
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
        logger.info("Database connection successful")
        return True
    except Exception as e:
        logger.error("Database connection failed: %s", e)
        return False


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize Wagerline database")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables (DANGER!)")
    parser.add_argument("--seed", action="store_true", help="Seed demo data")
    parser.add_argument("--check", action="store_true", help="Only check connection")

    args = parser.parse_args()

    if args.check:
        check_connection()
    else:
        if check_connection():
            init_database(drop_existing=args.drop)

            if args.seed:
                seed_test_data()

            logger.info("Database initialization complete!")
        else:
            logger.error("Cannot initialize database - connection failed")
            sys.exit(1)
