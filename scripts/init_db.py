#!/usr/bin/env python3
"""
Database initialization script
Creates the teams / games / encoder_models tables
"""

import argparse
import logging
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sqlalchemy import inspect, text

from latent_edge.models import Base, SessionLocal, engine, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init_database(drop_existing: bool = False) -> bool:
    """
    Initialize database tables

    Args:
        drop_existing: If True, drops all tables first (DANGER: data loss!)
    """
    logger.info("Initializing Latent Edge database...")

    if drop_existing:
        logger.warning("Dropping all existing tables!")
        response = input("Are you sure? This will delete all posteriors and encoder versions. Type 'yes' to confirm: ")
        if response.lower() != 'yes':
            logger.info("Aborted.")
            return False
        Base.metadata.drop_all(bind=engine)
        logger.info("Existing tables dropped")

    init_db()
    tables = inspect(engine).get_table_names()
    logger.info("Tables: %s", ", ".join(tables))
    return True


def check_connection() -> bool:
    """Test database connection"""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        logger.info("Database connection successful")
        return True
    except Exception as exc:
        logger.error("Database connection failed: %s", exc)
        return False
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Initialize Latent Edge database")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables (DANGER!)")
    parser.add_argument("--check", action="store_true", help="Only check connection")
    args = parser.parse_args()

    if not check_connection():
        logger.error("Cannot initialize database - connection failed")
        sys.exit(1)
    if not args.check:
        init_database(drop_existing=args.drop)
        logger.info("Database initialization complete")
