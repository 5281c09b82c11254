"""
Database initialization script
Creates the meetings and transcript_segments tables
"""

import argparse
import logging

from sqlalchemy import create_engine

from .config import StreamIngestionConfig
from .models import Base

logger = logging.getLogger(__name__)


def _engine(config: StreamIngestionConfig):
    logger.info(f"Connecting to database: {config.database_url.split('@')[-1]}")  # Hide credentials
    return create_engine(config.database_url)


def init_database(config: StreamIngestionConfig = None):
    """Create all tables that don't exist yet"""
    engine = _engine(config or StreamIngestionConfig())

    logger.info("Creating database tables...")
    Base.metadata.create_all(engine)
    logger.info(f"Tables ready: {', '.join(Base.metadata.tables.keys())}")
    return engine


def drop_all_tables(config: StreamIngestionConfig = None):
    """Drop all tables (use with caution!)"""
    engine = _engine(config or StreamIngestionConfig())

    logger.warning("Dropping all tables...")
    Base.metadata.drop_all(engine)
    logger.info("All tables dropped")


def reset_database(config: StreamIngestionConfig = None):
    """Drop and recreate"""
    config = config or StreamIngestionConfig()
    logger.warning("Resetting database...")
    drop_all_tables(config)
    init_database(config)
    logger.info("Database reset complete")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Manage the transcription database schema")
    parser.add_argument("command", nargs="?", default="init", choices=["init", "drop", "reset"])
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt for drop/reset")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if args.command == "init":
        init_database()
        return

    if not args.yes:
        response = input(f"Are you sure you want to {args.command} the database? (yes/no): ")
        if response.lower() != "yes":
            logger.info("Operation cancelled")
            return

    if args.command == "drop":
        drop_all_tables()
    else:
        reset_database()


if __name__ == "__main__":
    main()
