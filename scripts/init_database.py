#!/usr/bin/env python3
"""
Database Initialization Script

Creates database tables and optionally seeds the default analyzer config.
"""

import sys
import os
import argparse
import logging

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from regime_tracker.config.config_store import ConfigStore
from regime_tracker.settings import configure_logging, load_settings
from regime_tracker.storage.database import init_database
from regime_tracker.storage.models import Base

configure_logging()
logger = logging.getLogger(__name__)


def main():
    """Initialize database"""
    parser = argparse.ArgumentParser(description='Create regime tracker tables')
    parser.add_argument('--seed-config', action='store_true', help='Seed the default analyzer config')
    parser.add_argument('--yes', action='store_true', help='Do not ask for confirmation')
    args = parser.parse_args()

    print("=" * 80)
    print("Regime Tracker - Database Initialization")
    print("=" * 80)

    database_url = load_settings().database_url

    print(f"\nDatabase URL: {database_url}")
    print("\nThis will create all database tables.")

    if not args.yes:
        response = input("\nContinue? (yes/no): ")
        if response.lower() not in ['yes', 'y']:
            print("Aborted.")
            return

    try:
        init_database(database_url)

        print("\n✅ Database initialized successfully!")
        print("\nTables:")
        for table in sorted(Base.metadata.tables):
            print(f"  - {table}")

        if args.seed_config:
            version = ConfigStore().seed_default()
            print(f"\nActive analyzer config: {version}")

        print("\nDatabase is ready to use!")

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
