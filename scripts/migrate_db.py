#!/usr/bin/env python3
"""
Database Migration — Create/update tables from SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_migration(check_only: bool = False, config_path: str = None) -> int:
    from config.settings import load_settings
    from database.session import Database

    settings = load_settings(config_path)
    database = Database(settings.database)
    try:
        if check_only:
            existing = await database.existing_tables()
            missing = await database.missing_tables()
            print(f"Database: {database.dialect}")
            print(f"URL: {database.display_url}")
            print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist. ✓")
            return 0

        print(f"Running database migration on {database.dialect}...")
        await database.create_tables()
        print(f"Tables created/verified: {', '.join(sorted(await database.existing_tables()))}")
        print("Migration complete. ✓")
        return 0
    finally:
        await database.dispose()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, config_path=args.config)))


if __name__ == "__main__":
    main()
