#!/usr/bin/env python3
"""
Database Migration: Create FollowDesk tables from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py                 # create missing tables
    python scripts/migrate_db.py --check         # report only, no changes
    python scripts/migrate_db.py --url sqlite:///./followdesk.db
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def existing_tables(engine) -> list[str]:
    from sqlalchemy import text

    dialect = engine.dialect.name
    if dialect == "postgresql":
        stmt = "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    elif dialect == "mysql":
        stmt = "SHOW TABLES"
    else:  # sqlite
        stmt = "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"

    async with engine.connect() as conn:
        result = await conn.execute(text(stmt))
        return [row[0] for row in result.fetchall()]


async def run_migration(url: str = None, check_only: bool = False) -> int:
    from config.settings import load_settings
    settings = load_settings()

    from database.models import Base
    from database.session import close_db, get_engine, init_db

    engine = get_engine(url or settings.database.url)
    defined = set(Base.metadata.tables.keys())

    try:
        if check_only:
            shown = str(engine.url).split("@")[-1]
            print(f"Database: {engine.dialect.name}")
            print(f"URL: {shown}")
            print(f"Tables defined: {', '.join(sorted(defined))}")
            existing = await existing_tables(engine)
            print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")
            missing = defined - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist.")
            return 0

        print("Running database migration...")
        await init_db(url or settings.database.url)
        existing = await existing_tables(engine)
        print(f"Tables created/verified: {', '.join(sorted(defined & set(existing)))}")
        print("Migration complete.")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="FollowDesk database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(url=args.url, check_only=args.check)))


if __name__ == "__main__":
    main()
