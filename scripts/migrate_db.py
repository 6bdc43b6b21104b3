#!/usr/bin/env python3
"""
Database Migration — Create the dispatch tables from the SQLAlchemy models.

Tables: tenants, tenant_settings, product_mappings, reply_claims,
outbound_queue, rate_limit_windows. Existing tables are left untouched.

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report only, exit 1 if any are missing
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(engine) -> set[str]:
    from sqlalchemy import inspect

    async with engine.connect() as conn:
        names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    return set(names)


async def run_migration(check_only: bool = False) -> int:
    from config.settings import load_settings
    load_settings()

    from database.models import Base
    from database.session import close_db, create_tables, get_engine, redacted_url

    engine = get_engine()
    defined = set(Base.metadata.tables.keys())
    print(f"Database: {engine.dialect.name} ({redacted_url(engine)})")

    try:
        if check_only:
            missing = defined - await _existing_tables(engine)
            if missing:
                print(f"Missing tables: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print(f"All {len(defined)} tables exist. ✓")
            return 0

        before = await _existing_tables(engine)
        await create_tables(engine)
        created = (defined & await _existing_tables(engine)) - before
        print(f"Created: {', '.join(sorted(created)) or '(nothing, all tables existed)'}")
        print("Migration complete. ✓")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Create dispatch tables")
    parser.add_argument("--check", action="store_true", help="Report missing tables without creating them")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check)))


if __name__ == "__main__":
    main()
