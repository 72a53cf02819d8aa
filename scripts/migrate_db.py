#!/usr/bin/env python3
"""
Ledger migration — create the idempotency ledger table from the ORM models.

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report only, no changes

Uses DATABASE_URL (or database.url in the settings file).
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect  # noqa: E402

from config.settings import load_settings  # noqa: E402
from database.models import Base  # noqa: E402
from database.session import create_engine, init_models  # noqa: E402


async def run_migration(check_only: bool = False) -> int:
    settings = load_settings()
    engine = create_engine(settings.database.url)
    try:
        async with engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

        defined = set(Base.metadata.tables.keys())
        missing = sorted(defined - set(existing))
        print(f"Database: {engine.dialect.name}")
        print(f"Tables defined: {', '.join(sorted(defined))}")
        print(f"Tables missing: {', '.join(missing) or '(none)'}")

        if check_only:
            return 1 if missing else 0

        if missing:
            await init_models(engine)
            print("Migration complete.")
        return 0
    finally:
        await engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the notification worker ledger tables")
    parser.add_argument("--check", action="store_true", help="Only report missing tables")
    args = parser.parse_args()
    return asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    sys.exit(main())
